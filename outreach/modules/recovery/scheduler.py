"""
Recovery Scheduler
==================

Enrollment-based automations such as abandoned-cart recovery.

A sequence is an ordered list of steps, each with a delay in hours measured
from the enrollment time. Every tick looks at active enrollments whose current
step is due and either completes them (cart already recovered), skips the
step (discount already issued) or dispatches it.

Dispatch is guarded by a step marker keyed on (enrollment, run, step):
whoever inserts the marker owns the send, so overlapping ticks cannot send
the same step twice. A marker left ``claimed`` by a crashed tick may be taken
over after the claim TTL, except for discount steps, which are issued at most
once per enrollment.
"""

import logging
import time
from collections import Counter
from datetime import timedelta

from outreach.core import (
    Database, InvalidTransition, NotFound, SystemClock, ValidationError, call_with_retry,
    db_log, parse_iso, to_iso
)
from outreach.modules.audience import models as audience_models
from outreach.modules.email import OutboundMessage, SendResult, is_valid_email, substitute
from . import models

logger = logging.getLogger(__name__)

DEFAULT_CART_RECOVERY_STEPS = [
    {
        'step_name': 'Gentle reminder',
        'delay_hours': 1,
        'email_subject': 'You left something in your cart',
        'email_content': '<p>Hi {{customer_name}}, your cart is waiting for you.</p><p>{{cart_items}}</p>',
    },
    {
        'step_name': 'Follow up',
        'delay_hours': 24,
        'email_subject': 'Still thinking it over?',
        'email_content': '<p>Hi {{customer_name}}, your items are still available.</p>',
    },
    {
        'step_name': 'Special offer',
        'delay_hours': 72,
        'email_subject': '{{discount_percent}}% off to complete your order',
        'email_content': '<p>Hi {{customer_name}}, here is {{discount_percent}}% off your cart of {{cart_total}}.</p>',
        'is_discount': True,
        'discount_percent': 10,
    },
]

TERMINAL_ENROLLMENT_STATES = ('completed', 'unsubscribed', 'failed')


def validate_steps(steps):
    """
    Normalise step definitions. Requires at least one step, non-negative and
    non-decreasing delays, and at most one discount step which must be last.
    """
    if not isinstance(steps, list) or not steps:
        raise ValidationError('A sequence needs at least one step')

    cleaned = []
    previous_delay = 0.0
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            raise ValidationError(f"Step {index} must be an object")
        for name in ('email_subject', 'email_content'):
            if not isinstance(step.get(name), str) or not step[name].strip():
                raise ValidationError(f"Step {index} is missing {name}")
        try:
            delay = float(step.get('delay_hours'))
        except (TypeError, ValueError):
            raise ValidationError(f"Step {index} needs a numeric delay_hours")
        if delay < 0:
            raise ValidationError(f"Step {index} has a negative delay")
        if delay < previous_delay:
            raise ValidationError(f"Step {index} is scheduled before the step preceding it")
        previous_delay = delay

        is_discount = bool(step.get('is_discount', False))
        discount_percent = step.get('discount_percent')
        if is_discount:
            try:
                discount_percent = float(discount_percent)
            except (TypeError, ValueError):
                raise ValidationError(f"Discount step {index} needs discount_percent")
            if not 0 < discount_percent <= 100:
                raise ValidationError('discount_percent must be between 0 and 100')
        cleaned.append({
            'step_name': step.get('step_name') or f"Step {index + 1}",
            'delay_hours': delay,
            'email_subject': step['email_subject'],
            'email_content': step['email_content'],
            'is_discount': is_discount,
            'discount_percent': discount_percent if is_discount else None,
        })

    discount_steps = [i for i, s in enumerate(cleaned) if s['is_discount']]
    if len(discount_steps) > 1:
        raise ValidationError('A sequence may contain at most one discount step')
    if discount_steps and discount_steps[0] != len(cleaned) - 1:
        raise ValidationError('The discount step must be the last step')
    return cleaned


def _clean_line_items(line_items):
    """Each line item is an object; price and quantity, when given, are numbers."""
    if line_items is None:
        return []
    if not isinstance(line_items, list):
        raise ValidationError('line_items must be a list')

    cleaned = []
    for index, item in enumerate(line_items):
        if not isinstance(item, dict):
            raise ValidationError(f"Line item {index} must be an object")
        item = dict(item)
        try:
            if item.get('price') is not None:
                item['price'] = float(item['price'])
            if item.get('quantity') is not None:
                item['quantity'] = int(item['quantity'])
        except (TypeError, ValueError):
            raise ValidationError(f"Line item {index} needs a numeric price and quantity")
        price, quantity = item.get('price'), item.get('quantity')
        if (price is not None and price < 0) or (quantity is not None and quantity < 1):
            raise ValidationError(f"Line item {index} has a negative price or quantity")
        cleaned.append(item)
    return cleaned


class RecoveryScheduler:

    def __init__(self, db_path, transport, clock=None, sender_name=None, sender_email=None,
                 transport_timeout=15.0, transport_retries=3, retry_backoff=1.0, claim_ttl=900,
                 sleep=time.sleep):
        self.db_path = db_path
        self.transport = transport
        self.clock = clock or SystemClock()
        self.sender_name = sender_name
        self.sender_email = sender_email
        self.transport_timeout = transport_timeout
        self.transport_retries = transport_retries
        self.retry_backoff = retry_backoff
        self.claim_ttl = claim_ttl
        self.sleep = sleep

    # -- sequences ---------------------------------------------------------

    def create_sequence(self, store_id, data):
        data = data or {}
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('Sequence name is required')
        trigger_type = data.get('trigger_type', 'cart_abandonment')
        if trigger_type not in models.TRIGGER_TYPES:
            raise ValidationError(f"Unknown trigger type: {trigger_type}")
        steps = validate_steps(data.get('steps'))

        with Database.session(self.db_path, immediate=True) as conn:
            sequence_id = models.insert_sequence(
                conn, store_id, name, data.get('description'), trigger_type, steps,
                data.get('is_active', True), to_iso(self.clock.now())
            )
            sequence = models.get_sequence(conn, store_id, sequence_id)

        db_log('info', 'recovery', f"Sequence created: {name}", {'id': sequence_id, 'steps': len(steps)},
               store_id=store_id)
        return sequence

    def create_default_sequence(self, store_id):
        return self.create_sequence(store_id, {
            'name': 'Abandoned cart recovery',
            'trigger_type': 'cart_abandonment',
            'steps': DEFAULT_CART_RECOVERY_STEPS,
        })

    def get_sequence(self, store_id, sequence_id):
        with Database.session(self.db_path) as conn:
            sequence = models.get_sequence(conn, store_id, sequence_id)
        if sequence is None:
            raise NotFound(f"Sequence {sequence_id} not found")
        return sequence

    def list_sequences(self, store_id, trigger_type=None):
        with Database.session(self.db_path) as conn:
            return models.list_sequences(conn, store_id, trigger_type)

    def set_sequence_active(self, store_id, sequence_id, is_active):
        with Database.session(self.db_path, immediate=True) as conn:
            if not models.set_sequence_active(conn, store_id, sequence_id, is_active, to_iso(self.clock.now())):
                raise NotFound(f"Sequence {sequence_id} not found")
        return self.get_sequence(store_id, sequence_id)

    # -- triggers ----------------------------------------------------------

    def record_abandonment(self, store_id, cart):
        """
        Store an abandoned cart and enroll it in the store's active
        cart_abandonment sequence. Returns (cart, enrollment or None).
        """
        cart = dict(cart or {})
        email = (cart.get('customer_email') or '').strip()
        if not is_valid_email(email):
            raise ValidationError(f"Invalid customer_email: {email}")
        try:
            total_value = float(cart.get('total_value', 0))
        except (TypeError, ValueError):
            raise ValidationError('total_value must be a number')
        if total_value < 0:
            raise ValidationError('total_value cannot be negative')
        line_items = _clean_line_items(cart.get('line_items'))

        now = self.clock.now()
        abandoned_at = parse_iso(cart.get('abandoned_at')) or now
        cart.update(customer_email=email, total_value=total_value, line_items=line_items,
                    abandoned_at=to_iso(abandoned_at))
        stamp = to_iso(now)

        enrollment = None
        with Database.session(self.db_path, immediate=True) as conn:
            cart_id = models.insert_cart(conn, store_id, cart, stamp)
            sequence = models.active_sequence_for(conn, store_id, 'cart_abandonment')
            if sequence is None:
                logger.info(f"No active cart recovery sequence for store {store_id}")
            elif audience_models.is_unsubscribed(conn, store_id, email):
                logger.info(f"Cart {cart_id} not enrolled: address is unsubscribed")
            elif any(e['sequence_id'] == sequence['id'] for e in models.enrollments_for_email(conn, store_id, email)):
                logger.info(f"Cart {cart_id} not enrolled: {email} already has an open enrollment")
            else:
                enrollment_id = models.insert_enrollment(
                    conn, store_id, sequence['id'], cart_id, email, cart.get('customer_name'),
                    cart['abandoned_at'], stamp
                )
                enrollment = models.get_enrollment(conn, enrollment_id)
            stored = models.get_cart(conn, store_id, cart_id)

        db_log('info', 'recovery', f"Cart abandoned: {total_value:.2f}",
               {'cart_id': cart_id, 'enrolled': enrollment is not None}, store_id=store_id)
        return stored, enrollment

    def record_completed_order(self, store_id, email, order_id, completed_at=None):
        """Mark open carts for ``email`` as recovered by ``order_id``."""
        recovered_at = to_iso(parse_iso(completed_at) or self.clock.now())
        with Database.session(self.db_path, immediate=True) as conn:
            count = models.mark_carts_recovered(
                conn, store_id, (email or '').strip(), str(order_id) if order_id is not None else None,
                recovered_at, to_iso(self.clock.now())
            )
        if count:
            logger.info(f"{count} cart(s) recovered for store {store_id} by order {order_id}")
            db_log('info', 'recovery', 'Cart recovered', {'order_id': order_id, 'carts': count}, store_id=store_id)
        return count

    def get_cart(self, store_id, cart_id):
        with Database.session(self.db_path) as conn:
            cart = models.get_cart(conn, store_id, cart_id)
        if cart is None:
            raise NotFound(f"Cart {cart_id} not found")
        return cart

    def list_carts(self, store_id, recovered=None):
        with Database.session(self.db_path) as conn:
            return models.list_carts(conn, store_id, recovered)

    # -- enrollments -------------------------------------------------------

    def get_enrollment(self, store_id, enrollment_id):
        with Database.session(self.db_path) as conn:
            enrollment = models.get_enrollment(conn, enrollment_id, store_id)
            if enrollment is not None:
                enrollment['dispatches'] = models.dispatches_for(conn, enrollment_id)
        if enrollment is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        return enrollment

    def list_enrollments(self, store_id, status=None, sequence_id=None):
        if status is not None and status not in models.ENROLLMENT_STATUSES:
            raise ValidationError(f"Unknown enrollment status: {status}")
        with Database.session(self.db_path) as conn:
            return models.list_enrollments(conn, store_id, status, sequence_id)

    def _move(self, store_id, enrollment_id, allowed_from, target, **fields):
        with Database.session(self.db_path, immediate=True) as conn:
            enrollment = models.get_enrollment(conn, enrollment_id, store_id)
            if enrollment is None:
                raise NotFound(f"Enrollment {enrollment_id} not found")
            if enrollment['status'] not in allowed_from:
                raise InvalidTransition(
                    f"Enrollment {enrollment_id} is {enrollment['status']}; cannot move to {target}",
                    {'from': enrollment['status'], 'to': target}
                )
            models.update_enrollment(conn, enrollment_id, to_iso(self.clock.now()),
                                     expected_status=enrollment['status'], status=target, **fields)
        logger.info(f"Enrollment {enrollment_id}: {enrollment['status']} -> {target}")
        return self.get_enrollment(store_id, enrollment_id)

    def pause(self, store_id, enrollment_id, reason=None):
        return self._move(store_id, enrollment_id, ('active',), 'paused', status_reason=reason)

    def resume(self, store_id, enrollment_id):
        return self._move(store_id, enrollment_id, ('paused',), 'active', status_reason=None)

    def unsubscribe(self, store_id, enrollment_id, reason=None):
        enrollment = self._move(store_id, enrollment_id, ('active', 'paused'), 'unsubscribed',
                                status_reason=reason or 'Unsubscribed by operator')
        with Database.session(self.db_path, immediate=True) as conn:
            audience_models.record_unsubscribe(
                conn, store_id, enrollment['customer_email'], to_iso(self.clock.now()), 'promotional',
                reason=reason
            )
        return enrollment

    def restart(self, store_id, enrollment_id):
        """
        Start the sequence over from step 0 with a new run. A discount step
        already issued to this enrollment stays issued and will be skipped.
        """
        with Database.session(self.db_path, immediate=True) as conn:
            enrollment = models.get_enrollment(conn, enrollment_id, store_id)
            if enrollment is None:
                raise NotFound(f"Enrollment {enrollment_id} not found")
            if enrollment['status'] == 'unsubscribed':
                raise InvalidTransition(f"Enrollment {enrollment_id} is unsubscribed and cannot be restarted")
            stamp = to_iso(self.clock.now())
            models.update_enrollment(
                conn, enrollment_id, stamp, expected_status=enrollment['status'],
                status='active', status_reason=None, current_step=0, completed_at=None,
                run_number=enrollment['run_number'] + 1, enrolled_at=stamp,
            )
        db_log('info', 'recovery', f"Enrollment {enrollment_id} restarted",
               {'run_number': enrollment['run_number'] + 1}, store_id=store_id)
        return self.get_enrollment(store_id, enrollment_id)

    def send_current_step_now(self, store_id, enrollment_id):
        """Dispatch the current step without waiting for its delay."""
        with Database.session(self.db_path) as conn:
            enrollment = models.get_enrollment(conn, enrollment_id, store_id)
        if enrollment is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        if enrollment['status'] in TERMINAL_ENROLLMENT_STATES:
            raise InvalidTransition(
                f"Enrollment {enrollment_id} is {enrollment['status']}; no step can be sent",
                {'status': enrollment['status']}
            )
        outcome = self._process(enrollment, self.clock.now(), force=True)
        return outcome, self.get_enrollment(store_id, enrollment_id)

    # -- tick --------------------------------------------------------------

    def tick(self, now=None):
        """Process every due active enrollment once. Returns counts per outcome."""
        now = now or self.clock.now()
        with Database.session(self.db_path) as conn:
            enrollments = models.active_enrollments(conn)

        outcomes = Counter()
        for enrollment in enrollments:
            try:
                outcomes[self._process(enrollment, now)] += 1
            except Exception as e:
                logger.error(f"Recovery tick failed for enrollment {enrollment['id']}: {e}")
                db_log('error', 'recovery', f"Tick failed for enrollment {enrollment['id']}",
                       {'error': str(e)}, store_id=enrollment['store_id'])
                outcomes['error'] += 1
        outcomes.pop('waiting', None)
        if outcomes:
            logger.info(f"Recovery tick: {dict(outcomes)}")
        return dict(outcomes)

    def _process(self, enrollment, now, force=False):
        store_id = enrollment['store_id']
        enrollment_id = enrollment['id']
        stamp = to_iso(now)

        with Database.session(self.db_path, immediate=True) as conn:
            # Re-read under the write lock; an operator may have acted since the scan
            enrollment = models.get_enrollment(conn, enrollment_id)
            if enrollment is None or enrollment['status'] in TERMINAL_ENROLLMENT_STATES:
                return 'inactive'
            if not force and enrollment['status'] != 'active':
                return 'inactive'
            index = enrollment['current_step']
            run = enrollment['run_number']
            steps = models.get_steps(conn, enrollment['sequence_id'])
            if index >= len(steps):
                models.update_enrollment(conn, enrollment_id, stamp, expected_status=enrollment['status'],
                                         status='completed', completed_at=stamp)
                return 'completed'

            step = steps[index]
            due_at = parse_iso(enrollment['enrolled_at']) + timedelta(hours=step['delay_hours'])
            if not force and due_at > now:
                return 'waiting'

            cart = models.get_cart(conn, store_id, enrollment['cart_id']) if enrollment['cart_id'] else None
            if cart is not None and cart['recovered']:
                models.update_enrollment(conn, enrollment_id, stamp, expected_status=enrollment['status'],
                                         status='completed', completed_at=stamp, status_reason='Cart recovered')
                logger.info(f"Enrollment {enrollment_id} completed: cart recovered")
                return 'recovered'

            if audience_models.is_unsubscribed(conn, store_id, enrollment['customer_email']):
                models.update_enrollment(conn, enrollment_id, stamp, expected_status=enrollment['status'],
                                         status='unsubscribed', status_reason='Address is unsubscribed')
                return 'unsubscribed'

            if step['is_discount'] and enrollment['discount_issued_at']:
                models.claim_dispatch(conn, enrollment_id, run, index, stamp)
                models.finish_dispatch(conn, enrollment_id, run, index, 'skipped', stamp,
                                       reason='Discount already issued')
                self._advance(conn, enrollment, len(steps), stamp)
                return 'skipped'

            stale_before = None if step['is_discount'] else to_iso(now - timedelta(seconds=self.claim_ttl))
            if not models.claim_dispatch(conn, enrollment_id, run, index, stamp, stale_before):
                marker = models.get_dispatch(conn, enrollment_id, run, index)
                if marker and marker['status'] == 'dispatched':
                    # Sent by an earlier tick whose advance did not land
                    self._advance(conn, enrollment, len(steps), stamp)
                    return 'advanced'
                return 'claimed'

        # The marker is claimed from here on; any failure must settle it
        try:
            result = self._hand_off(enrollment, step, cart)
        except Exception as e:
            logger.error(f"Enrollment {enrollment_id} step {index} could not be prepared: {e}")
            result = SendResult(False, reason=f"Step could not be prepared: {e}")
        sent_at = to_iso(self.clock.now())

        with Database.session(self.db_path, immediate=True) as conn:
            if not result.accepted:
                models.finish_dispatch(conn, enrollment_id, run, index, 'failed', sent_at, reason=result.reason)
                models.update_enrollment(conn, enrollment_id, sent_at, status='failed',
                                         status_reason=f"Step {index} failed: {result.reason}")
            else:
                models.finish_dispatch(conn, enrollment_id, run, index, 'dispatched', sent_at,
                                       message_id=result.message_id)
                if cart is not None:
                    models.record_reminder(conn, cart['id'], sent_at)
                self._advance(conn, enrollment, len(steps), sent_at,
                              discount_issued_at=sent_at if step['is_discount'] else None)

        if not result.accepted:
            logger.warning(f"Enrollment {enrollment_id} step {index} failed: {result.reason}")
            db_log('warning', 'recovery', f"Enrollment {enrollment_id} failed at step {index}",
                   {'reason': result.reason}, store_id=store_id)
            return 'failed'
        logger.info(f"Enrollment {enrollment_id} step {index} dispatched")
        return 'dispatched'

    @staticmethod
    def _advance(conn, enrollment, step_count, stamp, discount_issued_at=None):
        index = enrollment['current_step']
        fields = {'current_step': index + 1}
        if discount_issued_at:
            fields['discount_issued_at'] = discount_issued_at
        if not models.update_enrollment(conn, enrollment['id'], stamp, expected_step=index, **fields):
            return False
        if index + 1 >= step_count:
            models.update_enrollment(conn, enrollment['id'], stamp, expected_status=enrollment['status'],
                                     status='completed', completed_at=stamp)
        return True

    def _hand_off(self, enrollment, step, cart):
        values = {
            'customer_name': enrollment['customer_name'] or 'there',
            'customer_email': enrollment['customer_email'],
            'store_id': enrollment['store_id'],
            'discount_percent': f"{step['discount_percent']:g}" if step['discount_percent'] else '',
            'cart_total': f"{cart['total_value']:.2f}" if cart else '',
            'cart_items': ', '.join(str(item.get('name', '')) for item in cart['line_items']) if cart else '',
        }
        message = OutboundMessage(
            subject=substitute(step['email_subject'], values),
            html_body=substitute(step['email_content'], values),
            sender_name=self.sender_name,
            sender_email=self.sender_email,
        )
        try:
            return call_with_retry(
                self.transport.send, enrollment['customer_email'], message, self.transport_timeout,
                max_retries=self.transport_retries, base_delay=self.retry_backoff, sleep=self.sleep,
            )
        except Exception as e:
            return SendResult(False, reason=f"Transport error after {self.transport_retries} attempts: {e}")
