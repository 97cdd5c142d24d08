"""
Campaign Lifecycle Manager
==========================

Owns the campaign state machine:

    draft     -> scheduled | sending | cancelled
    scheduled -> sending | paused | cancelled
    sending   -> sent | paused | cancelled
    paused    -> sending | cancelled
    sent, cancelled: terminal

Entering ``sending`` freezes the recipient roster exactly once. Recipient
dispatch fans out over a bounded thread pool; every hand-off has a timeout
and a retry budget, and a failure only marks that recipient ``failed``.
Sent/failed outcomes are recorded through the delivery tracker, which is the
only writer of campaign counters.
"""

import logging
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from enum import Enum

from outreach.core import (
    Database, EmptyAudience, InvalidTransition, NotFound, ResolutionFailure, SystemClock,
    ValidationError, call_with_retry, db_log, to_iso
)
from outreach.core.clock import get_zone
from outreach.modules.audience.resolver import TargetAudience
from outreach.modules.delivery import models as delivery_models
from outreach.modules.delivery.tracker import DeliveryEvent, EventKind
from outreach.modules.email import OutboundMessage, SendResult, is_valid_email, substitute
from . import models

logger = logging.getLogger(__name__)


class CampaignStatus(str, Enum):
    DRAFT = 'draft'
    SCHEDULED = 'scheduled'
    SENDING = 'sending'
    SENT = 'sent'
    PAUSED = 'paused'
    CANCELLED = 'cancelled'


class CampaignType(str, Enum):
    ONE_TIME = 'one_time'
    RECURRING = 'recurring'
    AUTOMATED = 'automated'
    DRIP_SEQUENCE = 'drip_sequence'


TRANSITIONS = {
    CampaignStatus.DRAFT: {CampaignStatus.SCHEDULED, CampaignStatus.SENDING, CampaignStatus.CANCELLED},
    CampaignStatus.SCHEDULED: {CampaignStatus.SENDING, CampaignStatus.PAUSED, CampaignStatus.CANCELLED},
    CampaignStatus.SENDING: {CampaignStatus.SENT, CampaignStatus.PAUSED, CampaignStatus.CANCELLED},
    CampaignStatus.PAUSED: {CampaignStatus.SENDING, CampaignStatus.CANCELLED},
    CampaignStatus.SENT: set(),
    CampaignStatus.CANCELLED: set(),
}

TERMINAL_STATES = {CampaignStatus.SENT, CampaignStatus.CANCELLED}

EDITABLE_STATES = {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED}

REQUIRED_FIELDS = ('name', 'subject_line', 'sender_name', 'sender_email')

def can_transition(current, target):
    return CampaignStatus(target) in TRANSITIONS[CampaignStatus(current)]


class CampaignLifecycle:

    def __init__(self, db_path, resolver, tracker, transport, clock=None, tracking=None,
                 max_workers=4, transport_timeout=15.0, transport_retries=3, retry_backoff=1.0,
                 resolution_max_attempts=5, resolution_backoff=60.0, claim_ttl=600, sleep=time.sleep):
        self.db_path = db_path
        self.resolver = resolver
        self.tracker = tracker
        self.transport = transport
        self.clock = clock or SystemClock()
        self.tracking = tracking
        self.max_workers = max(1, int(max_workers))
        self.transport_timeout = transport_timeout
        self.transport_retries = transport_retries
        self.retry_backoff = retry_backoff
        self.resolution_max_attempts = resolution_max_attempts
        self.resolution_backoff = resolution_backoff
        self.claim_ttl = claim_ttl
        self.sleep = sleep

    # -- reads -------------------------------------------------------------

    def get_campaign(self, store_id, campaign_id):
        with Database.session(self.db_path) as conn:
            campaign = models.get_campaign(conn, store_id, campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        return campaign

    def list_campaigns(self, store_id, status=None):
        if status is not None:
            try:
                status = CampaignStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown campaign status: {status}")
        with Database.session(self.db_path) as conn:
            return models.list_campaigns(conn, store_id, status)

    # -- authoring ---------------------------------------------------------

    def _validate(self, data, partial=False):
        fields = {k: data[k] for k in models.EDITABLE_FIELDS if k in data}
        for name in REQUIRED_FIELDS:
            if partial and name not in data:
                continue
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
            fields[name] = value.strip()
        if 'html_content' in fields and fields['html_content'] is None:
            fields['html_content'] = ''
        if 'sender_email' in fields and not is_valid_email(fields['sender_email']):
            raise ValidationError(f"Invalid sender_email: {fields['sender_email']}")
        if fields.get('reply_to_email') and not is_valid_email(fields['reply_to_email']):
            raise ValidationError(f"Invalid reply_to_email: {fields['reply_to_email']}")
        if 'campaign_type' in fields:
            try:
                fields['campaign_type'] = CampaignType(fields['campaign_type']).value
            except ValueError:
                raise ValidationError(f"Unknown campaign type: {fields['campaign_type']}")
        if 'timezone' in fields:
            get_zone(fields['timezone'])
        if 'target_audience' in fields:
            fields['target_audience'] = TargetAudience.from_dict(fields['target_audience']).to_dict()
        if fields.get('scheduled_at'):
            tz_name = fields.get('timezone') or data.get('timezone') or 'UTC'
            fields['scheduled_at'] = to_iso(self.clock.localize(fields['scheduled_at'], tz_name))
        fields.pop('estimated_recipients', None)
        return fields

    def _estimate_quietly(self, store_id, audience):
        """Estimate for display; a record store outage leaves the previous value."""
        try:
            return self.resolver.estimate(store_id, audience)
        except ResolutionFailure as e:
            logger.warning(f"Could not estimate recipients for store {store_id}: {e}")
            return None

    def create_campaign(self, store_id, data):
        fields = self._validate(data or {})
        fields.setdefault('target_audience', TargetAudience().to_dict())
        estimate = self._estimate_quietly(store_id, fields['target_audience'])
        if estimate is not None:
            fields['estimated_recipients'] = estimate
        stamp = to_iso(self.clock.now())

        with Database.session(self.db_path, immediate=True) as conn:
            campaign_id = models.insert_campaign(conn, store_id, fields, stamp)

        logger.info(f"Campaign {campaign_id} created for store {store_id}")
        db_log('info', 'campaigns', f"Campaign created: {fields['name']}", {'id': campaign_id}, store_id=store_id)

        if fields.get('send_immediately'):
            self.send_now(store_id, campaign_id)
        return self.get_campaign(store_id, campaign_id)

    def update_campaign(self, store_id, campaign_id, data):
        campaign = self.get_campaign(store_id, campaign_id)
        if CampaignStatus(campaign['status']) not in EDITABLE_STATES:
            raise InvalidTransition(f"Campaign {campaign_id} is {campaign['status']} and can no longer be edited")
        fields = self._validate(data or {}, partial=True)
        if 'scheduled_at' in fields and campaign['status'] == CampaignStatus.SCHEDULED.value:
            raise ValidationError('Use the schedule action to move a scheduled campaign')
        if 'target_audience' in fields:
            estimate = self._estimate_quietly(store_id, fields['target_audience'])
            if estimate is not None:
                fields['estimated_recipients'] = estimate

        with Database.session(self.db_path, immediate=True) as conn:
            models.update_fields(conn, campaign_id, fields, to_iso(self.clock.now()))
        return self.get_campaign(store_id, campaign_id)

    def delete_campaign(self, store_id, campaign_id):
        """Delete a campaign with its recipients and delivery events."""
        with Database.lock_for(f"campaign:{campaign_id}"):
            campaign = self.get_campaign(store_id, campaign_id)
            if campaign['status'] == CampaignStatus.SENDING.value:
                raise InvalidTransition(f"Campaign {campaign_id} is sending; pause or cancel it first")
            with Database.session(self.db_path, immediate=True) as conn:
                models.delete_campaign(conn, store_id, campaign_id)
        db_log('info', 'campaigns', f"Campaign {campaign_id} deleted", store_id=store_id)

    def refresh_estimate(self, store_id, campaign_id):
        campaign = self.get_campaign(store_id, campaign_id)
        estimate = self.resolver.estimate(store_id, campaign['target_audience'])
        if campaign['roster_frozen_at'] is None:
            with Database.session(self.db_path, immediate=True) as conn:
                models.set_state_fields(conn, campaign_id, to_iso(self.clock.now()),
                                        estimated_recipients=estimate)
        return estimate

    # -- transitions -------------------------------------------------------

    @staticmethod
    def _check(campaign, target):
        current = CampaignStatus(campaign['status'])
        if current in TERMINAL_STATES:
            raise InvalidTransition(
                f"Campaign {campaign['id']} is {current.value}; no further transitions are allowed",
                {'from': current.value, 'to': target.value}
            )
        if not can_transition(current, target):
            raise InvalidTransition(
                f"Cannot move campaign {campaign['id']} from {current.value} to {target.value}",
                {'from': current.value, 'to': target.value}
            )
        return current

    def _transition(self, store_id, campaign_id, target, **fields):
        with Database.lock_for(f"campaign:{campaign_id}"):
            campaign = self.get_campaign(store_id, campaign_id)
            current = self._check(campaign, target)
            with Database.session(self.db_path, immediate=True) as conn:
                moved = models.compare_and_set_status(
                    conn, campaign_id, current.value, target.value, to_iso(self.clock.now()), **fields
                )
            if not moved:
                raise InvalidTransition(f"Campaign {campaign_id} changed state concurrently")

        logger.info(f"Campaign {campaign_id}: {current.value} -> {target.value}")
        db_log('info', 'campaigns', f"Campaign {campaign_id} {current.value} -> {target.value}",
               {'reason': fields.get('status_reason')}, store_id=store_id)
        return self.get_campaign(store_id, campaign_id)

    def schedule(self, store_id, campaign_id, scheduled_at=None, tz_name=None):
        """
        draft -> scheduled. Needs a future send time (naive times are read in
        the campaign's timezone) and at least one resolvable recipient.
        """
        campaign = self.get_campaign(store_id, campaign_id)
        self._check(campaign, CampaignStatus.SCHEDULED)

        tz_name = tz_name or campaign['timezone'] or 'UTC'
        get_zone(tz_name)
        raw = scheduled_at or campaign['scheduled_at']
        if not raw:
            raise ValidationError('scheduled_at is required to schedule a campaign')
        when = self.clock.localize(raw, tz_name)
        if when <= self.clock.now():
            raise ValidationError('scheduled_at must be in the future')

        estimate = self.resolver.estimate(store_id, campaign['target_audience'])
        if estimate == 0:
            raise EmptyAudience(f"Campaign {campaign_id} has no recipients to schedule for")

        return self._transition(
            store_id, campaign_id, CampaignStatus.SCHEDULED,
            scheduled_at=to_iso(when), timezone=tz_name, estimated_recipients=estimate,
            resolution_attempts=0, next_resolution_at=None, status_reason=None,
        )

    def start_send(self, store_id, campaign_id):
        """
        Enter ``sending``. The first entry resolves and freezes the roster;
        resuming a paused send keeps the roster it already has.
        """
        with Database.lock_for(f"campaign:{campaign_id}"):
            campaign = self.get_campaign(store_id, campaign_id)
            current = self._check(campaign, CampaignStatus.SENDING)
            stamp = to_iso(self.clock.now())

            seeds = None
            if campaign['roster_frozen_at'] is None:
                seeds = self.resolver.resolve(store_id, campaign['target_audience'])
                if not seeds:
                    raise EmptyAudience(f"Campaign {campaign_id} resolved to no recipients")

            with Database.session(self.db_path, immediate=True) as conn:
                fields = {'status_reason': None, 'next_resolution_at': None}
                if seeds is not None:
                    total = delivery_models.insert_recipients(conn, store_id, campaign_id, seeds, stamp)
                    fields.update(roster_frozen_at=stamp, started_at=stamp, estimated_recipients=total)
                moved = models.compare_and_set_status(
                    conn, campaign_id, current.value, CampaignStatus.SENDING.value, stamp, **fields
                )
                if not moved:
                    raise InvalidTransition(f"Campaign {campaign_id} changed state concurrently")

        if seeds is not None:
            logger.info(f"Campaign {campaign_id} roster frozen with {len(seeds)} recipients")
            db_log('info', 'campaigns', f"Campaign {campaign_id} started sending",
                   {'recipients': len(seeds)}, store_id=store_id)
        return self.get_campaign(store_id, campaign_id)

    def send_now(self, store_id, campaign_id):
        """Start (or resume) a send and dispatch it in the calling thread."""
        self.start_send(store_id, campaign_id)
        summary = self.dispatch(store_id, campaign_id)
        return self.get_campaign(store_id, campaign_id), summary

    def pause(self, store_id, campaign_id, reason=None):
        return self._transition(store_id, campaign_id, CampaignStatus.PAUSED, status_reason=reason)

    def resume(self, store_id, campaign_id):
        return self.send_now(store_id, campaign_id)

    def cancel(self, store_id, campaign_id, reason=None):
        """Stop further dispatch. Recipients already handed off stay as they are."""
        return self._transition(
            store_id, campaign_id, CampaignStatus.CANCELLED,
            status_reason=reason, completed_at=to_iso(self.clock.now()),
        )

    # -- dispatch ----------------------------------------------------------

    def _message_for(self, campaign, recipient):
        values = {
            'customer_name': recipient['customer_name'] or '',
            'customer_email': recipient['customer_email'],
            'store_id': campaign['store_id'],
            'campaign_name': campaign['name'],
        }
        html = campaign['html_content'] or ''
        if self.tracking is not None:
            values['unsubscribe_url'] = self.tracking.unsubscribe_url(recipient['id'])
            html = self.tracking.instrument(substitute(html, values), recipient['id'])
        else:
            html = substitute(html, values)
        return OutboundMessage(
            subject=substitute(campaign['subject_line'], values),
            html_body=html,
            text_body=substitute(campaign['plain_text_content'], values),
            sender_name=campaign['sender_name'],
            sender_email=campaign['sender_email'],
            reply_to=campaign['reply_to_email'],
        )

    def _hand_off(self, address, message):
        try:
            return call_with_retry(
                self.transport.send, address, message, self.transport_timeout,
                max_retries=self.transport_retries, base_delay=self.retry_backoff, sleep=self.sleep,
            )
        except Exception as e:
            return SendResult(False, reason=f"Transport error after {self.transport_retries} attempts: {e}")

    def _dispatch_one(self, store_id, campaign, recipient, stale_before):
        with Database.session(self.db_path, immediate=True) as conn:
            if models.get_status(conn, campaign['id']) != CampaignStatus.SENDING.value:
                return 'stopped'
            claimed = delivery_models.claim_recipient(
                conn, recipient['id'], to_iso(self.clock.now()), stale_before
            )
        if not claimed:
            return 'skipped'

        result = self._hand_off(recipient['customer_email'], self._message_for(campaign, recipient))
        if result.accepted:
            kind, metadata = EventKind.SENT, {'message_id': result.message_id}
        else:
            kind, metadata = EventKind.FAILED, {'reason': result.reason}
            logger.warning(f"Recipient {recipient['id']} of campaign {campaign['id']} failed: {result.reason}")
        self.tracker.ingest(store_id, DeliveryEvent(
            recipient['id'], kind, self.clock.now(), campaign['id'], metadata=metadata
        ))
        return kind.value

    def dispatch(self, store_id, campaign_id):
        """
        Hand every pending recipient to the transport. Each worker re-reads
        the campaign status first, so a pause or cancel stops the fan-out.
        Returns counts per outcome.
        """
        lock = Database.lock_for(f"campaign-dispatch:{campaign_id}")
        if not lock.acquire(blocking=False):
            return {'busy': 1}
        try:
            campaign = self.get_campaign(store_id, campaign_id)
            if campaign['status'] != CampaignStatus.SENDING.value:
                return {}
            stale_before = to_iso(self.clock.now() - timedelta(seconds=self.claim_ttl))
            with Database.session(self.db_path) as conn:
                pending = delivery_models.pending_recipients(conn, campaign_id, stale_before)

            outcomes = Counter()
            with ThreadPoolExecutor(max_workers=self.max_workers,
                                    thread_name_prefix=f"campaign-{campaign_id}") as pool:
                futures = [
                    pool.submit(self._dispatch_one, store_id, campaign, recipient, stale_before)
                    for recipient in pending
                ]
                for future in as_completed(futures):
                    outcomes[future.result()] += 1

            if outcomes:
                logger.info(f"Campaign {campaign_id} dispatch: {dict(outcomes)}")
            self._complete_if_drained(store_id, campaign_id)
            return dict(outcomes)
        finally:
            lock.release()

    def _complete_if_drained(self, store_id, campaign_id):
        with Database.lock_for(f"campaign:{campaign_id}"):
            with Database.session(self.db_path, immediate=True) as conn:
                if models.get_status(conn, campaign_id) != CampaignStatus.SENDING.value:
                    return False
                if delivery_models.count_recipients(conn, campaign_id, 'pending'):
                    return False
                stamp = to_iso(self.clock.now())
                models.compare_and_set_status(
                    conn, campaign_id, CampaignStatus.SENDING.value, CampaignStatus.SENT.value,
                    stamp, completed_at=stamp
                )
        logger.info(f"Campaign {campaign_id}: sending -> sent")
        db_log('info', 'campaigns', f"Campaign {campaign_id} sent", store_id=store_id)
        return True

    # -- background --------------------------------------------------------

    def _record_resolution_failure(self, campaign, error, now):
        store_id, campaign_id = campaign['store_id'], campaign['id']
        attempts = campaign['resolution_attempts'] + 1
        reason = f"Recipient resolution failed after {attempts} attempt(s): {error.message}"
        if attempts >= self.resolution_max_attempts:
            self._transition(store_id, campaign_id, CampaignStatus.PAUSED,
                             status_reason=reason, resolution_attempts=attempts)
            return 'paused'

        retry_at = now + timedelta(seconds=self.resolution_backoff * (2 ** (attempts - 1)))
        with Database.session(self.db_path, immediate=True) as conn:
            models.set_state_fields(conn, campaign_id, to_iso(now), resolution_attempts=attempts,
                                    next_resolution_at=to_iso(retry_at), status_reason=reason)
        db_log('warning', 'campaigns', reason, {'campaign_id': campaign_id, 'retry_at': to_iso(retry_at)},
               store_id=store_id)
        return 'retrying'

    def tick(self, now=None):
        """
        One pass of the background loop: start due scheduled campaigns, then
        drain every campaign that is sending.
        """
        now = now or self.clock.now()
        summary = {'started': [], 'retrying': [], 'paused': [], 'completed': [], 'dispatched': 0}

        with Database.session(self.db_path) as conn:
            due = models.due_scheduled(conn, to_iso(now))
        for campaign in due:
            try:
                self.start_send(campaign['store_id'], campaign['id'])
                summary['started'].append(campaign['id'])
            except ResolutionFailure as e:
                summary[self._record_resolution_failure(campaign, e, now)].append(campaign['id'])
            except EmptyAudience as e:
                self._transition(campaign['store_id'], campaign['id'], CampaignStatus.PAUSED,
                                 status_reason=e.message)
                summary['paused'].append(campaign['id'])
            except InvalidTransition as e:
                logger.info(f"Skipping campaign {campaign['id']}: {e.message}")

        with Database.session(self.db_path) as conn:
            in_flight = models.in_flight(conn)
        for store_id, campaign_id in in_flight:
            outcomes = self.dispatch(store_id, campaign_id)
            summary['dispatched'] += outcomes.get('sent', 0) + outcomes.get('failed', 0)
            if self.get_campaign(store_id, campaign_id)['status'] == CampaignStatus.SENT.value:
                summary['completed'].append(campaign_id)
        return summary
