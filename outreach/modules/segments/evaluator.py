"""
Segment Evaluator
=================

Evaluates segment criteria against the record store and manages segment
definitions. Static segments are evaluated once and snapshotted; dynamic
segments re-run their predicate on every read.
"""

import logging

from outreach.core import (
    Database, NotFound, SystemClock, ValidationError, db_log, to_iso
)
from . import models
from .criteria import SegmentType, matches_all, parse_criteria

logger = logging.getLogger(__name__)

# Ready-made definitions a store can instantiate as its own segments
PREDEFINED_SEGMENTS = {
    'big_spenders': {
        'name': 'Big Spenders',
        'description': 'Customers who have spent more than 500',
        'segment_type': 'transactional',
        'criteria': {'total_spent': {'operator': 'greater_than', 'value': 500}},
    },
    'repeat_customers': {
        'name': 'Repeat Customers',
        'description': 'Customers with more than one completed order',
        'segment_type': 'transactional',
        'criteria': {'order_count': {'operator': 'greater_than', 'value': 1}},
    },
    'recent_buyers': {
        'name': 'Recent Buyers',
        'description': 'Purchased within the last 30 days',
        'segment_type': 'behavioral',
        'criteria': {'last_purchase': {'operator': 'within_days', 'value': 30}},
    },
    'lapsed_customers': {
        'name': 'Lapsed Customers',
        'description': 'No purchase for more than 90 days',
        'segment_type': 'behavioral',
        'criteria': {'last_purchase': {'operator': 'more_than_days', 'value': 90}},
    },
    'new_signups': {
        'name': 'New Signups',
        'description': 'Signed up within the last 14 days',
        'segment_type': 'demographic',
        'criteria': {'signup_date': {'operator': 'within_days', 'value': 14}},
    },
    'highly_engaged': {
        'name': 'Highly Engaged',
        'description': 'High open rate on past campaigns',
        'segment_type': 'engagement',
        'criteria': {'email_engagement': {'level': 'high', 'metric': 'open_rate'}},
    },
}


class SegmentEvaluator:

    def __init__(self, customer_store, db_path, clock=None):
        self.customer_store = customer_store
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def evaluate(self, store_id, criteria):
        """Return the set of customer ids matching ``criteria`` right now."""
        predicates = parse_criteria(criteria)
        now = self.clock.now()
        profiles = self.customer_store.list_customers(store_id)
        return {p.customer_id for p in profiles if matches_all(predicates, p, now)}

    # -- definitions -------------------------------------------------------

    def _validated_fields(self, data, partial=False):
        fields = {}
        if not partial or 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise ValidationError('Segment name is required')
            fields['name'] = name
        if not partial or 'criteria' in data:
            criteria = data.get('criteria')
            parse_criteria(criteria)
            fields['criteria'] = criteria
        if not partial or 'segment_type' in data:
            raw = data.get('segment_type', SegmentType.CUSTOM.value)
            try:
                fields['segment_type'] = SegmentType(raw).value
            except ValueError:
                raise ValidationError(f"Unknown segment type: {raw}")
        if 'description' in data:
            fields['description'] = data.get('description')
        if not partial or 'is_dynamic' in data:
            fields['is_dynamic'] = bool(data.get('is_dynamic', True))
        return fields

    def create_segment(self, store_id, data):
        fields = self._validated_fields(data)
        # Evaluate before opening the write transaction; a store failure leaves nothing behind
        members = self.evaluate(store_id, fields['criteria'])
        stamp = to_iso(self.clock.now())

        with Database.session(self.db_path, immediate=True) as conn:
            segment_id = models.insert_segment(
                conn, store_id, fields['name'], fields.get('description'), fields['segment_type'],
                fields['criteria'], fields['is_dynamic'], stamp
            )
            if fields['is_dynamic']:
                models.set_member_count(conn, segment_id, len(members), stamp)
            else:
                models.replace_members(conn, segment_id, members, stamp)
            segment = models.get_segment(conn, store_id, segment_id)

        logger.info(f"Segment {segment_id} created for store {store_id} ({len(members)} members)")
        db_log('info', 'segments', f"Segment created: {fields['name']}",
               {'id': segment_id, 'members': len(members)}, store_id=store_id)
        return segment

    def create_from_template(self, store_id, key, is_dynamic=True):
        template = PREDEFINED_SEGMENTS.get(key)
        if template is None:
            raise NotFound(f"Unknown predefined segment: {key}")
        return self.create_segment(store_id, dict(template, is_dynamic=is_dynamic))

    def update_segment(self, store_id, segment_id, data):
        current = self.get_segment(store_id, segment_id)
        fields = self._validated_fields(data, partial=True)
        criteria = fields.get('criteria', current['criteria'])
        is_dynamic = fields.get('is_dynamic', current['is_dynamic'])
        refresh = 'criteria' in fields or 'is_dynamic' in fields
        members = self.evaluate(store_id, criteria) if refresh else None
        stamp = to_iso(self.clock.now())

        with Database.session(self.db_path, immediate=True) as conn:
            models.update_segment(conn, segment_id, fields, stamp)
            if refresh:
                if is_dynamic:
                    conn.execute('DELETE FROM segment_members WHERE segment_id = ?', (segment_id,))
                    models.set_member_count(conn, segment_id, len(members), stamp)
                else:
                    models.replace_members(conn, segment_id, members, stamp)
            return models.get_segment(conn, store_id, segment_id)

    def delete_segment(self, store_id, segment_id):
        with Database.session(self.db_path, immediate=True) as conn:
            if not models.delete_segment(conn, store_id, segment_id):
                raise NotFound(f"Segment {segment_id} not found")
        db_log('info', 'segments', f"Segment {segment_id} deleted", store_id=store_id)

    def get_segment(self, store_id, segment_id):
        with Database.session(self.db_path) as conn:
            segment = models.get_segment(conn, store_id, segment_id)
        if segment is None:
            raise NotFound(f"Segment {segment_id} not found")
        return segment

    def list_segments(self, store_id):
        with Database.session(self.db_path) as conn:
            return models.list_segments(conn, store_id)

    # -- membership --------------------------------------------------------

    def members(self, store_id, segment_id):
        """
        Current member ids: the snapshot for static segments, a fresh
        evaluation for dynamic ones (which also refreshes the cached count).
        """
        segment = self.get_segment(store_id, segment_id)
        if not segment['is_dynamic']:
            with Database.session(self.db_path) as conn:
                return models.get_member_ids(conn, segment_id)

        member_ids = self.evaluate(store_id, segment['criteria'])
        with Database.session(self.db_path, immediate=True) as conn:
            models.set_member_count(conn, segment_id, len(member_ids), to_iso(self.clock.now()))
        return member_ids

    def recalculate(self, store_id, segment_id):
        """Re-run the predicate and, for static segments, replace the snapshot."""
        segment = self.get_segment(store_id, segment_id)
        member_ids = self.evaluate(store_id, segment['criteria'])
        stamp = to_iso(self.clock.now())
        with Database.session(self.db_path, immediate=True) as conn:
            if segment['is_dynamic']:
                models.set_member_count(conn, segment_id, len(member_ids), stamp)
            else:
                models.replace_members(conn, segment_id, member_ids, stamp)
            segment = models.get_segment(conn, store_id, segment_id)
        logger.info(f"Segment {segment_id} recalculated: {len(member_ids)} members")
        return segment
