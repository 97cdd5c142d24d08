"""
Recipient Resolver
==================

Turns a campaign's target audience into an ordered, deduplicated list of
recipient seeds: members of every referenced segment, plus matches of the
ad-hoc criteria, minus unsubscribed addresses.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from outreach.core import (
    Database, NotFound, OutreachError, ResolutionFailure, SystemClock, ValidationError, to_iso
)
from outreach.modules.segments.criteria import parse_criteria
from . import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetAudience:
    segment_ids: Tuple[int, ...] = ()
    custom_criteria: Optional[Dict] = None
    include_unsubscribed: bool = False

    @property
    def is_empty(self):
        return not self.segment_ids and not self.custom_criteria

    def to_dict(self):
        return {
            'segment_ids': list(self.segment_ids),
            'custom_criteria': self.custom_criteria,
            'include_unsubscribed': self.include_unsubscribed,
        }

    @classmethod
    def from_dict(cls, data):
        """Validate a target_audience payload."""
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError('target_audience must be an object')
        raw_ids = data.get('segment_ids') or []
        if not isinstance(raw_ids, (list, tuple)):
            raise ValidationError('segment_ids must be a list')
        try:
            segment_ids = tuple(dict.fromkeys(int(s) for s in raw_ids))
        except (TypeError, ValueError):
            raise ValidationError('segment_ids must be integers')
        criteria = data.get('custom_criteria') or None
        if criteria is not None:
            parse_criteria(criteria)
        return cls(segment_ids, criteria, bool(data.get('include_unsubscribed', False)))


@dataclass(frozen=True)
class RecipientSeed:
    customer_id: Optional[int]
    email: str
    name: Optional[str] = None
    segment_id: Optional[int] = None

    @property
    def address_key(self):
        return self.email.strip().lower()

    def to_dict(self):
        return {
            'customer_id': self.customer_id,
            'email': self.email,
            'name': self.name,
            'segment_id': self.segment_id,
        }


class RecipientResolver:

    def __init__(self, evaluator, customer_store, db_path, clock=None):
        self.evaluator = evaluator
        self.customer_store = customer_store
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def resolve(self, store_id, audience) -> List[RecipientSeed]:
        """
        Resolve ``audience`` for ``store_id``.

        Raises:
            ValidationError: unknown segment id or malformed criteria
            ResolutionFailure: the record store could not be read
        """
        if isinstance(audience, dict):
            audience = TargetAudience.from_dict(audience)

        try:
            origin = {}
            for segment_id in audience.segment_ids:
                try:
                    member_ids = self.evaluator.members(store_id, segment_id)
                except NotFound:
                    raise ValidationError(f"Unknown segment {segment_id}")
                for customer_id in sorted(member_ids):
                    origin.setdefault(customer_id, segment_id)
            if audience.custom_criteria:
                for customer_id in sorted(self.evaluator.evaluate(store_id, audience.custom_criteria)):
                    origin.setdefault(customer_id, None)

            profiles = self.customer_store.get_customers(store_id, origin.keys()) if origin else []

            blocked = set()
            if not audience.include_unsubscribed:
                with Database.session(self.db_path) as conn:
                    blocked = models.unsubscribed_emails(conn, store_id)
        except OutreachError:
            raise
        except Exception as e:
            logger.error(f"Recipient resolution failed for store {store_id}: {e}")
            raise ResolutionFailure(f"Could not resolve recipients: {e}", {'store_id': store_id}) from e

        seeds = {}
        for profile in profiles:
            key = models.normalise_email(profile.email)
            if not key or key in blocked or key in seeds:
                continue
            seeds[key] = RecipientSeed(profile.customer_id, profile.email.strip(), profile.name,
                                       origin.get(profile.customer_id))
        return [seeds[key] for key in sorted(seeds)]

    def estimate(self, store_id, audience):
        return len(self.resolve(store_id, audience))

    # -- unsubscribe list --------------------------------------------------

    def record_unsubscribe(self, store_id, email, unsubscribe_type='all', campaign_id=None, reason=None):
        with Database.session(self.db_path, immediate=True) as conn:
            return models.record_unsubscribe(
                conn, store_id, email, to_iso(self.clock.now()), unsubscribe_type, campaign_id, reason
            )

    def is_unsubscribed(self, store_id, email):
        with Database.session(self.db_path) as conn:
            return models.is_unsubscribed(conn, store_id, email)

    def list_unsubscribes(self, store_id, since=None):
        with Database.session(self.db_path) as conn:
            return models.list_unsubscribes(conn, store_id, to_iso(since) if since else None)
