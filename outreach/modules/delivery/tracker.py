"""
Delivery Tracker
================

Ingests delivery events (sent, delivered, opened, clicked, bounced,
unsubscribed, failed) from the lifecycle manager, provider webhooks and the
tracking endpoints.

Ingestion is idempotent and commutative:
- each event has a natural key (recipient + kind, plus the link for clicks);
  a repeated key only widens its first/last occurrence timestamps
- a recipient's status and timestamps are recomputed from its full event set,
  so arrival order does not matter
- campaign counters are re-aggregated from recipient rows and never lowered
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional
from urllib.parse import quote

from outreach.core import (
    Database, NotFound, SystemClock, ValidationError, db_log, parse_iso, to_iso
)
from outreach.modules.audience import models as audience_models
from outreach.modules.campaigns import models as campaign_models
from . import models

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SENT = 'sent'
    DELIVERED = 'delivered'
    OPENED = 'opened'
    CLICKED = 'clicked'
    BOUNCED = 'bounced'
    UNSUBSCRIBED = 'unsubscribed'
    FAILED = 'failed'


class RecipientStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    DELIVERED = 'delivered'
    OPENED = 'opened'
    CLICKED = 'clicked'
    BOUNCED = 'bounced'
    UNSUBSCRIBED = 'unsubscribed'
    FAILED = 'failed'


# Absorbing kinds; when two share a timestamp the earlier entry wins
ABSORBING_PRECEDENCE = (EventKind.BOUNCED, EventKind.UNSUBSCRIBED, EventKind.FAILED)

# Progression for non-absorbed recipients, highest first
PROGRESSION = (
    (EventKind.CLICKED, RecipientStatus.CLICKED),
    (EventKind.OPENED, RecipientStatus.OPENED),
    (EventKind.DELIVERED, RecipientStatus.DELIVERED),
    (EventKind.SENT, RecipientStatus.SENT),
)

FIRST_SEEN_FIELDS = {
    EventKind.SENT: 'sent_at',
    EventKind.DELIVERED: 'delivered_at',
    EventKind.OPENED: 'opened_at',
    EventKind.CLICKED: 'first_clicked_at',
    EventKind.BOUNCED: 'bounced_at',
    EventKind.UNSUBSCRIBED: 'unsubscribed_at',
    EventKind.FAILED: 'failed_at',
}


@dataclass(frozen=True)
class DeliveryEvent:
    recipient_id: int
    kind: EventKind
    occurred_at: object
    campaign_id: Optional[int] = None
    link_url: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    @property
    def natural_key(self):
        if self.kind is EventKind.CLICKED:
            return f"{self.recipient_id}:{self.kind.value}:{self.link_url}"
        return f"{self.recipient_id}:{self.kind.value}"

    @classmethod
    def from_dict(cls, data, default_time=None):
        """Build an event from a webhook payload."""
        if not isinstance(data, dict):
            raise ValidationError('Event must be an object')
        try:
            recipient_id = int(data.get('recipient_id'))
        except (TypeError, ValueError):
            raise ValidationError('Event is missing recipient_id')
        raw_kind = data.get('kind') or data.get('type')
        try:
            kind = EventKind(raw_kind)
        except ValueError:
            raise ValidationError(f"Unknown event kind: {raw_kind}")
        occurred_at = parse_iso(data.get('occurred_at') or data.get('timestamp')) or default_time
        if occurred_at is None:
            raise ValidationError('Event is missing occurred_at')
        link_url = data.get('link_url') or data.get('url')
        if kind is EventKind.CLICKED and not link_url:
            raise ValidationError('Click events require link_url')
        campaign_id = data.get('campaign_id')
        metadata = data.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise ValidationError('metadata must be an object')
        return cls(recipient_id, kind, occurred_at,
                   int(campaign_id) if campaign_id is not None else None,
                   link_url if kind is EventKind.CLICKED else None, metadata)


def fold_recipient_events(events):
    """
    Compute a recipient's status and timestamps from its event rows.

    Pure function of the event set: first-seen timestamps are the minimum
    first occurrence per kind, ``last_clicked_at`` the maximum last click.
    """
    state = {name: None for name in models.RECIPIENT_TIMESTAMPS}
    state.update(bounce_reason=None, failure_reason=None, provider_message_id=None)
    earliest = {}

    for event in events:
        kind = EventKind(event['kind'])
        first = event['first_occurred_at']
        column = FIRST_SEEN_FIELDS[kind]
        if state[column] is None or first < state[column]:
            state[column] = first
            earliest[kind] = event
        if kind is EventKind.CLICKED:
            last = event['last_occurred_at']
            if state['last_clicked_at'] is None or last > state['last_clicked_at']:
                state['last_clicked_at'] = last

    def meta(kind):
        return (earliest[kind].get('metadata') or {}) if kind in earliest else {}

    state['bounce_reason'] = meta(EventKind.BOUNCED).get('reason')
    state['failure_reason'] = meta(EventKind.FAILED).get('reason')
    state['provider_message_id'] = meta(EventKind.SENT).get('message_id')

    absorbed = [
        (state[FIRST_SEEN_FIELDS[kind]], rank, kind)
        for rank, kind in enumerate(ABSORBING_PRECEDENCE)
        if state[FIRST_SEEN_FIELDS[kind]] is not None
    ]
    if absorbed:
        state['status'] = min(absorbed)[2].value
        return state

    state['status'] = RecipientStatus.PENDING.value
    for kind, status in PROGRESSION:
        if state[FIRST_SEEN_FIELDS[kind]] is not None:
            state['status'] = status.value
            break
    return state


def sign_recipient(secret, recipient_id):
    """Tracking token for links and pixels: '<recipient_id>.<signature>'."""
    digest = hmac.new(secret.encode(), str(recipient_id).encode(), hashlib.sha256).hexdigest()
    return f"{recipient_id}.{digest[:24]}"


def verify_token(secret, token):
    """Return the recipient id a token was issued for, or None."""
    recipient_id, _, signature = (token or '').partition('.')
    if not recipient_id.isdigit() or not signature:
        return None
    expected = sign_recipient(secret, int(recipient_id))
    if not hmac.compare_digest(expected, token):
        return None
    return int(recipient_id)


def sign_link(secret, recipient_id, url):
    """Signature binding a click target to the recipient it was issued for."""
    message = f"{recipient_id}|{url}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()[:24]


def verify_link(secret, recipient_id, url, signature):
    return bool(signature) and hmac.compare_digest(sign_link(secret, recipient_id, url), signature)


class DeliveryTracker:

    def __init__(self, db_path, clock=None):
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def ingest(self, store_id, event):
        """
        Apply one delivery event and return the updated recipient row.

        Raises NotFound for an unknown recipient and ValidationError when the
        event names a different campaign than the recipient belongs to.
        """
        if isinstance(event, dict):
            event = DeliveryEvent.from_dict(event, default_time=self.clock.now())
        stamp = to_iso(event.occurred_at)
        now = to_iso(self.clock.now())

        with Database.session(self.db_path, immediate=True) as conn:
            recipient = models.get_recipient(conn, event.recipient_id, store_id)
            if recipient is None:
                raise NotFound(f"Recipient {event.recipient_id} not found")
            campaign_id = recipient['campaign_id']
            if event.campaign_id is not None and event.campaign_id != campaign_id:
                raise ValidationError(
                    f"Recipient {event.recipient_id} does not belong to campaign {event.campaign_id}"
                )

            inserted = models.insert_event(
                conn, store_id, campaign_id, event.recipient_id, event.kind.value,
                event.natural_key, event.link_url, stamp, event.metadata
            )
            if not inserted:
                models.widen_event(conn, event.natural_key, stamp)

            state = fold_recipient_events(models.events_for_recipient(conn, event.recipient_id))
            models.write_recipient_state(conn, event.recipient_id, state, now)

            if event.kind is EventKind.UNSUBSCRIBED:
                audience_models.record_unsubscribe(
                    conn, store_id, recipient['customer_email'], stamp, 'promotional',
                    campaign_id, event.metadata.get('reason')
                )

            self._refresh_counters(conn, campaign_id, now)
            updated = models.get_recipient(conn, event.recipient_id)

        if not inserted:
            logger.debug(f"Duplicate {event.kind.value} event for recipient {event.recipient_id} absorbed")
        elif event.kind in (EventKind.BOUNCED, EventKind.FAILED):
            db_log('warning', 'delivery', f"Recipient {event.recipient_id} {event.kind.value}",
                   {'campaign_id': campaign_id, 'metadata': event.metadata}, store_id=store_id)
        return updated

    def ingest_many(self, store_id, payloads):
        """Ingest a webhook batch. Bad events are reported, not raised."""
        results = {'ingested': 0, 'errors': []}
        for index, payload in enumerate(payloads):
            try:
                self.ingest(store_id, payload)
                results['ingested'] += 1
            except (ValidationError, NotFound) as e:
                results['errors'].append({'index': index, 'error': e.message})
        return results

    @staticmethod
    def _refresh_counters(conn, campaign_id, stamp):
        totals = models.recipient_totals(conn, campaign_id)
        campaign_models.raise_counters(conn, campaign_id, totals, stamp)

    def recipient_for_token(self, token, secret):
        """Look up (store_id, recipient) for a signed tracking token."""
        recipient_id = verify_token(secret, token)
        if recipient_id is None:
            return None
        with Database.session(self.db_path) as conn:
            return models.get_recipient(conn, recipient_id)

    def list_recipients(self, campaign_id, status=None, limit=500, offset=0):
        with Database.session(self.db_path) as conn:
            return models.list_recipients(conn, campaign_id, status, limit, offset)

    def events_for_recipient(self, recipient_id, campaign_id=None):
        with Database.session(self.db_path) as conn:
            if campaign_id is not None:
                recipient = models.get_recipient(conn, recipient_id)
                if recipient is None or recipient['campaign_id'] != campaign_id:
                    raise NotFound(f"Recipient {recipient_id} not found in campaign {campaign_id}")
            return models.events_for_recipient(conn, recipient_id)


HREF_PATTERN = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)


class TrackingLinks:
    """Builds signed open-pixel, click and unsubscribe URLs for a recipient."""

    def __init__(self, base_url, secret):
        self.base_url = (base_url or '').rstrip('/')
        self.secret = secret

    def token(self, recipient_id):
        return sign_recipient(self.secret, recipient_id)

    def pixel_url(self, recipient_id):
        return f"{self.base_url}/t/o/{self.token(recipient_id)}.gif"

    def click_url(self, recipient_id, url):
        signature = sign_link(self.secret, recipient_id, url)
        return f"{self.base_url}/t/c/{self.token(recipient_id)}?u={quote(url, safe='')}&s={signature}"

    def unsubscribe_url(self, recipient_id):
        return f"{self.base_url}/t/u/{self.token(recipient_id)}"

    def instrument(self, html, recipient_id):
        """Route absolute links through the click endpoint and append the open pixel."""
        unsubscribe = self.unsubscribe_url(recipient_id)

        def rewrite(match):
            url = match.group(1)
            if url == unsubscribe:
                return match.group(0)
            return f'href="{self.click_url(recipient_id, url)}"'

        pixel = f'<img src="{self.pixel_url(recipient_id)}" width="1" height="1" alt="" style="display:none">'
        return HREF_PATTERN.sub(rewrite, html or '') + pixel
