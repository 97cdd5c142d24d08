"""
Delivery tracking tests: idempotent, order-independent event ingestion and
the counters derived from it.
"""

import pytest

from outreach.core import NotFound, ValidationError
from outreach.modules.delivery.tracker import (
    DeliveryEvent, EventKind, fold_recipient_events, sign_link, sign_recipient, verify_link, verify_token
)

from conftest import STORE, campaign_payload


@pytest.fixture
def roster(engine, spenders):
    """A campaign in ``sending`` with a frozen two-recipient roster and nothing dispatched."""
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.start_send(STORE, campaign['id'])
    recipients = {r['customer_email']: r for r in engine.tracker.list_recipients(campaign['id'])}
    return campaign['id'], recipients


def event(recipient_id, kind, at, **extra):
    return dict(extra, recipient_id=recipient_id, kind=kind, occurred_at=at)


# ---------------------------------------------------------------------------
# 1. Idempotency -- a repeated event changes nothing but its time span
# ---------------------------------------------------------------------------

def test_duplicate_events_are_absorbed(engine, roster):
    campaign_id, recipients = roster
    alice = recipients["alice@x.com"]['id']

    engine.tracker.ingest(STORE, event(alice, 'sent', '2026-03-02T10:00:00Z'))
    engine.tracker.ingest(STORE, event(alice, 'opened', '2026-03-02T11:00:00Z'))
    engine.tracker.ingest(STORE, event(alice, 'opened', '2026-03-02T12:00:00Z'))

    campaign = engine.lifecycle.get_campaign(STORE, campaign_id)
    assert campaign['total_opened'] == 1, "A second open must not double count"

    events = engine.tracker.events_for_recipient(alice)
    opened = [e for e in events if e['kind'] == 'opened']
    assert len(opened) == 1
    assert opened[0]['occurrences'] == 2
    assert opened[0]['first_occurred_at'] < opened[0]['last_occurred_at']


def test_clicks_are_keyed_per_link(engine, roster):
    campaign_id, recipients = roster
    carol = recipients["carol@x.com"]['id']

    engine.tracker.ingest(STORE, event(carol, 'clicked', '2026-03-02T10:05:00Z', link_url='https://a.example'))
    engine.tracker.ingest(STORE, event(carol, 'clicked', '2026-03-02T10:06:00Z', link_url='https://b.example'))
    row = engine.tracker.ingest(STORE, event(carol, 'clicked', '2026-03-02T10:09:00Z', link_url='https://a.example'))

    assert row['first_clicked_at'].startswith('2026-03-02T10:05')
    assert row['last_clicked_at'].startswith('2026-03-02T10:09')
    assert engine.lifecycle.get_campaign(STORE, campaign_id)['total_clicked'] == 1


# ---------------------------------------------------------------------------
# 2. Ordering -- results do not depend on arrival order
# ---------------------------------------------------------------------------

def test_open_before_delivered_still_opens(engine, roster):
    campaign_id, recipients = roster
    alice = recipients["alice@x.com"]['id']

    engine.tracker.ingest(STORE, event(alice, 'opened', '2026-03-02T11:00:00Z'))
    row = engine.tracker.ingest(STORE, event(alice, 'delivered', '2026-03-02T10:01:00Z'))

    assert row['status'] == 'opened'
    assert row['delivered_at'].startswith('2026-03-02T10:01')
    campaign = engine.lifecycle.get_campaign(STORE, campaign_id)
    assert campaign['total_delivered'] == 1
    assert campaign['total_opened'] == 1
    assert campaign['total_sent'] == 1, "A delivered message was necessarily sent"


def test_bounce_is_absorbing_in_any_order(engine, roster):
    _, recipients = roster
    alice = recipients["alice@x.com"]['id']
    carol = recipients["carol@x.com"]['id']

    ordered = [('sent', '10:00'), ('bounced', '10:02'), ('opened', '10:05')]
    for kind, at in ordered:
        engine.tracker.ingest(STORE, event(alice, kind, f'2026-03-02T{at}:00Z', metadata={'reason': 'mailbox full'}))
    for kind, at in reversed(ordered):
        engine.tracker.ingest(STORE, event(carol, kind, f'2026-03-02T{at}:00Z', metadata={'reason': 'mailbox full'}))

    rows = {r['customer_email']: r for r in engine.tracker.list_recipients(roster[0])}
    assert rows["alice@x.com"]['status'] == rows["carol@x.com"]['status'] == 'bounced'
    assert rows["alice@x.com"]['bounce_reason'] == 'mailbox full'


def test_fold_is_order_independent():
    rows = [
        {'kind': 'sent', 'first_occurred_at': '2026-03-02T10:00:00.000000+00:00',
         'last_occurred_at': '2026-03-02T10:00:00.000000+00:00', 'metadata': {'message_id': 'm-1'}},
        {'kind': 'clicked', 'first_occurred_at': '2026-03-02T10:10:00.000000+00:00',
         'last_occurred_at': '2026-03-02T10:30:00.000000+00:00', 'metadata': {}},
        {'kind': 'opened', 'first_occurred_at': '2026-03-02T10:09:00.000000+00:00',
         'last_occurred_at': '2026-03-02T10:09:00.000000+00:00', 'metadata': {}},
    ]
    forward = fold_recipient_events(rows)
    backward = fold_recipient_events(list(reversed(rows)))

    assert forward == backward
    assert forward['status'] == 'clicked'
    assert forward['provider_message_id'] == 'm-1'
    assert forward['last_clicked_at'] == '2026-03-02T10:30:00.000000+00:00'


# ---------------------------------------------------------------------------
# 3. Unsubscribe events feed the unsubscribe list
# ---------------------------------------------------------------------------

def test_unsubscribe_event_blocks_future_campaigns(engine, roster, spenders):
    _, recipients = roster
    carol = recipients["carol@x.com"]['id']

    row = engine.tracker.ingest(STORE, DeliveryEvent(carol, EventKind.UNSUBSCRIBED, engine.clock.now()))

    assert row['status'] == 'unsubscribed'
    assert engine.resolver.is_unsubscribed(STORE, "carol@x.com")
    assert engine.resolver.estimate(STORE, {'segment_ids': [spenders['id']]}) == 1


# ---------------------------------------------------------------------------
# 4. Rejected events
# ---------------------------------------------------------------------------

def test_invalid_events_rejected(engine, roster):
    campaign_id, recipients = roster
    alice = recipients["alice@x.com"]['id']

    with pytest.raises(NotFound):
        engine.tracker.ingest(STORE, event(9999, 'sent', '2026-03-02T10:00:00Z'))
    with pytest.raises(NotFound):
        engine.tracker.ingest("store-2", event(alice, 'sent', '2026-03-02T10:00:00Z'))
    with pytest.raises(ValidationError):
        engine.tracker.ingest(STORE, event(alice, 'teleported', '2026-03-02T10:00:00Z'))
    with pytest.raises(ValidationError):
        engine.tracker.ingest(STORE, event(alice, 'clicked', '2026-03-02T10:00:00Z'))
    with pytest.raises(ValidationError):
        engine.tracker.ingest(STORE, event(alice, 'sent', '2026-03-02T10:00:00Z', campaign_id=campaign_id + 1))


def test_batch_reports_bad_events_without_aborting(engine, roster):
    _, recipients = roster
    alice = recipients["alice@x.com"]['id']

    result = engine.tracker.ingest_many(STORE, [
        event(alice, 'sent', '2026-03-02T10:00:00Z'),
        event(alice, 'nonsense', '2026-03-02T10:00:00Z'),
        event(alice, 'delivered', '2026-03-02T10:01:00Z'),
    ])

    assert result['ingested'] == 2
    assert [e['index'] for e in result['errors']] == [1]


# ---------------------------------------------------------------------------
# 5. Tracking tokens
# ---------------------------------------------------------------------------

def test_tracking_tokens_are_signed():
    token = sign_recipient("secret", 42)
    assert verify_token("secret", token) == 42
    assert verify_token("other-secret", token) is None
    assert verify_token("secret", token.replace("42.", "43.")) is None
    assert verify_token("secret", "garbage") is None


def test_click_signature_binds_recipient_and_target():
    signature = sign_link("secret", 42, "https://shop.example/new")
    assert verify_link("secret", 42, "https://shop.example/new", signature)
    assert not verify_link("secret", 42, "https://evil.example/", signature)
    assert not verify_link("secret", 43, "https://shop.example/new", signature)
    assert not verify_link("secret", 42, "https://shop.example/new", "")
