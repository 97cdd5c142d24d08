"""
Campaign lifecycle tests: authoring, transitions, roster freezing,
dispatch with partial failure and the background tick.
"""

from collections import Counter

import pytest

from outreach.core import (
    EmptyAudience, InvalidTransition, ResolutionFailure, ValidationError
)
from outreach.modules.campaigns.lifecycle import CampaignStatus, can_transition

from conftest import STORE, add_customer, campaign_payload, run_concurrently


def statuses(engine, campaign_id):
    return {r['customer_email']: r['status'] for r in engine.tracker.list_recipients(campaign_id)}


# ---------------------------------------------------------------------------
# 1. Authoring -- create, validate, edit
# ---------------------------------------------------------------------------

def test_create_campaign_starts_as_draft_with_estimate(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))

    assert campaign['status'] == 'draft'
    assert campaign['estimated_recipients'] == 2
    assert campaign['target_audience']['segment_ids'] == [spenders['id']]
    assert campaign['total_sent'] == 0


@pytest.mark.parametrize("overrides", [
    {'name': ''},
    {'subject_line': None},
    {'sender_email': 'not-an-address'},
    {'campaign_type': 'weekly-ish'},
    {'timezone': 'Mars/Olympus_Mons'},
    {'target_audience': {'segment_ids': 'all'}},
])
def test_invalid_campaign_rejected(engine, overrides):
    with pytest.raises(ValidationError):
        engine.lifecycle.create_campaign(STORE, campaign_payload(**overrides))
    assert engine.lifecycle.list_campaigns(STORE) == [], "Nothing may be stored on rejection"


def test_update_only_while_editable(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    updated = engine.lifecycle.update_campaign(STORE, campaign['id'], {'subject_line': 'New subject'})
    assert updated['subject_line'] == 'New subject'
    assert updated['name'] == campaign['name'], "Partial update keeps other fields"

    engine.lifecycle.start_send(STORE, campaign['id'])
    with pytest.raises(InvalidTransition):
        engine.lifecycle.update_campaign(STORE, campaign['id'], {'subject_line': 'Too late'})


def test_list_campaigns_filters_by_status(engine, spenders):
    first = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']], name='Second'))
    engine.lifecycle.cancel(STORE, first['id'])

    assert [c['id'] for c in engine.lifecycle.list_campaigns(STORE, 'cancelled')] == [first['id']]
    assert len(engine.lifecycle.list_campaigns(STORE)) == 2
    with pytest.raises(ValidationError):
        engine.lifecycle.list_campaigns(STORE, 'archived')


# ---------------------------------------------------------------------------
# 2. Transition table
# ---------------------------------------------------------------------------

def test_transition_table():
    assert can_transition('draft', 'scheduled')
    assert can_transition('paused', 'sending')
    assert not can_transition('draft', 'sent')
    assert not can_transition('paused', 'scheduled')
    for target in CampaignStatus:
        assert not can_transition('sent', target)
        assert not can_transition('cancelled', target)


def test_terminal_campaign_rejects_every_transition(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['status'] == 'sent'

    for action in (engine.lifecycle.pause, engine.lifecycle.cancel, engine.lifecycle.start_send):
        with pytest.raises(InvalidTransition):
            action(STORE, campaign['id'])
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['status'] == 'sent', "State must be unchanged"


# ---------------------------------------------------------------------------
# 3. Scheduling
# ---------------------------------------------------------------------------

def test_schedule_reads_naive_time_in_store_timezone(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    scheduled = engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-03T09:00:00', 'America/New_York')

    assert scheduled['status'] == 'scheduled'
    assert scheduled['scheduled_at'] == '2026-03-03T14:00:00.000000+00:00'
    assert scheduled['timezone'] == 'America/New_York'


def test_schedule_in_the_past_rejected(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    with pytest.raises(ValidationError):
        engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-01T09:00:00+00:00')
    with pytest.raises(ValidationError):
        engine.lifecycle.schedule(STORE, campaign['id'])
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['status'] == 'draft'


def test_schedule_with_empty_audience_rejected(engine, spenders):
    engine.resolver.record_unsubscribe(STORE, "alice@x.com")
    engine.resolver.record_unsubscribe(STORE, "carol@x.com")
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))

    with pytest.raises(EmptyAudience):
        engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-05T09:00:00+00:00')
    with pytest.raises(EmptyAudience):
        engine.lifecycle.send_now(STORE, campaign['id'])
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['status'] == 'draft'


def test_tick_starts_due_campaign_and_completes_it(engine, spenders, clock, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-02T12:00:00+00:00')

    assert engine.lifecycle.tick()['started'] == [], "Not due yet"
    assert transport.sent == []

    clock.advance(hours=2)
    summary = engine.lifecycle.tick()

    assert summary['started'] == [campaign['id']]
    assert summary['completed'] == [campaign['id']]
    assert summary['dispatched'] == 2
    stored = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert stored['status'] == 'sent'
    assert stored['completed_at'] is not None


def test_resolution_failure_retries_then_pauses(engine, spenders, clock, monkeypatch):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-02T10:30:00+00:00')

    def unavailable(store_id, audience):
        raise ResolutionFailure("record store offline")

    monkeypatch.setattr(engine.resolver, 'resolve', unavailable)
    engine.lifecycle.resolution_max_attempts = 2
    clock.advance(hours=1)

    first = engine.lifecycle.tick()
    assert first['retrying'] == [campaign['id']]
    stored = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert stored['status'] == 'scheduled'
    assert stored['resolution_attempts'] == 1

    assert engine.lifecycle.tick()['retrying'] == [], "Backoff delays the next attempt"

    clock.advance(seconds=engine.lifecycle.resolution_backoff + 1)
    second = engine.lifecycle.tick()
    assert second['paused'] == [campaign['id']]
    stored = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert stored['status'] == 'paused'
    assert 'resolution failed' in stored['status_reason'].lower()


def test_concurrent_ticks_start_campaign_once(engine, spenders, clock, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.schedule(STORE, campaign['id'], '2026-03-02T12:00:00+00:00')
    clock.advance(hours=3)

    summaries, errors = run_concurrently(engine.lifecycle.tick)

    assert errors == [], errors
    started = [cid for summary in summaries for cid in summary['started']]
    assert started == [campaign['id']], "Only one tick may move the campaign to sending"
    assert transport.calls == Counter({"alice@x.com": 1, "carol@x.com": 1})

    engine.lifecycle.tick()
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['status'] == 'sent'
    assert len(engine.tracker.list_recipients(campaign['id'])) == 2


# ---------------------------------------------------------------------------
# 4. Sending -- roster freeze, personalisation, partial failure
# ---------------------------------------------------------------------------

def test_send_now_delivers_personalised_messages(engine, spenders, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    sent, summary = engine.lifecycle.send_now(STORE, campaign['id'])

    assert summary == {'sent': 2}
    assert sent['status'] == 'sent'
    assert sent['total_sent'] == 2
    assert sorted(to for to, _ in transport.sent) == ["alice@x.com", "carol@x.com"]

    message = transport.sent_to("alice@x.com")[0]
    assert message.subject == "Hi Alice"
    assert "https://track.example/t/c/" in message.html_body, "Links are routed through click tracking"
    assert "/t/o/" in message.html_body, "Open pixel is appended"
    assert message.sender_email == "hello@shop.example"


def test_roster_is_frozen_on_entering_sending(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    started = engine.lifecycle.start_send(STORE, campaign['id'])
    assert started['roster_frozen_at'] is not None

    add_customer(engine, "dave@x.com", "Dave", 900)
    engine.lifecycle.pause(STORE, campaign['id'])
    engine.lifecycle.resume(STORE, campaign['id'])

    assert sorted(statuses(engine, campaign['id'])) == ["alice@x.com", "carol@x.com"], (
        "A customer matching after the freeze must not be added"
    )
    final = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert final['status'] == 'sent'
    assert final['roster_frozen_at'] == started['roster_frozen_at']


def test_rejected_recipient_fails_alone(engine, spenders, transport):
    transport.reject.add("alice@x.com")
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))

    sent, summary = engine.lifecycle.send_now(STORE, campaign['id'])

    assert summary == {'sent': 1, 'failed': 1}
    assert statuses(engine, campaign['id']) == {"alice@x.com": "failed", "carol@x.com": "sent"}
    assert sent['status'] == 'sent', "A partial failure still completes the campaign"
    recipient = engine.tracker.list_recipients(campaign['id'], 'failed')[0]
    assert recipient['failure_reason'] == "Mailbox unavailable"


def test_transport_errors_are_retried_then_recorded(engine, spenders, transport):
    transport.raise_for.add("carol@x.com")
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))

    engine.lifecycle.send_now(STORE, campaign['id'])

    assert transport.calls["carol@x.com"] == 3, "Each hand-off gets the full retry budget"
    assert transport.calls["alice@x.com"] == 1
    assert statuses(engine, campaign['id'])["carol@x.com"] == "failed"


def test_pause_stops_dispatch_and_resume_finishes(engine, spenders, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.start_send(STORE, campaign['id'])
    engine.lifecycle.pause(STORE, campaign['id'], reason="Typo in subject")

    assert engine.lifecycle.dispatch(STORE, campaign['id']) == {}
    assert transport.sent == []
    paused = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert paused['status_reason'] == "Typo in subject"

    resumed, summary = engine.lifecycle.resume(STORE, campaign['id'])
    assert summary == {'sent': 2}
    assert resumed['status'] == 'sent'


def test_cancel_leaves_pending_recipients_unsent(engine, spenders, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.start_send(STORE, campaign['id'])
    cancelled = engine.lifecycle.cancel(STORE, campaign['id'], reason="Wrong audience")

    assert cancelled['status'] == 'cancelled'
    assert cancelled['completed_at'] is not None
    assert engine.lifecycle.dispatch(STORE, campaign['id']) == {}
    assert transport.sent == []
    assert set(statuses(engine, campaign['id']).values()) == {'pending'}
    with pytest.raises(InvalidTransition):
        engine.lifecycle.resume(STORE, campaign['id'])


def test_redispatch_never_sends_twice(engine, spenders, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])

    assert engine.lifecycle.dispatch(STORE, campaign['id']) == {}
    assert engine.lifecycle.tick()['dispatched'] == 0
    assert len(transport.sent) == 2


def test_delete_blocked_while_sending(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.start_send(STORE, campaign['id'])
    with pytest.raises(InvalidTransition):
        engine.lifecycle.delete_campaign(STORE, campaign['id'])

    engine.lifecycle.cancel(STORE, campaign['id'])
    engine.lifecycle.delete_campaign(STORE, campaign['id'])
    assert engine.lifecycle.list_campaigns(STORE) == []
    assert engine.tracker.list_recipients(campaign['id']) == [], "Recipients cascade with the campaign"


def test_send_immediately_on_create(engine, spenders, transport):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']], send_immediately=True))
    assert campaign['status'] == 'sent'
    assert len(transport.sent) == 2
