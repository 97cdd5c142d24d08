"""
Analytics tests: safe rates, the Big Spenders scenario end to end, cart and
sequence reporting.
"""

import pytest

from outreach.core import NotFound
from outreach.modules.analytics.aggregator import campaign_rates, delivered_count, rate

from conftest import STORE, campaign_payload


# ---------------------------------------------------------------------------
# 1. Rate arithmetic
# ---------------------------------------------------------------------------

def test_rate_with_zero_denominator_is_zero():
    assert rate(5, 0) == 0.0
    assert rate(0, 0) == 0.0
    assert rate(1, 3) == 33.33


def test_campaign_rates_for_untouched_campaign():
    rates = campaign_rates({}, 0)
    assert set(rates.values()) == {0.0}


def test_delivered_count_falls_back_to_sent_minus_bounced():
    assert delivered_count({'total_sent': 10, 'total_bounced': 2, 'total_delivered': 0}) == 8
    assert delivered_count({'total_sent': 10, 'total_bounced': 2, 'total_delivered': 9}) == 9


# ---------------------------------------------------------------------------
# 2. Scenario -- Big Spenders campaign, Alice opens
# ---------------------------------------------------------------------------

def test_big_spenders_open_rate(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])
    alice = engine.tracker.list_recipients(campaign['id'])[0]
    assert alice['customer_email'] == "alice@x.com"

    engine.tracker.ingest(STORE, {'recipient_id': alice['id'], 'kind': 'opened'})

    report = engine.analytics.campaign_analytics(STORE, campaign['id'])
    assert report['total_recipients'] == 2
    assert report['total_sent'] == 2
    assert report['total_opened'] == 1
    assert report['open_rate'] == 50.0
    assert report['click_rate'] == 0.0
    assert len(report['opens_over_time']) == 1
    assert report['opens_over_time'][0]['count'] == 1


def test_top_clicked_links(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])
    recipients = engine.tracker.list_recipients(campaign['id'])

    for recipient in recipients:
        engine.tracker.ingest(STORE, {'recipient_id': recipient['id'], 'kind': 'clicked',
                                      'link_url': 'https://shop.example/new'})
    engine.tracker.ingest(STORE, {'recipient_id': recipients[0]['id'], 'kind': 'clicked',
                                  'link_url': 'https://shop.example/sale'})

    links = engine.analytics.campaign_analytics(STORE, campaign['id'])['top_clicked_links']
    assert links[0] == {'link_url': 'https://shop.example/new', 'clicks': 2, 'unique_clicks': 2}
    assert links[1]['link_url'] == 'https://shop.example/sale'


def test_unknown_campaign_analytics(engine):
    with pytest.raises(NotFound):
        engine.analytics.campaign_analytics(STORE, 404)


# ---------------------------------------------------------------------------
# 3. Store overview
# ---------------------------------------------------------------------------

def test_overview_of_empty_store(engine):
    overview = engine.analytics.store_overview("empty-store")
    assert overview['total_campaigns'] == 0
    assert overview['average_open_rate'] == 0.0
    assert overview['top_campaigns'] == []


def test_overview_rolls_up_sent_campaigns(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])
    engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']], name='Draft only'))
    alice = engine.tracker.list_recipients(campaign['id'])[0]
    engine.tracker.ingest(STORE, {'recipient_id': alice['id'], 'kind': 'opened'})

    overview = engine.analytics.store_overview(STORE)
    assert overview['total_campaigns'] == 2
    assert overview['campaigns_last_30_days'] == 2
    assert overview['emails_sent_last_30_days'] == 2
    assert overview['average_open_rate'] == 50.0
    assert [c['id'] for c in overview['top_campaigns']] == [campaign['id']]
    segment = overview['segment_performance'][0]
    assert segment['recipients'] == 2
    assert segment['open_rate'] == 50.0


# ---------------------------------------------------------------------------
# 4. Carts and sequences
# ---------------------------------------------------------------------------

def test_cart_abandonment_report(engine, clock):
    engine.recovery.create_default_sequence(STORE)
    engine.recovery.record_abandonment(STORE, {
        'customer_email': 'bob@x.com', 'total_value': 80,
        'line_items': [{'product_id': 'boots', 'name': 'Boots', 'price': 80}],
    })
    engine.recovery.record_abandonment(STORE, {
        'customer_email': 'ann@x.com', 'total_value': 20,
        'line_items': [{'product_id': 'socks', 'name': 'Socks', 'price': 10, 'quantity': 2}],
    })
    clock.advance(hours=3)
    engine.recovery.record_completed_order(STORE, 'ann@x.com', 'order-1')

    report = engine.analytics.cart_abandonment(STORE)
    assert report['total_abandoned'] == 2
    assert report['total_value'] == 100.0
    assert report['recovered_carts'] == 1
    assert report['recovery_rate'] == 50.0
    assert report['total_recoverable_value'] == 80.0
    assert len(report['abandonment_by_hour']) == 24
    assert report['abandonment_by_hour'][10]['count'] == 2
    socks = next(p for p in report['top_abandoned_products'] if p['product_id'] == 'socks')
    assert socks['quantity'] == 2
    assert socks['value'] == 20.0


def test_sequence_analytics(engine, clock):
    sequence = engine.recovery.create_default_sequence(STORE)
    engine.recovery.record_abandonment(STORE, {'customer_email': 'bob@x.com', 'total_value': 80})
    clock.advance(hours=1)
    engine.recovery.tick()

    report = engine.analytics.sequence_analytics(STORE, sequence['id'])
    assert report['total_enrollments'] == 1
    assert report['enrollments_by_status']['active'] == 1
    assert report['completion_rate'] == 0.0
    assert [s['dispatched'] for s in report['steps']] == [1, 0, 0]
