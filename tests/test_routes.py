"""
HTTP surface tests: admin guard, campaign CRUD and actions, the delivery
webhook and the public tracking endpoints.
"""

from urllib.parse import parse_qs, quote, urlparse

from conftest import STORE, WEBHOOK_SECRET, add_customer, campaign_payload

BASE = f"/api/outreach/{STORE}"


def create_segment(admin_client):
    response = admin_client.post(f"{BASE}/segments", json={
        'name': 'Big Spenders',
        'criteria': {'total_spent': {'operator': 'greater_than', 'value': 500}},
    })
    assert response.status_code == 201, response.get_json()
    return response.get_json()['segment']


def sent_campaign(engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    engine.lifecycle.send_now(STORE, campaign['id'])
    return campaign, engine.tracker.list_recipients(campaign['id'])


# ---------------------------------------------------------------------------
# 1. Customers and segments
# ---------------------------------------------------------------------------

def test_orders_build_customer_aggregates(admin_client):
    for email, amount in (("alice@x.com", 600), ("bob@x.com", 400)):
        response = admin_client.post(f"{BASE}/orders", json={'customer_email': email, 'total_amount': amount})
        assert response.status_code == 201

    customers = admin_client.get(f"{BASE}/customers").get_json()['customers']
    spent = {c['email']: c['total_spent'] for c in customers}
    assert spent == {"alice@x.com": 600.0, "bob@x.com": 400.0}

    segment = create_segment(admin_client)
    assert segment['member_count'] == 1


def test_bad_segment_criteria_is_400(admin_client):
    response = admin_client.post(f"{BASE}/segments", json={
        'name': 'Broken', 'criteria': {'total_spent': {'operator': 'between', 'value': [9, 1]}},
    })
    assert response.status_code == 400
    assert response.get_json()['type'] == 'ValidationError'


# ---------------------------------------------------------------------------
# 2. Campaign CRUD and actions
# ---------------------------------------------------------------------------

def test_campaign_crud_and_send(admin_client, engine, transport):
    add_customer(engine, "alice@x.com", "Alice", 600)
    segment = create_segment(admin_client)

    response = admin_client.post(f"{BASE}/campaigns", json=campaign_payload([segment['id']]))
    assert response.status_code == 201
    campaign = response.get_json()['campaign']
    url = f"{BASE}/campaigns/{campaign['id']}"

    response = admin_client.put(url, json={'name': 'Renamed'})
    assert response.status_code == 200
    assert response.get_json()['campaign']['name'] == 'Renamed'

    response = admin_client.post(f"{url}/send")
    assert response.status_code == 200
    assert response.get_json()['campaign']['status'] == 'sent'
    assert len(transport.sent) == 1

    response = admin_client.post(f"{url}/pause")
    assert response.status_code == 409, "Sent is terminal"

    recipients = admin_client.get(f"{url}/recipients").get_json()['recipients']
    assert [r['customer_email'] for r in recipients] == ["alice@x.com"]


def test_schedule_route_validates_time(admin_client, engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    url = f"{BASE}/campaigns/{campaign['id']}/schedule"

    assert admin_client.post(url, json={'scheduled_at': '2020-01-01T00:00:00Z'}).status_code == 400

    response = admin_client.post(url, json={'scheduled_at': '2026-03-10T09:00:00', 'timezone': 'Europe/London'})
    assert response.status_code == 200
    assert response.get_json()['campaign']['status'] == 'scheduled'


def test_unknown_campaign_is_404(admin_client):
    assert admin_client.get(f"{BASE}/campaigns/999").status_code == 404


def test_campaigns_are_scoped_to_store(admin_client, engine, spenders):
    campaign = engine.lifecycle.create_campaign(STORE, campaign_payload([spenders['id']]))
    assert admin_client.get(f"/api/outreach/store-2/campaigns/{campaign['id']}").status_code == 404


# ---------------------------------------------------------------------------
# 3. Delivery webhook -- admin session or shared secret
# ---------------------------------------------------------------------------

def test_webhook_requires_secret(client, engine, spenders):
    _, recipients = sent_campaign(engine, spenders)
    payload = {'recipient_id': recipients[0]['id'], 'kind': 'delivered'}

    assert client.post(f"{BASE}/delivery/events", json=payload).status_code == 401
    wrong = {'X-Outreach-Webhook-Secret': 'guess'}
    assert client.post(f"{BASE}/delivery/events", json=payload, headers=wrong).status_code == 401

    headers = {'X-Outreach-Webhook-Secret': WEBHOOK_SECRET}
    response = client.post(f"{BASE}/delivery/events", json=payload, headers=headers)
    assert response.status_code == 200
    assert response.get_json()['recipient']['status'] == 'delivered'


def test_webhook_batch_reports_partial_errors(client, engine, spenders):
    _, recipients = sent_campaign(engine, spenders)
    headers = {'X-Outreach-Webhook-Secret': WEBHOOK_SECRET}
    batch = {'events': [
        {'recipient_id': recipients[0]['id'], 'kind': 'opened'},
        {'recipient_id': 12345, 'kind': 'opened'},
    ]}

    response = client.post(f"{BASE}/delivery/events", json=batch, headers=headers)
    assert response.status_code == 207
    body = response.get_json()
    assert body['ingested'] == 1
    assert body['errors'][0]['index'] == 1


def test_recipient_events_scoped_to_campaign(admin_client, engine, spenders):
    first, _ = sent_campaign(engine, spenders)
    second, others = sent_campaign(engine, spenders)
    foreign = others[0]['id']

    url = f"{BASE}/campaigns/{first['id']}/recipients/{foreign}/events"
    assert admin_client.get(url).status_code == 404, "A recipient is only readable through its own campaign"

    response = admin_client.get(f"{BASE}/campaigns/{second['id']}/recipients/{foreign}/events")
    assert response.status_code == 200
    assert 'sent' in [e['kind'] for e in response.get_json()['events']]


# ---------------------------------------------------------------------------
# 4. Public tracking endpoints
# ---------------------------------------------------------------------------

def test_open_pixel_records_open(client, engine, spenders):
    campaign, recipients = sent_campaign(engine, spenders)
    pixel_url = engine.tracking.pixel_url(recipients[0]['id'])

    response = client.get(urlparse(pixel_url).path)
    assert response.status_code == 200
    assert response.mimetype == 'image/gif'
    assert 'no-store' in response.headers['Cache-Control']
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['total_opened'] == 1

    tampered = client.get("/t/o/1.deadbeef.gif")
    assert tampered.status_code == 200, "The pixel renders even for an invalid token"


def test_click_redirects_and_records(client, engine, spenders):
    campaign, recipients = sent_campaign(engine, spenders)
    click_url = urlparse(engine.tracking.click_url(recipients[0]['id'], 'https://shop.example/new'))

    response = client.get(f"{click_url.path}?{click_url.query}")
    assert response.status_code == 302
    assert response.headers['Location'] == 'https://shop.example/new'
    assert engine.lifecycle.get_campaign(STORE, campaign['id'])['total_clicked'] == 1

    token = click_url.path.rsplit('/', 1)[-1]
    assert client.get(f"/t/c/{token}?u=javascript:alert(1)").status_code == 400
    assert client.get("/t/c/1.bad?u=https://shop.example/").status_code == 400


def test_click_refuses_targets_not_issued_for_recipient(client, engine, spenders):
    campaign, recipients = sent_campaign(engine, spenders)
    alice, carol = recipients[0]['id'], recipients[1]['id']
    issued = urlparse(engine.tracking.click_url(alice, 'https://shop.example/new'))
    signature = parse_qs(issued.query)['s'][0]

    foreign = client.get(f"{issued.path}?u={quote('https://evil.example/phish', safe='')}&s={signature}")
    assert foreign.status_code == 400, "A valid token must not redirect to an arbitrary site"
    assert client.get(f"{issued.path}?u={quote('https://shop.example/new', safe='')}").status_code == 400

    carol_token = urlparse(engine.tracking.click_url(carol, 'https://shop.example/new')).path.rsplit('/', 1)[-1]
    swapped = client.get(f"/t/c/{carol_token}?u={quote('https://shop.example/new', safe='')}&s={signature}")
    assert swapped.status_code == 400, "A link signature is bound to its recipient"

    stored = engine.lifecycle.get_campaign(STORE, campaign['id'])
    assert stored['total_clicked'] == 0
    assert engine.analytics.campaign_analytics(STORE, campaign['id'])['top_clicked_links'] == []


def test_unsubscribe_link(client, engine, spenders):
    _, recipients = sent_campaign(engine, spenders)
    recipient = recipients[0]
    path = urlparse(engine.tracking.unsubscribe_url(recipient['id'])).path

    response = client.post(path)
    assert response.status_code == 200
    assert response.get_json()['email'] == recipient['customer_email']
    assert engine.resolver.is_unsubscribed(STORE, recipient['customer_email'])
    assert client.get("/t/u/nope").status_code == 400


# ---------------------------------------------------------------------------
# 5. Recovery and analytics routes
# ---------------------------------------------------------------------------

def test_cart_and_enrollment_routes(admin_client, clock, transport):
    assert admin_client.post(f"{BASE}/sequences/default").status_code == 201

    response = admin_client.post(f"{BASE}/carts", json={'customer_email': 'bob@x.com', 'total_value': 80})
    assert response.status_code == 201
    enrollment = response.get_json()['enrollment']
    assert enrollment['status'] == 'active'

    response = admin_client.post(f"{BASE}/enrollments/{enrollment['id']}/send-now")
    assert response.status_code == 200
    assert response.get_json()['outcome'] == 'dispatched'
    assert len(transport.sent) == 1

    assert admin_client.post(f"{BASE}/enrollments/{enrollment['id']}/teleport").status_code == 404

    report = admin_client.get(f"{BASE}/analytics/carts").get_json()
    assert report['total_abandoned'] == 1
