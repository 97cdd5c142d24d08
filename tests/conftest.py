"""
Shared fixtures for the Outreach test suite.

Every test gets its own temporary database directory, a FixedClock and a
FakeTransport, so sends and background ticks are fully deterministic.
"""

import os
import shutil
import tempfile
import threading
from collections import Counter

import pytest
from flask import Flask

from outreach import Outreach
from outreach.core import FixedClock
from outreach.modules.email import SendResult

STORE = "store-1"
START = "2026-03-02T10:00:00+00:00"
WEBHOOK_SECRET = "hook-secret"


class FakeTransport:
    """Records every hand-off. Addresses can be scripted to reject or raise."""

    def __init__(self):
        self.sent = []
        self.calls = Counter()
        self.reject = set()
        self.raise_for = set()
        self._lock = threading.Lock()

    def send(self, address, message, timeout):
        with self._lock:
            self.calls[address] += 1
            if address in self.raise_for:
                raise ConnectionError(f"connection reset sending to {address}")
            if address in self.reject:
                return SendResult(False, reason="Mailbox unavailable")
            self.sent.append((address, message))
            return SendResult(True, message_id=f"msg-{len(self.sent)}")

    def sent_to(self, address):
        return [message for to, message in self.sent if to == address]


def configure_app(app, db_dir):
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"
    app.config["DB_DIR"] = db_dir
    app.config["OUTREACH_DB"] = os.path.join(db_dir, "outreach.db")
    app.config["ANALYTICS_DB"] = os.path.join(db_dir, "analytics.db")
    app.config["TRACKING_BASE_URL"] = "https://track.example"
    app.config["OUTREACH_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    app.config["OUTREACH_TRANSPORT_RETRIES"] = 3
    app.config["OUTREACH_SEND_WORKERS"] = 4
    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_db_dir():
    """Create a temporary directory for test databases, cleaned up after."""
    d = tempfile.mkdtemp(prefix="outreach-test-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def app(tmp_db_dir, clock, transport):
    """Flask app with every Outreach module registered and a fake transport."""
    app = configure_app(Flask(__name__), tmp_db_dir)
    Outreach(app, {
        'clock': clock,
        'transport': transport,
        'sleep': lambda seconds: None,
    })
    return app


@pytest.fixture
def engine(app):
    return app.extensions["outreach"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["admin_id"] = 1
    return client


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

def add_customer(engine, email, name=None, spent=None, store_id=STORE, order_at=None, **fields):
    """Create a customer and, when ``spent`` is given, one completed order for that amount."""
    data = dict(fields, email=email, name=name)
    customer = engine.customer_store.upsert_customer(store_id, data, engine.clock.now())
    if spent is not None:
        order = {'customer_email': email, 'total_amount': spent, 'status': 'completed'}
        if order_at is not None:
            order['created_at'] = order_at
        engine.customer_store.record_order(store_id, order, engine.clock.now())
    return customer


def big_spenders(engine, store_id=STORE):
    return engine.segments.create_segment(store_id, {
        'name': 'Big Spenders',
        'segment_type': 'transactional',
        'criteria': {'total_spent': {'operator': 'greater_than', 'value': 500}},
    })


def campaign_payload(segment_ids=(), **overrides):
    payload = {
        'name': 'Spring launch',
        'subject_line': 'Hi {{customer_name}}',
        'sender_name': 'Shop',
        'sender_email': 'hello@shop.example',
        'html_content': '<p>Hello {{customer_name}}</p><a href="https://shop.example/new">New in</a>',
        'target_audience': {'segment_ids': list(segment_ids)},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def spenders(engine):
    """Scenario data: Alice 600, Bob 400, Carol 1000, plus the Big Spenders segment."""
    add_customer(engine, "alice@x.com", "Alice", 600)
    add_customer(engine, "bob@x.com", "Bob", 400)
    add_customer(engine, "carol@x.com", "Carol", 1000)
    return big_spenders(engine)


def run_concurrently(fn, threads=6):
    """Start ``threads`` calls of ``fn`` together; returns (results, errors)."""
    barrier = threading.Barrier(threads)
    results, errors = [], []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            result = fn()
        except Exception as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(result)

    workers = [threading.Thread(target=worker) for _ in range(threads)]
    for t in workers:
        t.start()
    for t in workers:
        t.join(timeout=30)
    return results, errors
