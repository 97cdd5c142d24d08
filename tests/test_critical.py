"""
Critical Integration Tests for Outreach
======================================

Focused tests covering the integration points most likely to break.
Run with: pytest tests/test_critical.py -v

NOTE: pytest is listed under extras_require["dev"] in setup.py.
Install with: pip install -e ".[dev]"
"""

import gc
import os
import shutil
import tempfile

from flask import Flask

from outreach import Outreach, init_all_tables
from outreach.core import Database

from conftest import FakeTransport, configure_app


# ---------------------------------------------------------------------------
# 1. Extension initialisation -- Outreach(app) does not raise
# ---------------------------------------------------------------------------

def test_extension_initialisation(tmp_db_dir):
    """Outreach(app) boots without errors and stores itself on the app."""
    app = configure_app(Flask(__name__), tmp_db_dir)

    outreach = Outreach(app, {'transport': FakeTransport()})

    assert "outreach" in app.extensions
    assert app.extensions["outreach"] is outreach
    assert not outreach.scheduler.running, "Scheduler must not start while TESTING"


# ---------------------------------------------------------------------------
# 2. Config resolution -- DB paths are non-empty and contain expected names
# ---------------------------------------------------------------------------

def test_config_db_paths(app):
    """DB_DIR, OUTREACH_DB and ANALYTICS_DB resolve to the configured files."""
    assert app.config["DB_DIR"], "DB_DIR must not be empty"
    assert "outreach.db" in app.config["OUTREACH_DB"]
    assert "analytics.db" in app.config["ANALYTICS_DB"]
    assert app.config["OUTREACH_TICK_SECONDS"] > 0, "Config defaults must be filled in"


# ---------------------------------------------------------------------------
# 3. Email service init (Resend) -- init_app with Resend config does not crash
# ---------------------------------------------------------------------------

def test_email_service_init_resend(app):
    """EmailService.init_app() with Resend provider stores config correctly."""
    from outreach.modules.email.email_service import EmailService

    svc = EmailService()
    app.config["RESEND_API_KEY"] = "re_test_fake_key_123"
    app.config["EMAIL_PROVIDER"] = "resend"

    with app.app_context():
        svc.init_app(app)

    assert svc.provider == "resend"
    assert svc.api_key == "re_test_fake_key_123"


# ---------------------------------------------------------------------------
# 4. Email service init (SES) -- init_app with SES config does not crash
# ---------------------------------------------------------------------------

def test_email_service_init_ses(app):
    """EmailService.init_app() with SES provider does not crash even if
    boto3 is not installed (it logs an error instead)."""
    from outreach.modules.email.email_service import EmailService

    svc = EmailService()
    app.config["EMAIL_PROVIDER"] = "ses"
    app.config["AWS_REGION"] = "us-east-1"

    with app.app_context():
        svc.init_app(app)

    assert svc.provider == "ses"


# ---------------------------------------------------------------------------
# 5. Unconfigured provider -- a send is rejected, never raised
# ---------------------------------------------------------------------------

def test_email_service_rejects_without_credentials(app):
    """With no API key the service reports a rejection the engine can record."""
    from outreach.modules.email.email_service import EmailService

    svc = EmailService()
    app.config["EMAIL_PROVIDER"] = "resend"
    app.config["RESEND_API_KEY"] = None
    svc.init_app(app)

    result = svc.send_message("alice@x.com", "Subject", "<p>Body</p>", sender_email="shop@x.com")
    assert result.accepted is False
    assert result.reason

    invalid = svc.send_message("not-an-address", "Subject", "<p>Body</p>", sender_email="shop@x.com")
    assert invalid.accepted is False
    assert "Invalid email" in invalid.reason


# ---------------------------------------------------------------------------
# 6. Blueprint registration -- every expected module is registered
# ---------------------------------------------------------------------------

EXPECTED_MODULES = [
    "customers",
    "segments",
    "audience",
    "campaigns",
    "delivery",
    "tracking",
    "recovery",
    "analytics",
]


def test_all_blueprints_registered(app):
    """All feature modules should be registered as blueprints."""
    registered = app.extensions["outreach"].get_registered_modules()

    for mod in EXPECTED_MODULES:
        assert mod in registered, (
            f"Module '{mod}' was not registered. Registered: {registered}"
        )

    assert len(registered) == len(EXPECTED_MODULES)


def test_feature_toggle_skips_blueprint(tmp_db_dir):
    """features={'analytics': False} leaves the analytics routes unregistered."""
    app = configure_app(Flask(__name__), tmp_db_dir)
    outreach = Outreach(app, {'transport': FakeTransport(), 'features': {'analytics': False}})

    assert "analytics" not in outreach.get_registered_modules()
    rules = [rule.rule for rule in app.url_map.iter_rules()]
    assert "/api/outreach/<store_id>/analytics/overview" not in rules


# ---------------------------------------------------------------------------
# 7. Database directory creation -- _setup_database_dir creates the dir
# ---------------------------------------------------------------------------

def test_database_dir_creation():
    """_setup_database_dir creates the configured DB_DIR on disk."""
    d = tempfile.mkdtemp(prefix="outreach-dbtest-")
    target = os.path.join(d, "sub", "databases")

    try:
        app = configure_app(Flask(__name__), target)
        Outreach(app, {'transport': FakeTransport()})

        assert os.path.isdir(target), f"DB_DIR was not created at {target}"
        assert os.path.exists(app.config["OUTREACH_DB"])
    finally:
        shutil.rmtree(d, ignore_errors=True)


# ---------------------------------------------------------------------------
# 8. Table initialisation -- every table exists and init is repeatable
# ---------------------------------------------------------------------------

EXPECTED_TABLES = [
    "customers", "orders", "segments", "segment_members", "unsubscribes", "campaigns",
    "campaign_recipients", "delivery_events", "abandoned_carts", "recovery_sequences",
    "sequence_steps", "enrollments", "step_dispatches",
]


def test_tables_created_and_idempotent(app):
    db_path = app.config["OUTREACH_DB"]
    init_all_tables(db_path)

    with Database.session(db_path) as conn:
        for table in EXPECTED_TABLES:
            assert Database.table_exists(conn, table), f"Table '{table}' missing"


# ---------------------------------------------------------------------------
# 9. Admin auth guard -- unauthenticated API requests get 401 JSON
# ---------------------------------------------------------------------------

def test_admin_auth_required(client):
    """Unauthenticated GET to an admin API returns 401 with a JSON error."""
    for path in ("/api/outreach/store-1/campaigns", "/api/outreach/store-1/segments",
                 "/api/outreach/store-1/analytics/overview"):
        response = client.get(path)
        assert response.status_code == 401, (
            f"Expected 401 for {path}, got {response.status_code}"
        )
        assert response.get_json()["error"] == "Authentication required"


# ---------------------------------------------------------------------------
# 10. Health endpoint -- GET /api/outreach/health returns status and checks
# ---------------------------------------------------------------------------

def test_health_endpoint(client):
    """GET /api/outreach/health returns JSON with status field and checks dict."""
    response = client.get("/api/outreach/health")
    assert response.status_code == 200, (
        f"Expected 200, got {response.status_code}"
    )
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["scheduler"] == "stopped"


# ---------------------------------------------------------------------------
# 11. Scheduler jobs -- start() registers the three periodic jobs
# ---------------------------------------------------------------------------

def test_scheduler_registers_jobs(engine):
    scheduler = engine.scheduler
    scheduler.start()
    try:
        assert scheduler.running
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"outreach_tick_campaigns", "outreach_tick_recovery", "outreach_cleanup_logs"}
    finally:
        scheduler.shutdown(wait=False)
    assert not scheduler.running


# ---------------------------------------------------------------------------
# 12. Keyed locks -- shared while held, dropped once nobody holds them
# ---------------------------------------------------------------------------

def test_keyed_locks_are_released_when_unused():
    key = "campaign:lock-lifetime"
    lock = Database.lock_for(key)
    assert Database.lock_for(key) is lock, "Callers of one key must share a lock"

    with lock:
        assert not Database.lock_for(key).acquire(blocking=False)

    del lock
    gc.collect()
    assert key not in Database._keyed_locks, "An unused lock must not be retained"
