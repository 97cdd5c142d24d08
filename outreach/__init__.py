"""
Outreach - Customer Outreach Campaign Engine
============================================

A Flask extension that turns a store's customer data into targeted,
scheduled, trackable email campaigns and abandoned-cart recovery sequences:
- Segment evaluation over customer and order aggregates
- Campaign lifecycle (draft, scheduled, sending, sent, paused, cancelled)
- Per-recipient delivery tracking with idempotent event ingestion
- Enrollment-based recovery sequences driven by a background scheduler
- Campaign, store and cart analytics

Usage:
    from flask import Flask
    from outreach import Outreach

    app = Flask(__name__)
    outreach = Outreach(app)

    outreach.lifecycle.create_campaign('store-1', {...})
"""

import logging
import os
import time

from flask import jsonify

from .core import Config, Database, LoggingService, SystemClock, get_setting
from .modules.analytics import analytics_bp, AnalyticsAggregator
from .modules.audience import audience_bp, RecipientResolver
from .modules.audience.models import init_audience_db
from .modules.campaigns import campaigns_bp
from .modules.campaigns.lifecycle import CampaignLifecycle
from .modules.campaigns.models import init_campaigns_db
from .modules.customers import customers_bp
from .modules.customers.models import init_customers_db
from .modules.customers.store import SqliteCustomerStore
from .modules.delivery import delivery_bp, tracking_bp, DeliveryTracker, TrackingLinks
from .modules.delivery.models import init_delivery_db
from .modules.email import EmailService, EmailTransport
from .modules.recovery import recovery_bp, RecoveryScheduler
from .modules.recovery.models import init_recovery_db
from .modules.scheduling import OutreachScheduler
from .modules.segments import segments_bp, SegmentEvaluator
from .modules.segments.models import init_segments_db

__version__ = '0.1.0'

logger = logging.getLogger(__name__)

# Order matters: later tables reference earlier ones
TABLE_INITIALISERS = (
    init_customers_db,
    init_segments_db,
    init_audience_db,
    init_campaigns_db,
    init_delivery_db,
    init_recovery_db,
)

BLUEPRINTS = {
    'customers': customers_bp,
    'segments': segments_bp,
    'audience': audience_bp,
    'campaigns': campaigns_bp,
    'delivery': delivery_bp,
    'tracking': tracking_bp,
    'recovery': recovery_bp,
    'analytics': analytics_bp,
}

CONFIG_DEFAULTS = (
    'DB_DIR', 'OUTREACH_DB', 'ANALYTICS_DB', 'EMAIL_PROVIDER', 'EMAIL_ADDRESS', 'EMAIL_PASSWORD',
    'EMAIL_HOST', 'EMAIL_PORT', 'EMAIL_SENDER_NAME', 'EMAIL_HTTP_ENDPOINT', 'EMAIL_HTTP_TOKEN', 'AWS_REGION',
    'RESEND_API_KEY', 'TRACKING_BASE_URL', 'OUTREACH_WEBHOOK_SECRET', 'OUTREACH_SEND_WORKERS',
    'OUTREACH_TRANSPORT_TIMEOUT_SECONDS', 'OUTREACH_TRANSPORT_RETRIES', 'OUTREACH_RETRY_BACKOFF_SECONDS',
    'OUTREACH_RESOLUTION_MAX_ATTEMPTS', 'OUTREACH_RESOLUTION_BACKOFF_SECONDS',
    'OUTREACH_DISPATCH_CLAIM_TTL_SECONDS', 'OUTREACH_SCHEDULER_ENABLED', 'OUTREACH_TICK_SECONDS',
    'OUTREACH_STEP_CLAIM_TTL_SECONDS',
)


def init_all_tables(db_path):
    """Create every outreach table in ``db_path``."""
    for initialise in TABLE_INITIALISERS:
        initialise(db_path)


class Outreach:
    """
    Flask extension wiring the engine into an app.

    Options:
        clock: Clock used by every service (default SystemClock)
        transport: Transport used for sends (default EmailTransport over EmailService)
        features: {'<blueprint name>': False} to skip registering a blueprint
        start_scheduler: overrides OUTREACH_SCHEDULER_ENABLED
        sleep: function used to wait between transport retries
    """

    def __init__(self, app=None, options=None):
        self.options = options or {}
        self._registered = []
        self.scheduler = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        for key in CONFIG_DEFAULTS:
            app.config.setdefault(key, getattr(Config, key))
        if not app.config.get('SECRET_KEY'):
            app.config['SECRET_KEY'] = Config.SECRET_KEY

        self._setup_database_dir(app)
        db_path = app.config['OUTREACH_DB']
        LoggingService.configure(app.config['ANALYTICS_DB'])
        init_all_tables(db_path)

        self.db_path = db_path
        self.clock = self.options.get('clock') or SystemClock()
        self.transport = self.options.get('transport') or self._default_transport(app)
        self._build_services(app)
        self._register_blueprints(app)
        self._register_health(app)

        app.extensions['outreach'] = self

        start = self.options.get('start_scheduler', app.config.get('OUTREACH_SCHEDULER_ENABLED'))
        if start and not app.config.get('TESTING'):
            self.scheduler.start()

        logger.info(f"Outreach initialised (db: {db_path}, modules: {', '.join(self._registered)})")

    @staticmethod
    def _setup_database_dir(app):
        db_dir = app.config.get('DB_DIR')
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        Database.ensure_dir(app.config['OUTREACH_DB'])
        Database.ensure_dir(app.config['ANALYTICS_DB'])

    @staticmethod
    def _default_transport(app):
        service = EmailService()
        service.init_app(app)
        return EmailTransport(service)

    def _build_services(self, app):
        config = app.config
        sleep = self.options.get('sleep', time.sleep)
        secret = config.get('OUTREACH_WEBHOOK_SECRET') or config.get('SECRET_KEY') or 'outreach-tracking'

        self.customer_store = SqliteCustomerStore(self.db_path)
        self.segments = SegmentEvaluator(self.customer_store, self.db_path, self.clock)
        self.resolver = RecipientResolver(self.segments, self.customer_store, self.db_path, self.clock)
        self.tracker = DeliveryTracker(self.db_path, self.clock)
        self.tracking = TrackingLinks(config.get('TRACKING_BASE_URL'), secret)
        self.lifecycle = CampaignLifecycle(
            self.db_path, self.resolver, self.tracker, self.transport, self.clock,
            tracking=self.tracking,
            max_workers=config['OUTREACH_SEND_WORKERS'],
            transport_timeout=config['OUTREACH_TRANSPORT_TIMEOUT_SECONDS'],
            transport_retries=config['OUTREACH_TRANSPORT_RETRIES'],
            retry_backoff=config['OUTREACH_RETRY_BACKOFF_SECONDS'],
            resolution_max_attempts=config['OUTREACH_RESOLUTION_MAX_ATTEMPTS'],
            resolution_backoff=config['OUTREACH_RESOLUTION_BACKOFF_SECONDS'],
            claim_ttl=config['OUTREACH_DISPATCH_CLAIM_TTL_SECONDS'],
            sleep=sleep,
        )
        self.recovery = RecoveryScheduler(
            self.db_path, self.transport, self.clock,
            sender_name=config.get('EMAIL_SENDER_NAME'),
            sender_email=config.get('EMAIL_ADDRESS'),
            transport_timeout=config['OUTREACH_TRANSPORT_TIMEOUT_SECONDS'],
            transport_retries=config['OUTREACH_TRANSPORT_RETRIES'],
            retry_backoff=config['OUTREACH_RETRY_BACKOFF_SECONDS'],
            claim_ttl=config['OUTREACH_STEP_CLAIM_TTL_SECONDS'],
            sleep=sleep,
        )
        self.analytics = AnalyticsAggregator(self.db_path, self.clock)
        self.scheduler = OutreachScheduler(self.lifecycle, self.recovery, config['OUTREACH_TICK_SECONDS'])

    def _register_blueprints(self, app):
        features = self.options.get('features', {})
        for name, blueprint in BLUEPRINTS.items():
            if features.get(name, True) is False:
                logger.info(f"Outreach module disabled: {name}")
                continue
            if name in app.blueprints:
                continue
            app.register_blueprint(blueprint)
            self._registered.append(name)

    def _register_health(self, app):
        if 'outreach_health' in app.view_functions:
            return

        def outreach_health():
            checks = {'scheduler': 'running' if self.scheduler.running else 'stopped'}
            try:
                with Database.session(self.db_path) as conn:
                    conn.execute('SELECT 1').fetchone()
                checks['database'] = 'ok'
            except Exception as e:
                logger.error(f"Health check database error: {e}")
                checks['database'] = 'critical'
            status = 'critical' if checks['database'] != 'ok' else 'ok'
            return jsonify({'status': status, 'checks': checks}), 200 if status == 'ok' else 503

        app.add_url_rule('/api/outreach/health', 'outreach_health', outreach_health, methods=['GET'])

    def get_registered_modules(self):
        return list(self._registered)

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.shutdown()


__all__ = ['Outreach', 'init_all_tables', 'get_setting', '__version__']
