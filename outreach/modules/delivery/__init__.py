"""
Delivery Module
===============

Provides:
- DeliveryTracker (idempotent, order-independent event ingestion)
- Provider webhook endpoint for delivery events
- Public tracking endpoints (open pixel, click redirect, unsubscribe link)
"""

from flask import Blueprint

delivery_bp = Blueprint('delivery', __name__, url_prefix='/api/outreach')
tracking_bp = Blueprint('tracking', __name__, url_prefix='/t')

from .tracker import DeliveryEvent, DeliveryTracker, EventKind, RecipientStatus, TrackingLinks  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = [
    'delivery_bp', 'tracking_bp', 'DeliveryEvent', 'DeliveryTracker', 'EventKind', 'RecipientStatus',
    'TrackingLinks',
]
