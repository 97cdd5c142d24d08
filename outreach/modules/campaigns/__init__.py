"""
Campaigns Module
================

Provides:
- Campaign storage (draft, scheduled, sending, sent, paused, cancelled)
- CampaignLifecycle state machine with roster freeze and bounded dispatch
- Admin API for campaign authoring and lifecycle actions
"""

from flask import Blueprint

campaigns_bp = Blueprint('campaigns', __name__, url_prefix='/api/outreach')

from . import routes  # noqa: E402,F401

__all__ = ['campaigns_bp']
