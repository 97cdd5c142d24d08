"""
Audience Module
===============

Provides:
- RecipientResolver (segments + ad-hoc criteria - unsubscribes, deduplicated)
- Store unsubscribe list
- Admin API for audience estimates and unsubscribes
"""

from flask import Blueprint

audience_bp = Blueprint('audience', __name__, url_prefix='/api/outreach')

from .resolver import RecipientResolver, RecipientSeed, TargetAudience  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = ['audience_bp', 'RecipientResolver', 'RecipientSeed', 'TargetAudience']
