"""
Analytics Module
================

Provides:
- Campaign analytics (totals, rates, top links, opens/clicks over time)
- Store overview over a trailing 30-day window
- Cart abandonment and recovery sequence reporting
"""

from flask import Blueprint

analytics_bp = Blueprint('analytics', __name__, url_prefix='/api/outreach')

from .aggregator import AnalyticsAggregator, rate  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = ['analytics_bp', 'AnalyticsAggregator', 'rate']
