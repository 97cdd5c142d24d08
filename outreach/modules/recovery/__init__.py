"""
Recovery Module
===============

Provides:
- Abandoned cart capture and recovery detection from completed orders
- Recovery sequences (ordered steps with relative delays, optional final discount)
- RecoveryScheduler: enrollment progression with idempotent step dispatch
- Admin API for carts, sequences and enrollment operator actions
"""

from flask import Blueprint

recovery_bp = Blueprint('recovery', __name__, url_prefix='/api/outreach')

from .scheduler import RecoveryScheduler, DEFAULT_CART_RECOVERY_STEPS, validate_steps  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = ['recovery_bp', 'RecoveryScheduler', 'DEFAULT_CART_RECOVERY_STEPS', 'validate_steps']
