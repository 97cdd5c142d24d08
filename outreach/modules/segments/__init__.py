"""
Segments Module
===============

Provides:
- Typed segment criteria (numeric, temporal, set, engagement, custom field)
- SegmentEvaluator for evaluation, static snapshots and recalculation
- Admin API for segment CRUD, preview and predefined segments
"""

from flask import Blueprint

segments_bp = Blueprint('segments', __name__, url_prefix='/api/outreach')

from .criteria import parse_criteria  # noqa: E402
from .evaluator import SegmentEvaluator, PREDEFINED_SEGMENTS  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = ['segments_bp', 'SegmentEvaluator', 'PREDEFINED_SEGMENTS', 'parse_criteria']
