"""
Outreach Core
=============

Core utilities and shared functionality for outreach modules.
"""

from .config import Config, get_setting
from .database import Database
from .logging_service import LoggingService, db_log
from .clock import Clock, SystemClock, FixedClock, to_iso, parse_iso
from .errors import (
    OutreachError, ValidationError, NotFound, InvalidTransition, EmptyAudience,
    ResolutionFailure, DeliveryFailure
)
from .retry import call_with_retry

__all__ = [
    'Config', 'get_setting', 'Database', 'LoggingService', 'db_log',
    'Clock', 'SystemClock', 'FixedClock', 'to_iso', 'parse_iso',
    'OutreachError', 'ValidationError', 'NotFound', 'InvalidTransition', 'EmptyAudience',
    'ResolutionFailure', 'DeliveryFailure', 'call_with_retry',
]
