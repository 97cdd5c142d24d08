"""
Scheduling Module
=================

Background loop that drives due campaigns and recovery steps.
"""

from .scheduler import OutreachScheduler

__all__ = ['OutreachScheduler']
