"""
Outreach Modules
================

Feature modules, each a Flask blueprint plus its engine service.
"""

__all__ = [
    'analytics', 'audience', 'campaigns', 'customers', 'delivery', 'email', 'recovery', 'scheduling', 'segments'
]
