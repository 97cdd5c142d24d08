"""
Customers Module
================

Provides:
- The record store the engine reads customer aggregates from
- Admin API to upsert customers and record orders
"""

from flask import Blueprint

customers_bp = Blueprint('customers', __name__, url_prefix='/api/outreach')

from .store import CustomerProfile, CustomerStore, SqliteCustomerStore  # noqa: E402
from . import routes  # noqa: E402,F401

__all__ = ['customers_bp', 'CustomerProfile', 'CustomerStore', 'SqliteCustomerStore']
