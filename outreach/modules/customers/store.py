"""
Record store adapter.

The segment evaluator and recipient resolver only see customers through the
``CustomerStore`` interface: identifiers plus the aggregate fields that
segment predicates reference.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from outreach.core import Database, parse_iso
from . import models


@dataclass(frozen=True)
class CustomerProfile:
    customer_id: int
    store_id: str
    email: str
    name: Optional[str] = None
    location: Optional[str] = None
    signup_date: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    last_purchase_at: Optional[datetime] = None
    total_spent: float = 0.0
    order_count: int = 0
    emails_received: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    attributes: Dict = field(default_factory=dict)

    @property
    def average_order_value(self):
        if not self.order_count:
            return 0.0
        return self.total_spent / self.order_count

    @property
    def open_rate(self):
        """Fraction of received campaign emails that were opened."""
        if not self.emails_received:
            return 0.0
        return self.emails_opened / self.emails_received

    @property
    def click_rate(self):
        if not self.emails_received:
            return 0.0
        return self.emails_clicked / self.emails_received

    def to_dict(self):
        return {
            'id': self.customer_id,
            'store_id': self.store_id,
            'email': self.email,
            'name': self.name,
            'location': self.location,
            'signup_date': self.signup_date.isoformat() if self.signup_date else None,
            'last_seen_at': self.last_seen_at.isoformat() if self.last_seen_at else None,
            'last_purchase_at': self.last_purchase_at.isoformat() if self.last_purchase_at else None,
            'total_spent': round(self.total_spent, 2),
            'order_count': self.order_count,
            'average_order_value': round(self.average_order_value, 2),
            'open_rate': round(self.open_rate, 4),
            'click_rate': round(self.click_rate, 4),
            'attributes': self.attributes,
        }


class CustomerStore:
    """Interface the engine uses to read customers."""

    def list_customers(self, store_id: str) -> List[CustomerProfile]:
        raise NotImplementedError

    def get_customers(self, store_id: str, customer_ids: Iterable[int]) -> List[CustomerProfile]:
        wanted = set(customer_ids)
        return [p for p in self.list_customers(store_id) if p.customer_id in wanted]


class SqliteCustomerStore(CustomerStore):
    """Customer store backed by the customers/orders tables in OUTREACH_DB."""

    def __init__(self, db_path):
        self.db_path = db_path

    def _profiles(self, store_id, customer_ids=None):
        with Database.session(self.db_path) as conn:
            rows = models.list_customer_rows(conn, store_id, customer_ids)
            engagement = models.engagement_by_customer(conn, store_id)

        profiles = []
        for row in rows:
            received, opened, clicked = engagement.get(row['id'], (0, 0, 0))
            profiles.append(CustomerProfile(
                customer_id=row['id'],
                store_id=row['store_id'],
                email=row['email'],
                name=row['name'],
                location=row['location'],
                signup_date=parse_iso(row['signup_date']),
                last_seen_at=parse_iso(row['last_seen_at']),
                last_purchase_at=parse_iso(row['last_purchase_at']),
                total_spent=float(row['total_spent'] or 0),
                order_count=int(row['order_count'] or 0),
                emails_received=received or 0,
                emails_opened=opened or 0,
                emails_clicked=clicked or 0,
                attributes=row['attributes'],
            ))
        return profiles

    def list_customers(self, store_id):
        return self._profiles(store_id)

    def get_customers(self, store_id, customer_ids):
        return self._profiles(store_id, customer_ids)

    def upsert_customer(self, store_id, data, now):
        with Database.session(self.db_path, immediate=True) as conn:
            return models.upsert_customer(conn, store_id, data, now)

    def record_order(self, store_id, data, now):
        with Database.session(self.db_path, immediate=True) as conn:
            return models.record_order(conn, store_id, data, now)
