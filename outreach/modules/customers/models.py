"""
Customers Models
================

Database schema and CRUD operations for the customer/order record store.
Tables live in OUTREACH_DB.
"""

import json
import logging

from outreach.core import Database, ValidationError, db_log, get_setting, to_iso, parse_iso

logger = logging.getLogger(__name__)

ORDER_STATUSES = ('pending', 'completed', 'refunded', 'cancelled')


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_customers_db(db_path=None):
    """Create customers and orders tables"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS customers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    name TEXT,
                    location TEXT,
                    signup_date TEXT,
                    last_seen_at TEXT,
                    attributes TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_customers_store_email
                ON customers(store_id, email COLLATE NOCASE)
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    customer_id INTEGER,
                    customer_email TEXT NOT NULL,
                    external_id TEXT,
                    total_amount REAL NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'completed',
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE SET NULL
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_orders_customer ON orders(store_id, customer_id)')
        logger.info("Customers database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing customers database: {e}")
        db_log('error', 'customers', 'Failed to init customers DB', {'error': str(e)})
        raise


def _row_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    if 'attributes' in d:
        d['attributes'] = json.loads(d['attributes'] or '{}')
    return d


def get_customer_by_email(conn, store_id, email):
    row = conn.execute(
        'SELECT * FROM customers WHERE store_id = ? AND email = ? COLLATE NOCASE',
        (store_id, email.strip())
    ).fetchone()
    return _row_to_dict(row)


def upsert_customer(conn, store_id, data, now):
    """Insert a customer or update the one with the same address. Returns the row."""
    email = (data.get('email') or '').strip()
    if not email or '@' not in email:
        raise ValidationError('A valid customer email is required')
    attributes = data.get('attributes') or {}
    if not isinstance(attributes, dict):
        raise ValidationError('attributes must be an object')

    signup = to_iso(parse_iso(data.get('signup_date'))) if data.get('signup_date') else None
    last_seen = to_iso(parse_iso(data.get('last_seen_at'))) if data.get('last_seen_at') else None
    stamp = to_iso(now)

    existing = get_customer_by_email(conn, store_id, email)
    if existing:
        merged = dict(existing['attributes'])
        merged.update(attributes)
        conn.execute('''
            UPDATE customers
            SET name = COALESCE(?, name), location = COALESCE(?, location),
                signup_date = COALESCE(?, signup_date), last_seen_at = COALESCE(?, last_seen_at),
                attributes = ?, updated_at = ?
            WHERE id = ?
        ''', (data.get('name'), data.get('location'), signup, last_seen,
              json.dumps(merged), stamp, existing['id']))
        customer_id = existing['id']
    else:
        cursor = conn.execute('''
            INSERT INTO customers (store_id, email, name, location, signup_date, last_seen_at,
                                   attributes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (store_id, email, data.get('name'), data.get('location'), signup or stamp,
              last_seen, json.dumps(attributes), stamp, stamp))
        customer_id = cursor.lastrowid

    row = conn.execute('SELECT * FROM customers WHERE id = ?', (customer_id,)).fetchone()
    return _row_to_dict(row)


def record_order(conn, store_id, data, now):
    """Store an order, creating the customer on first sight. Returns the order row."""
    email = (data.get('customer_email') or '').strip()
    if not email:
        raise ValidationError('customer_email is required')
    try:
        amount = float(data.get('total_amount', 0))
    except (TypeError, ValueError):
        raise ValidationError('total_amount must be a number')
    status = data.get('status', 'completed')
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status}")

    customer = get_customer_by_email(conn, store_id, email)
    if customer is None:
        customer = upsert_customer(conn, store_id, {'email': email, 'name': data.get('customer_name')}, now)

    created_at = to_iso(parse_iso(data.get('created_at')) or now)
    cursor = conn.execute('''
        INSERT INTO orders (store_id, customer_id, customer_email, external_id, total_amount, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (store_id, customer['id'], email, data.get('external_id'), amount, status, created_at))
    return dict(conn.execute('SELECT * FROM orders WHERE id = ?', (cursor.lastrowid,)).fetchone())


def list_customer_rows(conn, store_id, customer_ids=None):
    """Customers joined with their completed-order aggregates."""
    query = '''
        SELECT c.*,
               COALESCE(o.total_spent, 0) AS total_spent,
               COALESCE(o.order_count, 0) AS order_count,
               o.last_purchase_at AS last_purchase_at
        FROM customers c
        LEFT JOIN (
            SELECT customer_id, SUM(total_amount) AS total_spent, COUNT(*) AS order_count,
                   MAX(created_at) AS last_purchase_at
            FROM orders
            WHERE store_id = ? AND status = 'completed'
            GROUP BY customer_id
        ) o ON o.customer_id = c.id
        WHERE c.store_id = ?
    '''
    params = [store_id, store_id]
    if customer_ids is not None:
        ids = list(customer_ids)
        if not ids:
            return []
        query += f" AND c.id IN ({','.join('?' * len(ids))})"
        params.extend(ids)
    query += ' ORDER BY c.id'
    return [_row_to_dict(row) for row in conn.execute(query, params).fetchall()]


def engagement_by_customer(conn, store_id):
    """Emails received/opened/clicked per customer, folded from campaign recipients."""
    if not Database.table_exists(conn, 'campaign_recipients'):
        return {}
    rows = conn.execute('''
        SELECT customer_id,
               SUM(CASE WHEN sent_at IS NOT NULL OR delivered_at IS NOT NULL THEN 1 ELSE 0 END) AS received,
               SUM(CASE WHEN opened_at IS NOT NULL OR first_clicked_at IS NOT NULL THEN 1 ELSE 0 END) AS opened,
               SUM(CASE WHEN first_clicked_at IS NOT NULL THEN 1 ELSE 0 END) AS clicked
        FROM campaign_recipients
        WHERE store_id = ? AND customer_id IS NOT NULL
        GROUP BY customer_id
    ''', (store_id,)).fetchall()
    return {row['customer_id']: (row['received'], row['opened'], row['clicked']) for row in rows}
