"""
Recovery Models
===============

Abandoned carts, recovery sequences with their steps, enrollments and the
per-step dispatch markers that make scheduler ticks idempotent.
"""

import json
import logging

from outreach.core import Database, db_log, get_setting

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ('cart_abandonment', 'lead_nurture', 'post_purchase', 'winback')

ENROLLMENT_STATUSES = ('active', 'paused', 'completed', 'unsubscribed', 'failed')

DISPATCH_STATUSES = ('claimed', 'dispatched', 'failed', 'skipped')


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_recovery_db(db_path=None):
    """Create abandoned cart, sequence, enrollment and dispatch marker tables"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS abandoned_carts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    customer_email TEXT NOT NULL,
                    customer_name TEXT,
                    line_items TEXT NOT NULL DEFAULT '[]',
                    total_value REAL NOT NULL DEFAULT 0,
                    abandoned_at TEXT NOT NULL,
                    recovered INTEGER NOT NULL DEFAULT 0,
                    recovered_at TEXT,
                    recovery_order_id TEXT,
                    recovery_attempts INTEGER NOT NULL DEFAULT 0,
                    last_reminder_sent_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_carts_store_email
                ON abandoned_carts(store_id, customer_email COLLATE NOCASE)
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS recovery_sequences (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    trigger_type TEXT NOT NULL DEFAULT 'cart_abandonment',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS sequence_steps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sequence_id INTEGER NOT NULL,
                    step_order INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    delay_hours REAL NOT NULL,
                    email_subject TEXT NOT NULL,
                    email_content TEXT NOT NULL,
                    is_discount INTEGER NOT NULL DEFAULT 0,
                    discount_percent REAL,
                    UNIQUE (sequence_id, step_order),
                    FOREIGN KEY (sequence_id) REFERENCES recovery_sequences(id) ON DELETE CASCADE
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS enrollments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    sequence_id INTEGER NOT NULL,
                    cart_id INTEGER,
                    customer_email TEXT NOT NULL,
                    customer_name TEXT,
                    current_step INTEGER NOT NULL DEFAULT 0,
                    run_number INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL DEFAULT 'active',
                    status_reason TEXT,
                    enrolled_at TEXT NOT NULL,
                    completed_at TEXT,
                    discount_issued_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (sequence_id) REFERENCES recovery_sequences(id)
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_enrollments_status ON enrollments(status)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_enrollments_cart ON enrollments(cart_id)')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS step_dispatches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    enrollment_id INTEGER NOT NULL,
                    run_number INTEGER NOT NULL,
                    step_index INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'claimed',
                    claimed_at TEXT NOT NULL,
                    dispatched_at TEXT,
                    message_id TEXT,
                    reason TEXT,
                    UNIQUE (enrollment_id, run_number, step_index),
                    FOREIGN KEY (enrollment_id) REFERENCES enrollments(id) ON DELETE CASCADE
                )
            ''')
        logger.info("Recovery database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing recovery database: {e}")
        db_log('error', 'recovery', 'Failed to init recovery DB', {'error': str(e)})
        raise


# -- carts -------------------------------------------------------------------

def _cart_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    d['line_items'] = json.loads(d['line_items'] or '[]')
    d['recovered'] = bool(d['recovered'])
    return d


def insert_cart(conn, store_id, cart, stamp):
    cursor = conn.execute('''
        INSERT INTO abandoned_carts
        (store_id, customer_email, customer_name, line_items, total_value, abandoned_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (store_id, cart['customer_email'], cart.get('customer_name'), json.dumps(cart.get('line_items') or []),
          cart['total_value'], cart['abandoned_at'], stamp, stamp))
    return cursor.lastrowid


def get_cart(conn, store_id, cart_id):
    row = conn.execute(
        'SELECT * FROM abandoned_carts WHERE id = ? AND store_id = ?', (cart_id, store_id)
    ).fetchone()
    return _cart_to_dict(row)


def list_carts(conn, store_id, recovered=None, limit=200):
    query = 'SELECT * FROM abandoned_carts WHERE store_id = ?'
    params = [store_id]
    if recovered is not None:
        query += ' AND recovered = ?'
        params.append(int(bool(recovered)))
    query += ' ORDER BY abandoned_at DESC, id DESC LIMIT ?'
    params.append(limit)
    return [_cart_to_dict(row) for row in conn.execute(query, params).fetchall()]


def all_carts(conn, store_id):
    rows = conn.execute('SELECT * FROM abandoned_carts WHERE store_id = ?', (store_id,)).fetchall()
    return [_cart_to_dict(row) for row in rows]


def mark_carts_recovered(conn, store_id, email, order_id, recovered_at, stamp):
    """Mark open carts for ``email`` abandoned before ``recovered_at`` as recovered."""
    cursor = conn.execute('''
        UPDATE abandoned_carts
        SET recovered = 1, recovered_at = ?, recovery_order_id = ?, updated_at = ?
        WHERE store_id = ? AND customer_email = ? COLLATE NOCASE
          AND recovered = 0 AND abandoned_at <= ?
    ''', (recovered_at, order_id, stamp, store_id, email, recovered_at))
    return cursor.rowcount


def record_reminder(conn, cart_id, stamp):
    conn.execute('''
        UPDATE abandoned_carts
        SET recovery_attempts = recovery_attempts + 1, last_reminder_sent_at = ?, updated_at = ?
        WHERE id = ?
    ''', (stamp, stamp, cart_id))


# -- sequences ---------------------------------------------------------------

def _step_to_dict(row):
    d = dict(row)
    d['is_discount'] = bool(d['is_discount'])
    return d


def insert_sequence(conn, store_id, name, description, trigger_type, steps, is_active, stamp):
    cursor = conn.execute('''
        INSERT INTO recovery_sequences (store_id, name, description, trigger_type, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (store_id, name, description, trigger_type, int(bool(is_active)), stamp, stamp))
    sequence_id = cursor.lastrowid
    conn.executemany('''
        INSERT INTO sequence_steps
        (sequence_id, step_order, step_name, delay_hours, email_subject, email_content, is_discount, discount_percent)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', [
        (sequence_id, index, s['step_name'], s['delay_hours'], s['email_subject'], s['email_content'],
         int(s['is_discount']), s.get('discount_percent'))
        for index, s in enumerate(steps)
    ])
    return sequence_id


def get_sequence(conn, store_id, sequence_id):
    row = conn.execute(
        'SELECT * FROM recovery_sequences WHERE id = ? AND store_id = ?', (sequence_id, store_id)
    ).fetchone()
    if row is None:
        return None
    sequence = dict(row)
    sequence['is_active'] = bool(sequence['is_active'])
    sequence['steps'] = get_steps(conn, sequence_id)
    return sequence


def get_steps(conn, sequence_id):
    rows = conn.execute(
        'SELECT * FROM sequence_steps WHERE sequence_id = ? ORDER BY step_order', (sequence_id,)
    ).fetchall()
    return [_step_to_dict(row) for row in rows]


def list_sequences(conn, store_id, trigger_type=None):
    query = 'SELECT id FROM recovery_sequences WHERE store_id = ?'
    params = [store_id]
    if trigger_type:
        query += ' AND trigger_type = ?'
        params.append(trigger_type)
    query += ' ORDER BY created_at DESC, id DESC'
    return [get_sequence(conn, store_id, row['id']) for row in conn.execute(query, params).fetchall()]


def active_sequence_for(conn, store_id, trigger_type):
    row = conn.execute('''
        SELECT id FROM recovery_sequences
        WHERE store_id = ? AND trigger_type = ? AND is_active = 1
        ORDER BY created_at DESC, id DESC LIMIT 1
    ''', (store_id, trigger_type)).fetchone()
    return get_sequence(conn, store_id, row['id']) if row else None


def set_sequence_active(conn, store_id, sequence_id, is_active, stamp):
    cursor = conn.execute(
        'UPDATE recovery_sequences SET is_active = ?, updated_at = ? WHERE id = ? AND store_id = ?',
        (int(bool(is_active)), stamp, sequence_id, store_id)
    )
    return cursor.rowcount > 0


# -- enrollments -------------------------------------------------------------

def insert_enrollment(conn, store_id, sequence_id, cart_id, email, name, enrolled_at, stamp):
    cursor = conn.execute('''
        INSERT INTO enrollments
        (store_id, sequence_id, cart_id, customer_email, customer_name, enrolled_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (store_id, sequence_id, cart_id, email, name, enrolled_at, stamp, stamp))
    return cursor.lastrowid


def get_enrollment(conn, enrollment_id, store_id=None):
    query = 'SELECT * FROM enrollments WHERE id = ?'
    params = [enrollment_id]
    if store_id is not None:
        query += ' AND store_id = ?'
        params.append(store_id)
    row = conn.execute(query, params).fetchone()
    return dict(row) if row else None


def list_enrollments(conn, store_id, status=None, sequence_id=None):
    query = 'SELECT * FROM enrollments WHERE store_id = ?'
    params = [store_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    if sequence_id is not None:
        query += ' AND sequence_id = ?'
        params.append(sequence_id)
    query += ' ORDER BY enrolled_at DESC, id DESC'
    return [dict(row) for row in conn.execute(query, params).fetchall()]


def active_enrollments(conn):
    rows = conn.execute("SELECT * FROM enrollments WHERE status = 'active' ORDER BY enrolled_at, id").fetchall()
    return [dict(row) for row in rows]


def update_enrollment(conn, enrollment_id, stamp, expected_status=None, expected_step=None, **fields):
    """
    Write ``fields`` on an enrollment. With ``expected_status`` or
    ``expected_step`` the update only applies while the row still matches;
    returns whether a row changed.
    """
    fields['updated_at'] = stamp
    assignments = ', '.join(f"{k} = ?" for k in fields)
    query = f'UPDATE enrollments SET {assignments} WHERE id = ?'
    params = [*fields.values(), enrollment_id]
    if expected_status is not None:
        query += ' AND status = ?'
        params.append(expected_status)
    if expected_step is not None:
        query += ' AND current_step = ?'
        params.append(expected_step)
    return conn.execute(query, params).rowcount == 1


def enrollments_for_email(conn, store_id, email, statuses=('active', 'paused')):
    placeholders = ','.join('?' * len(statuses))
    rows = conn.execute(f'''
        SELECT * FROM enrollments
        WHERE store_id = ? AND customer_email = ? COLLATE NOCASE AND status IN ({placeholders})
    ''', (store_id, email, *statuses)).fetchall()
    return [dict(row) for row in rows]


# -- step markers ------------------------------------------------------------

def get_dispatch(conn, enrollment_id, run_number, step_index):
    row = conn.execute('''
        SELECT * FROM step_dispatches WHERE enrollment_id = ? AND run_number = ? AND step_index = ?
    ''', (enrollment_id, run_number, step_index)).fetchone()
    return dict(row) if row else None


def claim_dispatch(conn, enrollment_id, run_number, step_index, stamp, stale_before=None):
    """
    Claim a step marker. A fresh marker is inserted; an existing ``claimed``
    marker is taken over only when ``stale_before`` is given and it is older.
    Returns True when this caller owns the claim.
    """
    cursor = conn.execute('''
        INSERT OR IGNORE INTO step_dispatches (enrollment_id, run_number, step_index, status, claimed_at)
        VALUES (?, ?, ?, 'claimed', ?)
    ''', (enrollment_id, run_number, step_index, stamp))
    if cursor.rowcount == 1:
        return True
    if stale_before is None:
        return False
    cursor = conn.execute('''
        UPDATE step_dispatches SET claimed_at = ?
        WHERE enrollment_id = ? AND run_number = ? AND step_index = ?
          AND status = 'claimed' AND claimed_at < ?
    ''', (stamp, enrollment_id, run_number, step_index, stale_before))
    return cursor.rowcount == 1


def finish_dispatch(conn, enrollment_id, run_number, step_index, status, stamp, message_id=None, reason=None):
    conn.execute('''
        UPDATE step_dispatches SET status = ?, dispatched_at = ?, message_id = ?, reason = ?
        WHERE enrollment_id = ? AND run_number = ? AND step_index = ?
    ''', (status, stamp, message_id, reason, enrollment_id, run_number, step_index))


def dispatches_for(conn, enrollment_id):
    rows = conn.execute(
        'SELECT * FROM step_dispatches WHERE enrollment_id = ? ORDER BY run_number, step_index', (enrollment_id,)
    ).fetchall()
    return [dict(row) for row in rows]


def dispatch_counts_by_step(conn, sequence_id):
    rows = conn.execute('''
        SELECT d.step_index, d.status, COUNT(*) AS n
        FROM step_dispatches d JOIN enrollments e ON e.id = d.enrollment_id
        WHERE e.sequence_id = ?
        GROUP BY d.step_index, d.status
    ''', (sequence_id,)).fetchall()
    return [dict(row) for row in rows]


def enrollment_counts(conn, sequence_id):
    rows = conn.execute(
        'SELECT status, COUNT(*) AS n FROM enrollments WHERE sequence_id = ? GROUP BY status', (sequence_id,)
    ).fetchall()
    return {row['status']: row['n'] for row in rows}
