"""
Delivery Models
===============

Per-recipient delivery records and the append-only delivery event log.
Recipient rows are owned by their campaign and cascade on campaign deletion.
"""

import json
import logging

from outreach.core import Database, db_log, get_setting

logger = logging.getLogger(__name__)

RECIPIENT_TIMESTAMPS = (
    'sent_at', 'delivered_at', 'opened_at', 'first_clicked_at', 'last_clicked_at',
    'bounced_at', 'unsubscribed_at', 'failed_at'
)


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_delivery_db(db_path=None):
    """Create campaign_recipients and delivery_events tables"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS campaign_recipients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    campaign_id INTEGER NOT NULL,
                    store_id TEXT NOT NULL,
                    customer_id INTEGER,
                    segment_id INTEGER,
                    customer_email TEXT NOT NULL,
                    customer_name TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sent_at TEXT,
                    delivered_at TEXT,
                    opened_at TEXT,
                    first_clicked_at TEXT,
                    last_clicked_at TEXT,
                    bounced_at TEXT,
                    bounce_reason TEXT,
                    unsubscribed_at TEXT,
                    failed_at TEXT,
                    failure_reason TEXT,
                    provider_message_id TEXT,
                    dispatch_claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (campaign_id) REFERENCES campaigns(id) ON DELETE CASCADE
                )
            ''')
            conn.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_recipients_campaign_email
                ON campaign_recipients(campaign_id, customer_email COLLATE NOCASE)
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_recipients_campaign_status
                ON campaign_recipients(campaign_id, status)
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS delivery_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    campaign_id INTEGER NOT NULL,
                    recipient_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    natural_key TEXT NOT NULL UNIQUE,
                    link_url TEXT,
                    first_occurred_at TEXT NOT NULL,
                    last_occurred_at TEXT NOT NULL,
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    metadata TEXT,
                    FOREIGN KEY (recipient_id) REFERENCES campaign_recipients(id) ON DELETE CASCADE
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_events_recipient ON delivery_events(recipient_id)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_events_campaign_kind ON delivery_events(campaign_id, kind)')
        logger.info("Delivery database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing delivery database: {e}")
        db_log('error', 'delivery', 'Failed to init delivery DB', {'error': str(e)})
        raise


def insert_recipients(conn, store_id, campaign_id, seeds, stamp):
    conn.executemany('''
        INSERT OR IGNORE INTO campaign_recipients
        (campaign_id, store_id, customer_id, segment_id, customer_email, customer_name, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
    ''', [
        (campaign_id, store_id, s.customer_id, s.segment_id, s.email, s.name, stamp, stamp)
        for s in seeds
    ])
    return count_recipients(conn, campaign_id)


def get_recipient(conn, recipient_id, store_id=None):
    query = 'SELECT * FROM campaign_recipients WHERE id = ?'
    params = [recipient_id]
    if store_id is not None:
        query += ' AND store_id = ?'
        params.append(store_id)
    row = conn.execute(query, params).fetchone()
    return dict(row) if row else None


def list_recipients(conn, campaign_id, status=None, limit=500, offset=0):
    query = 'SELECT * FROM campaign_recipients WHERE campaign_id = ?'
    params = [campaign_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    query += ' ORDER BY customer_email COLLATE NOCASE LIMIT ? OFFSET ?'
    params.extend([limit, offset])
    return [dict(row) for row in conn.execute(query, params).fetchall()]


def pending_recipients(conn, campaign_id, stale_before):
    """Pending recipients not claimed by a dispatcher, or whose claim went stale."""
    rows = conn.execute('''
        SELECT * FROM campaign_recipients
        WHERE campaign_id = ? AND status = 'pending'
          AND (dispatch_claimed_at IS NULL OR dispatch_claimed_at < ?)
        ORDER BY customer_email COLLATE NOCASE
    ''', (campaign_id, stale_before)).fetchall()
    return [dict(row) for row in rows]


def claim_recipient(conn, recipient_id, stamp, stale_before):
    cursor = conn.execute('''
        UPDATE campaign_recipients SET dispatch_claimed_at = ?
        WHERE id = ? AND status = 'pending'
          AND (dispatch_claimed_at IS NULL OR dispatch_claimed_at < ?)
    ''', (stamp, recipient_id, stale_before))
    return cursor.rowcount == 1


def count_recipients(conn, campaign_id, status=None):
    query = 'SELECT COUNT(*) AS n FROM campaign_recipients WHERE campaign_id = ?'
    params = [campaign_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    return conn.execute(query, params).fetchone()['n']


def insert_event(conn, store_id, campaign_id, recipient_id, kind, natural_key, link_url, stamp, metadata):
    """Insert an event row; returns False when the natural key already exists."""
    cursor = conn.execute('''
        INSERT OR IGNORE INTO delivery_events
        (store_id, campaign_id, recipient_id, kind, natural_key, link_url,
         first_occurred_at, last_occurred_at, occurrences, metadata)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
    ''', (store_id, campaign_id, recipient_id, kind, natural_key, link_url, stamp, stamp,
          json.dumps(metadata) if metadata else None))
    return cursor.rowcount == 1


def widen_event(conn, natural_key, stamp):
    """Record another occurrence of an existing event: widen first/last, bump the count."""
    conn.execute('''
        UPDATE delivery_events
        SET occurrences = occurrences + CASE
                WHEN ? = first_occurred_at OR ? = last_occurred_at THEN 0 ELSE 1 END,
            first_occurred_at = MIN(first_occurred_at, ?),
            last_occurred_at = MAX(last_occurred_at, ?)
        WHERE natural_key = ?
    ''', (stamp, stamp, stamp, stamp, natural_key))


def events_for_recipient(conn, recipient_id):
    rows = conn.execute(
        'SELECT * FROM delivery_events WHERE recipient_id = ? ORDER BY id', (recipient_id,)
    ).fetchall()
    events = []
    for row in rows:
        d = dict(row)
        d['metadata'] = json.loads(d['metadata']) if d['metadata'] else {}
        events.append(d)
    return events


def write_recipient_state(conn, recipient_id, state, stamp):
    fields = {k: state.get(k) for k in RECIPIENT_TIMESTAMPS}
    fields.update(
        status=state['status'],
        bounce_reason=state.get('bounce_reason'),
        failure_reason=state.get('failure_reason'),
        provider_message_id=state.get('provider_message_id'),
        updated_at=stamp,
    )
    assignments = ', '.join(f"{k} = ?" for k in fields)
    conn.execute(f'UPDATE campaign_recipients SET {assignments} WHERE id = ?', (*fields.values(), recipient_id))


def recipient_totals(conn, campaign_id):
    """Fold recipient rows into campaign counters ("ever reached" per stage)."""
    row = conn.execute('''
        SELECT
            COUNT(*) AS total_recipients,
            SUM(CASE WHEN sent_at IS NOT NULL OR delivered_at IS NOT NULL OR opened_at IS NOT NULL
                          OR first_clicked_at IS NOT NULL OR bounced_at IS NOT NULL
                     THEN 1 ELSE 0 END) AS total_sent,
            SUM(CASE WHEN delivered_at IS NOT NULL OR opened_at IS NOT NULL OR first_clicked_at IS NOT NULL
                     THEN 1 ELSE 0 END) AS total_delivered,
            SUM(CASE WHEN opened_at IS NOT NULL OR first_clicked_at IS NOT NULL THEN 1 ELSE 0 END) AS total_opened,
            SUM(CASE WHEN first_clicked_at IS NOT NULL THEN 1 ELSE 0 END) AS total_clicked,
            SUM(CASE WHEN bounced_at IS NOT NULL THEN 1 ELSE 0 END) AS total_bounced,
            SUM(CASE WHEN unsubscribed_at IS NOT NULL THEN 1 ELSE 0 END) AS total_unsubscribed,
            SUM(CASE WHEN failed_at IS NOT NULL THEN 1 ELSE 0 END) AS total_failed
        FROM campaign_recipients
        WHERE campaign_id = ?
    ''', (campaign_id,)).fetchone()
    return {k: (row[k] or 0) for k in row.keys()}
