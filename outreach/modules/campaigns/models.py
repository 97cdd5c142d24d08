"""
Campaigns Models
================

Database schema and CRUD operations for outreach campaigns.
Status changes go through compare_and_set_status so a concurrent writer
that already moved the campaign makes the update a no-op.
"""

import json
import logging

from outreach.core import Database, db_log, get_setting

logger = logging.getLogger(__name__)

COUNTER_FIELDS = (
    'total_sent', 'total_delivered', 'total_opened', 'total_clicked', 'total_bounced', 'total_unsubscribed'
)

EDITABLE_FIELDS = (
    'name', 'description', 'campaign_type', 'subject_line', 'preview_text', 'html_content',
    'plain_text_content', 'template_id', 'sender_name', 'sender_email', 'reply_to_email',
    'target_audience', 'estimated_recipients', 'send_immediately', 'scheduled_at', 'timezone'
)

STATE_FIELDS = (
    'status', 'status_reason', 'scheduled_at', 'timezone', 'resolution_attempts', 'next_resolution_at',
    'roster_frozen_at', 'started_at', 'completed_at', 'estimated_recipients'
)


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_campaigns_db(db_path=None):
    """Create the campaigns table"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS campaigns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    campaign_type TEXT NOT NULL DEFAULT 'one_time',
                    subject_line TEXT NOT NULL,
                    preview_text TEXT,
                    html_content TEXT NOT NULL DEFAULT '',
                    plain_text_content TEXT,
                    template_id TEXT,
                    sender_name TEXT NOT NULL,
                    sender_email TEXT NOT NULL,
                    reply_to_email TEXT,
                    target_audience TEXT NOT NULL DEFAULT '{}',
                    estimated_recipients INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'draft',
                    status_reason TEXT,
                    send_immediately INTEGER NOT NULL DEFAULT 0,
                    scheduled_at TEXT,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    resolution_attempts INTEGER NOT NULL DEFAULT 0,
                    next_resolution_at TEXT,
                    roster_frozen_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    total_sent INTEGER NOT NULL DEFAULT 0,
                    total_delivered INTEGER NOT NULL DEFAULT 0,
                    total_opened INTEGER NOT NULL DEFAULT 0,
                    total_clicked INTEGER NOT NULL DEFAULT 0,
                    total_bounced INTEGER NOT NULL DEFAULT 0,
                    total_unsubscribed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_campaigns_store_status ON campaigns(store_id, status)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_campaigns_due ON campaigns(status, scheduled_at)')
        logger.info("Campaigns database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing campaigns database: {e}")
        db_log('error', 'campaigns', 'Failed to init campaigns DB', {'error': str(e)})
        raise


def _row_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    d['target_audience'] = json.loads(d['target_audience'] or '{}')
    d['send_immediately'] = bool(d['send_immediately'])
    return d


def insert_campaign(conn, store_id, fields, stamp):
    values = dict(fields)
    values['target_audience'] = json.dumps(values.get('target_audience') or {})
    values['send_immediately'] = int(bool(values.get('send_immediately')))
    values.update(store_id=store_id, status='draft', created_at=stamp, updated_at=stamp)
    columns = ', '.join(values)
    placeholders = ', '.join('?' * len(values))
    cursor = conn.execute(f'INSERT INTO campaigns ({columns}) VALUES ({placeholders})', tuple(values.values()))
    return cursor.lastrowid


def get_campaign(conn, store_id, campaign_id):
    row = conn.execute(
        'SELECT * FROM campaigns WHERE id = ? AND store_id = ?', (campaign_id, store_id)
    ).fetchone()
    return _row_to_dict(row)


def get_status(conn, campaign_id):
    row = conn.execute('SELECT status FROM campaigns WHERE id = ?', (campaign_id,)).fetchone()
    return row['status'] if row else None


def list_campaigns(conn, store_id, status=None):
    query = 'SELECT * FROM campaigns WHERE store_id = ?'
    params = [store_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    query += ' ORDER BY created_at DESC, id DESC'
    return [_row_to_dict(row) for row in conn.execute(query, params).fetchall()]


def update_fields(conn, campaign_id, fields, stamp):
    updates = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}
    if 'target_audience' in updates:
        updates['target_audience'] = json.dumps(updates['target_audience'] or {})
    if 'send_immediately' in updates:
        updates['send_immediately'] = int(bool(updates['send_immediately']))
    updates['updated_at'] = stamp
    assignments = ', '.join(f"{k} = ?" for k in updates)
    conn.execute(f'UPDATE campaigns SET {assignments} WHERE id = ?', (*updates.values(), campaign_id))


def compare_and_set_status(conn, campaign_id, expected, target, stamp, **fields):
    """
    Move ``campaign_id`` from ``expected`` to ``target`` and write ``fields``.
    Returns False when the row was no longer in ``expected``.
    """
    updates = {k: v for k, v in fields.items() if k in STATE_FIELDS}
    updates['status'] = target
    updates['updated_at'] = stamp
    assignments = ', '.join(f"{k} = ?" for k in updates)
    cursor = conn.execute(
        f'UPDATE campaigns SET {assignments} WHERE id = ? AND status = ?',
        (*updates.values(), campaign_id, expected)
    )
    return cursor.rowcount == 1


def set_state_fields(conn, campaign_id, stamp, **fields):
    updates = {k: v for k, v in fields.items() if k in STATE_FIELDS and k != 'status'}
    updates['updated_at'] = stamp
    assignments = ', '.join(f"{k} = ?" for k in updates)
    conn.execute(f'UPDATE campaigns SET {assignments} WHERE id = ?', (*updates.values(), campaign_id))


def raise_counters(conn, campaign_id, counters, stamp):
    """Write counters, never lowering a stored value."""
    assignments = ', '.join(f"{k} = MAX({k}, ?)" for k in COUNTER_FIELDS)
    conn.execute(
        f'UPDATE campaigns SET {assignments}, updated_at = ? WHERE id = ?',
        (*(int(counters.get(k, 0)) for k in COUNTER_FIELDS), stamp, campaign_id)
    )


def delete_campaign(conn, store_id, campaign_id):
    cursor = conn.execute('DELETE FROM campaigns WHERE id = ? AND store_id = ?', (campaign_id, store_id))
    return cursor.rowcount > 0


def due_scheduled(conn, now_iso):
    rows = conn.execute('''
        SELECT * FROM campaigns
        WHERE status = 'scheduled' AND scheduled_at <= ?
          AND (next_resolution_at IS NULL OR next_resolution_at <= ?)
        ORDER BY scheduled_at, id
    ''', (now_iso, now_iso)).fetchall()
    return [_row_to_dict(row) for row in rows]


def in_flight(conn):
    rows = conn.execute("SELECT id, store_id FROM campaigns WHERE status = 'sending' ORDER BY id").fetchall()
    return [(row['store_id'], row['id']) for row in rows]
