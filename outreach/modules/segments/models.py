"""
Segments Models
===============

Database schema and CRUD operations for customer segments.
Static segments keep a snapshot of their members in segment_members.
"""

import json
import logging

from outreach.core import Database, db_log, get_setting

logger = logging.getLogger(__name__)


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_segments_db(db_path=None):
    """Create segments and segment_members tables"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS segments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    segment_type TEXT NOT NULL DEFAULT 'custom',
                    criteria TEXT NOT NULL,
                    is_dynamic INTEGER NOT NULL DEFAULT 1,
                    member_count INTEGER NOT NULL DEFAULT 0,
                    last_calculated_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS segment_members (
                    segment_id INTEGER NOT NULL,
                    customer_id INTEGER NOT NULL,
                    added_at TEXT NOT NULL,
                    PRIMARY KEY (segment_id, customer_id),
                    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_segments_store ON segments(store_id)')
        logger.info("Segments database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing segments database: {e}")
        db_log('error', 'segments', 'Failed to init segments DB', {'error': str(e)})
        raise


def _row_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    d['criteria'] = json.loads(d['criteria'])
    d['is_dynamic'] = bool(d['is_dynamic'])
    return d


def get_segment(conn, store_id, segment_id):
    row = conn.execute(
        'SELECT * FROM segments WHERE id = ? AND store_id = ?', (segment_id, store_id)
    ).fetchone()
    return _row_to_dict(row)


def list_segments(conn, store_id):
    rows = conn.execute(
        'SELECT * FROM segments WHERE store_id = ? ORDER BY updated_at DESC, id DESC', (store_id,)
    ).fetchall()
    return [_row_to_dict(row) for row in rows]


def insert_segment(conn, store_id, name, description, segment_type, criteria, is_dynamic, stamp):
    cursor = conn.execute('''
        INSERT INTO segments (store_id, name, description, segment_type, criteria, is_dynamic,
                              created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (store_id, name, description, segment_type, json.dumps(criteria), int(is_dynamic), stamp, stamp))
    return cursor.lastrowid


def update_segment(conn, segment_id, fields, stamp):
    allowed = ('name', 'description', 'segment_type', 'criteria', 'is_dynamic')
    updates = {k: v for k, v in fields.items() if k in allowed}
    if 'criteria' in updates:
        updates['criteria'] = json.dumps(updates['criteria'])
    if 'is_dynamic' in updates:
        updates['is_dynamic'] = int(bool(updates['is_dynamic']))
    updates['updated_at'] = stamp
    assignments = ', '.join(f"{k} = ?" for k in updates)
    conn.execute(f'UPDATE segments SET {assignments} WHERE id = ?', (*updates.values(), segment_id))


def delete_segment(conn, store_id, segment_id):
    cursor = conn.execute('DELETE FROM segments WHERE id = ? AND store_id = ?', (segment_id, store_id))
    return cursor.rowcount > 0


def replace_members(conn, segment_id, customer_ids, stamp):
    """Overwrite a static segment's snapshot and cached count."""
    conn.execute('DELETE FROM segment_members WHERE segment_id = ?', (segment_id,))
    conn.executemany(
        'INSERT INTO segment_members (segment_id, customer_id, added_at) VALUES (?, ?, ?)',
        [(segment_id, cid, stamp) for cid in sorted(customer_ids)]
    )
    set_member_count(conn, segment_id, len(customer_ids), stamp)


def set_member_count(conn, segment_id, count, stamp):
    conn.execute(
        'UPDATE segments SET member_count = ?, last_calculated_at = ? WHERE id = ?',
        (count, stamp, segment_id)
    )


def get_member_ids(conn, segment_id):
    rows = conn.execute(
        'SELECT customer_id FROM segment_members WHERE segment_id = ?', (segment_id,)
    ).fetchall()
    return {row['customer_id'] for row in rows}
