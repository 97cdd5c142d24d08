"""
Audience Models
===============

Unsubscribe list per store. Addresses are stored lower-cased.
"""

import logging

from outreach.core import Database, ValidationError, db_log, get_setting

logger = logging.getLogger(__name__)

UNSUBSCRIBE_TYPES = ('all', 'promotional', 'transactional', 'newsletters')

# Types that keep an address out of marketing campaigns and recovery emails
MARKETING_BLOCKING_TYPES = ('all', 'promotional', 'newsletters')


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('OUTREACH_DB')


def init_audience_db(db_path=None):
    """Create the unsubscribes table"""
    db_path = db_path or get_db_config()
    Database.ensure_dir(db_path)
    try:
        with Database.session(db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS unsubscribes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    unsubscribe_type TEXT NOT NULL DEFAULT 'all',
                    campaign_id INTEGER,
                    reason TEXT,
                    unsubscribed_at TEXT NOT NULL,
                    UNIQUE (store_id, email, unsubscribe_type)
                )
            ''')
        logger.info("Audience database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error initializing audience database: {e}")
        db_log('error', 'audience', 'Failed to init audience DB', {'error': str(e)})
        raise


def normalise_email(email):
    return (email or '').strip().lower()


def record_unsubscribe(conn, store_id, email, stamp, unsubscribe_type='all', campaign_id=None, reason=None):
    """Add an address to the unsubscribe list. Repeats keep the first entry."""
    address = normalise_email(email)
    if not address:
        raise ValidationError('Email is required')
    if unsubscribe_type not in UNSUBSCRIBE_TYPES:
        raise ValidationError(f"Unknown unsubscribe type: {unsubscribe_type}")
    cursor = conn.execute('''
        INSERT OR IGNORE INTO unsubscribes (store_id, email, unsubscribe_type, campaign_id, reason, unsubscribed_at)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (store_id, address, unsubscribe_type, campaign_id, reason, stamp))
    return cursor.rowcount > 0


def unsubscribed_emails(conn, store_id, types=MARKETING_BLOCKING_TYPES):
    placeholders = ','.join('?' * len(types))
    rows = conn.execute(
        f'SELECT DISTINCT email FROM unsubscribes WHERE store_id = ? AND unsubscribe_type IN ({placeholders})',
        (store_id, *types)
    ).fetchall()
    return {row['email'] for row in rows}


def is_unsubscribed(conn, store_id, email, types=MARKETING_BLOCKING_TYPES):
    placeholders = ','.join('?' * len(types))
    row = conn.execute(
        f'SELECT 1 FROM unsubscribes WHERE store_id = ? AND email = ? AND unsubscribe_type IN ({placeholders})',
        (store_id, normalise_email(email), *types)
    ).fetchone()
    return row is not None


def list_unsubscribes(conn, store_id, since=None):
    query = 'SELECT * FROM unsubscribes WHERE store_id = ?'
    params = [store_id]
    if since:
        query += ' AND unsubscribed_at >= ?'
        params.append(since)
    query += ' ORDER BY unsubscribed_at DESC'
    return [dict(row) for row in conn.execute(query, params).fetchall()]
