"""
Centralized logging service for the outreach engine.
Provides structured logging with database storage and easy integration.
"""

import json
import logging
import traceback
from datetime import datetime, timedelta, timezone

from flask import request, has_request_context

from .config import get_setting
from .database import Database

std_logger = logging.getLogger(__name__)


class LoggingService:
    """Centralized logging service for application-wide logging"""

    # Set by the extension at startup; background threads have no app context
    _db_path = None
    _ready_paths = set()

    @classmethod
    def configure(cls, db_path):
        cls._db_path = db_path

    @classmethod
    def _get_db_path(cls):
        return cls._db_path or get_setting('ANALYTICS_DB')

    @classmethod
    def _ensure_logs_table(cls, db_path):
        """Ensure the app_logs table exists"""
        if db_path in cls._ready_paths:
            return
        with Database.session(db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS app_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    level TEXT NOT NULL,
                    source TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    request_path TEXT,
                    store_id TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON app_logs(timestamp DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_source ON app_logs(source)")
        cls._ready_paths.add(db_path)

    @staticmethod
    def _get_request_context():
        """Extract request context information"""
        if not has_request_context():
            return None, None, None

        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        if ip_address and ',' in ip_address:
            ip_address = ip_address.split(',')[0].strip()

        return ip_address, request.headers.get('User-Agent', ''), request.path

    @classmethod
    def log(cls, level, source, message, details=None, store_id=None):
        """
        Log a message to the database

        Args:
            level (str): Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            source (str): Source component (campaigns, delivery, recovery, etc.)
            message (str): Main log message
            details (str/dict): Additional details (will be JSON-encoded if dict)
            store_id (str): Optional store the entry belongs to
        """
        db_path = cls._get_db_path()
        if isinstance(details, dict):
            details = json.dumps(details, indent=2, default=str)

        try:
            cls._ensure_logs_table(db_path)
            ip_address, user_agent, request_path = cls._get_request_context()
            with Database.session(db_path) as conn:
                conn.execute("""
                    INSERT INTO app_logs
                    (timestamp, level, source, message, details, ip_address, user_agent, request_path, store_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    datetime.now(timezone.utc).isoformat(), level.upper(), source, message,
                    details, ip_address, user_agent, request_path, store_id
                ))
        except Exception as e:
            # Fallback to the process logger if the database is unavailable
            std_logger.warning(f"[{level.upper()}] [{source}] {message} (log store error: {e})")

    @classmethod
    def info(cls, source, message, details=None, store_id=None):
        cls.log('INFO', source, message, details, store_id)

    @classmethod
    def warning(cls, source, message, details=None, store_id=None):
        cls.log('WARNING', source, message, details, store_id)

    @classmethod
    def error(cls, source, message, details=None, store_id=None):
        cls.log('ERROR', source, message, details, store_id)

    @classmethod
    def log_error_with_traceback(cls, source, error, details=None):
        """Log error with full traceback"""
        error_details = {
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': traceback.format_exc()
        }
        if details:
            error_details['additional_details'] = details

        cls.error(source, f"Exception occurred: {type(error).__name__}", error_details)

    @classmethod
    def recent(cls, source=None, limit=100):
        """Most recent entries, newest first."""
        db_path = cls._get_db_path()
        cls._ensure_logs_table(db_path)
        query = "SELECT * FROM app_logs"
        params = []
        if source:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with Database.session(db_path) as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    @classmethod
    def cleanup_old_logs(cls, days_to_keep=30):
        """Clean up old log entries"""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days_to_keep)).isoformat()
        db_path = cls._get_db_path()
        cls._ensure_logs_table(db_path)
        with Database.session(db_path) as conn:
            deleted = conn.execute("DELETE FROM app_logs WHERE timestamp < ?", (cutoff,)).rowcount
        cls.info('system', f"Cleaned up {deleted} old log entries")
        return deleted


def db_log(level, source, message, details=None, store_id=None):
    """Log to the persistent DB logger (survives container rebuilds)"""
    LoggingService.log(level, source, message, details, store_id)
