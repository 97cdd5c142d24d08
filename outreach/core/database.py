import os
import sqlite3
import threading
import weakref
from contextlib import contextmanager

# Seconds a connection waits on a locked database before raising
BUSY_TIMEOUT = 10.0


class Database:
    # Guards creation of the per-key locks below
    _lock = threading.Lock()
    # A key's lock lives only while some caller holds a reference to it
    _keyed_locks = weakref.WeakValueDictionary()

    @staticmethod
    def connect(path):
        conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    @staticmethod
    def ensure_dir(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    @staticmethod
    @contextmanager
    def session(path, immediate=False):
        """
        Open a connection and run the block inside one transaction.

        ``immediate=True`` takes the write lock up front (BEGIN IMMEDIATE), which
        read-modify-write paths need so two writers cannot interleave.
        The transaction commits on success and rolls back on any exception.
        """
        conn = Database.connect(path)
        try:
            conn.execute('BEGIN IMMEDIATE' if immediate else 'BEGIN')
            yield conn
            conn.commit()
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    @classmethod
    def lock_for(cls, key):
        """
        Return the process-wide lock for ``key``.
        Thread-safe: while any caller still holds the lock for a key, every
        other caller gets that same lock. Callers keep the returned object
        for the whole critical section.
        """
        with cls._lock:
            lock = cls._keyed_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                cls._keyed_locks[key] = lock
            return lock

    @staticmethod
    def table_exists(conn, table):
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row is not None
