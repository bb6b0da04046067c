"""
Session management utilities for database operations.

This module provides the transactional context manager used by every write
path, plus the per-key lock registry that serialises mutations of a single
approval request (or of a milestone while a request is being created).
"""

import threading
from contextlib import contextmanager
from typing import Dict, List

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from db.database import db


@contextmanager
def session_scope():
    """
    Provide a transactional scope around a series of operations.

    This context manager handles:
    - Automatic commit on success
    - Automatic rollback on exceptions

    The session itself stays registered with the app context so objects
    returned by services remain usable until the request ends; Flask-SQLAlchemy
    removes it on teardown.

    Usage:
        with session_scope() as session:
            session.add(approval)
            # Session is automatically committed here

    Raises:
        The original exception if one occurs during the transaction
    """
    session = db.session
    try:
        yield session
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        raise


class _LockEntry:
    __slots__ = ('lock', 'holders')

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class ApprovalLocks:
    """
    Registry of per-key mutual-exclusion locks.

    Keys look like ``approval:<id>`` or ``milestone:<id>``. Entries are
    reference counted and dropped once nobody holds or waits on them, so the
    registry does not grow with the number of approvals ever touched.

    The registry is owned by the Flask app (``app.extensions``) and created by
    ``init_approval_locks``; ``close`` refuses further acquisitions.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}
        self._closed = False

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            if self._closed:
                raise RuntimeError('ApprovalLocks registry is closed')
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry):
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: str):
        """
        Hold the locks for ``keys`` for the duration of the block.

        Keys are acquired in sorted order so two callers asking for
        overlapping key sets cannot deadlock.
        """
        acquired: List[tuple] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                entry.lock.acquire()
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def close(self):
        with self._guard:
            self._closed = True


def init_approval_locks(app) -> ApprovalLocks:
    """Create the lock registry for ``app`` (idempotent)."""
    locks = app.extensions.get('approval_locks')
    if locks is None:
        locks = ApprovalLocks()
        app.extensions['approval_locks'] = locks
    return locks


def get_approval_locks() -> ApprovalLocks:
    """Return the lock registry of the current app."""
    return init_approval_locks(current_app)
