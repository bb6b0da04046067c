"""Database package for the multisig payout service."""

from db.database import db, init_db, get_session
from db.session_manager import session_scope, ApprovalLocks, init_approval_locks, get_approval_locks

# Export commonly used functions
__all__ = [
    'db',
    'init_db',
    'get_session',
    'session_scope',
    'ApprovalLocks',
    'init_approval_locks',
    'get_approval_locks',
]
