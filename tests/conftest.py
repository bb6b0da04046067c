"""
Centralized pytest configuration for multisig payout service tests.

This module provides standardized fixtures and utilities for all test modules:
an app built with in-memory chain collaborators, database session and client
fixtures, deterministic signatory accounts, and helpers that set up a
configured committee.
"""

import hashlib
import os
import sys
import threading
import time

import pytest

# Select TestingConfig for the module-level app in app.py
os.environ.setdefault('FLASK_ENV', 'testing')

# Add project root to Python path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import close_app, create_app
from config import TestingConfig
from db.database import db
from services.discovery_service import ChainReader
from services.payout_service import ExecutionResult, PayoutExecutor
from utils.ss58_utils import decode_address, encode_address


def account(n: int) -> bytes:
    """Deterministic 32-byte account id."""
    return bytes([n]) * 32


def address(n: int, prefix: int = 0) -> str:
    return encode_address(account(n), prefix)


def expected_multisig_id(raw_keys, threshold: int) -> bytes:
    """Reference multisig derivation, written out byte by byte."""
    keys = sorted(raw_keys)
    count = len(keys)
    if count < 64:
        compact = bytes([count << 2])
    else:
        compact = ((count << 2) | 1).to_bytes(2, 'little')
    payload = b"modlpy/utilisuba" + compact + b''.join(keys) + threshold.to_bytes(2, 'little')
    return hashlib.blake2b(payload, digest_size=32).digest()


class FakeChainReader(ChainReader):
    """In-memory chain state for discovery tests."""

    def __init__(self):
        self.bounties = {}
        self.descriptions = {}
        self.proxy_map = {}
        self.multisig_calls = {}
        self.status_queries = 0

    def set_proxy(self, proxied: str, delegate: str, proxy_type='Any', delay=0):
        self.proxy_map.setdefault(decode_address(proxied), []).append(
            {'delegate': delegate, 'proxy_type': proxy_type, 'delay': delay}
        )

    def bounty_status(self, target_id):
        self.status_queries += 1
        return self.bounties.get(target_id)

    def bounty_description(self, target_id):
        return self.descriptions.get(target_id)

    def proxies(self, address):
        return list(self.proxy_map.get(decode_address(address), []))

    def pending_multisig_calls(self, multisig_address):
        return list(self.multisig_calls.get(decode_address(multisig_address), []))


class FakePayoutExecutor(PayoutExecutor):
    """Records submitted payouts; can be told to fail or stall."""

    def __init__(self):
        self.requests = []
        self.error = None
        self.delay = 0
        self._lock = threading.Lock()

    def submit(self, request):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.requests.append(request)
            count = len(self.requests)
        if self.error is not None:
            raise self.error
        return ExecutionResult(tx_hash='0x' + format(request.approval_id, '064x'), block_number=1000 + count)


@pytest.fixture
def chain_reader():
    return FakeChainReader()


@pytest.fixture
def payout_executor():
    return FakePayoutExecutor()


@pytest.fixture(scope="function")
def app(chain_reader, payout_executor):
    """
    Create the Flask app for testing with a fresh in-memory database.

    Chain access goes through ``FakeChainReader`` and ``FakePayoutExecutor``.
    The app context stays pushed for the whole test.
    """
    app = create_app(TestingConfig, payout_executor=payout_executor, chain_reader=chain_reader)

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    close_app(app)


@pytest.fixture(scope="function")
def db_session(app):
    """Provide the database session bound to the test app context."""
    yield db.session


@pytest.fixture(scope="function")
def client(app):
    """Flask test client for HTTP endpoint tests."""
    return app.test_client()


@pytest.fixture
def approval_service(app):
    return app.extensions['approval_service']


@pytest.fixture
def committee_service(app):
    return app.extensions['committee_service']


@pytest.fixture
def signatories():
    """Three committee members (Polkadot prefix)."""
    return [address(1), address(2), address(3)]


@pytest.fixture
def outsider():
    return address(9)


@pytest.fixture
def recipient():
    return address(0x20)


def create_configured_committee(committee_service, signatories, threshold=2, network='polkadot',
                                approval_pattern='combined'):
    """
    Create a committee and configure its multisig directly through the service.

    Returns:
        The configured Committee
    """
    committee = committee_service.create_committee('Test Committee', network)
    return committee_service.configure_multisig(
        committee.id, signatories, threshold, approval_pattern=approval_pattern
    )


@pytest.fixture
def committee(committee_service, signatories):
    """A polkadot committee with a 2-of-3 multisig."""
    return create_configured_committee(committee_service, signatories, threshold=2)
