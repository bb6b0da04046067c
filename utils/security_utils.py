"""
Security utilities for the multisig payout service.

This module provides security-related utilities including input validation,
rate limiting and security response headers.
"""

import re
import functools
from typing import Any, Optional, Tuple
from flask import request, current_app
import time
from collections import defaultdict, deque

from config import Config
from utils.error_handling import RateLimitError, ValidationError


MAX_AMOUNT = 2 ** 128 - 1  # u128 balance
_CALL_HASH_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')


class RateLimiter:
    """Simple in-memory rate limiter for API endpoints."""

    def __init__(self, max_requests: int = 10, window_seconds: int = 60):
        """
        Initialize rate limiter.

        Args:
            max_requests: Maximum requests allowed per window
            window_seconds: Time window in seconds
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests = defaultdict(deque)

    def is_allowed(self, identifier: str) -> bool:
        """
        Check if request is allowed for given identifier.

        Args:
            identifier: Unique identifier (e.g., IP address)

        Returns:
            True if request is allowed, False otherwise
        """
        now = time.time()
        window_start = now - self.window_seconds

        # Clean old requests
        while self.requests[identifier] and self.requests[identifier][0] < window_start:
            self.requests[identifier].popleft()

        # Check if under limit
        if len(self.requests[identifier]) < self.max_requests:
            self.requests[identifier].append(now)
            return True

        return False


api_rate_limiter = RateLimiter(
    max_requests=Config.RATE_LIMIT_API_REQUESTS,
    window_seconds=Config.RATE_LIMIT_API_WINDOW
)


def rate_limit_api(f):
    """Rate limiting decorator for API endpoints."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        # Skip rate limiting in testing mode
        if current_app and (current_app.config.get('TESTING') or not current_app.config.get('RATE_LIMIT_ENABLED', True)):
            return f(*args, **kwargs)

        client_ip = request.environ.get('HTTP_X_FORWARDED_FOR', request.environ.get('REMOTE_ADDR', 'unknown'))

        if not api_rate_limiter.is_allowed(client_ip):
            from utils.audit_logger import audit_logger
            audit_logger.log_rate_limit_hit('api')
            raise RateLimitError('Rate limit exceeded. Please try again later.')

        return f(*args, **kwargs)
    return decorated_function


def parse_amount(value: Any) -> int:
    """
    Parse a payout amount in integer minor units.

    Integers and decimal-digit strings are accepted; floats, negatives, zero
    and anything above u128 are rejected.

    Raises:
        ValidationError: if the value is not a positive integral amount
    """
    if isinstance(value, bool):
        raise ValidationError('Amount must be an integer number of minor units', 'INVALID_AMOUNT')
    if isinstance(value, str):
        value = value.strip()
        if not re.fullmatch(r'\d+', value):
            raise ValidationError('Amount must be an integer number of minor units', 'INVALID_AMOUNT')
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError('Amount must be an integer number of minor units', 'INVALID_AMOUNT')
    if value <= 0:
        raise ValidationError('Amount must be positive', 'INVALID_AMOUNT')
    if value > MAX_AMOUNT:
        raise ValidationError('Amount exceeds the maximum balance', 'INVALID_AMOUNT')
    return value


def validate_call_hash(call_hash: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a 0x-prefixed blake2-256 call hash.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not call_hash:
        return False, "Call hash is required"

    if not isinstance(call_hash, str) or not _CALL_HASH_RE.match(call_hash):
        return False, "Call hash must be 0x followed by 64 hex characters"

    return True, None


def validate_required_fields(data: Optional[dict], fields) -> Tuple[bool, Optional[str]]:
    """
    Check that every name in ``fields`` is present and non-empty in ``data``.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "JSON data required"

    missing = [name for name in fields if data.get(name) in (None, '')]
    if missing:
        return False, f"Missing required fields: {', '.join(missing)}"

    return True, None


def add_security_headers(response):
    """
    Add security headers to Flask response.

    Args:
        response: Flask response object

    Returns:
        Response object with security headers added
    """
    # Prevent clickjacking
    response.headers['X-Frame-Options'] = 'DENY'

    # Prevent MIME type sniffing
    response.headers['X-Content-Type-Options'] = 'nosniff'

    # Strict transport security (HTTPS only)
    response.headers['Strict-Transport-Security'] = f'max-age={Config.HSTS_MAX_AGE}; includeSubDomains'

    # Content security policy; JSON API only
    response.headers['Content-Security-Policy'] = Config.CSP_POLICY

    # Referrer policy
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

    return response
