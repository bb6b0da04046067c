"""
Standardized error handling utilities for the multisig payout service.

This module provides consistent error response formatting, the custom exception
classes of the approval engine, and error logging for all API endpoints.
"""

from flask import jsonify
from typing import Optional, Tuple, Dict, Any
import enum
import logging

from utils.audit_logger import audit_logger, AuditEventType


logger = logging.getLogger(__name__)


# Custom exception classes for domain-specific errors
class MultisigServiceError(Exception):
    """Base exception for all multisig payout service errors."""

    def __init__(self, message: str, error_code: str = 'INTERNAL_ERROR', status_code: int = 500):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(MultisigServiceError):
    """Exception raised for input validation failures."""

    def __init__(self, message: str, error_code: str = 'VALIDATION_ERROR'):
        super().__init__(message, error_code, 400)


class MalformedAddressError(ValidationError):
    """An address failed SS58 decoding (bad base58, checksum or length)."""

    def __init__(self, address: Any, reason: str = 'invalid SS58 address'):
        self.address = address
        super().__init__(f"Malformed address {address!r}: {reason}", 'MALFORMED_ADDRESS')


class InvalidThresholdError(ValidationError):
    """Threshold outside 1..len(signatories)."""

    def __init__(self, threshold: Any, signatory_count: int):
        self.threshold = threshold
        self.signatory_count = signatory_count
        super().__init__(
            f"Invalid threshold: {threshold} (must be 1-{signatory_count})",
            'INVALID_THRESHOLD'
        )


class InsufficientSignatoriesError(ValidationError):
    """Fewer than two signatories supplied."""

    def __init__(self, signatory_count: int):
        self.signatory_count = signatory_count
        super().__init__(
            f"At least 2 signatories required, got {signatory_count}",
            'INSUFFICIENT_SIGNATORIES'
        )


class ThresholdNotMetError(ValidationError):
    """Execution requested before enough approvals were collected."""

    def __init__(self, approve_count: int, threshold: int):
        self.approve_count = approve_count
        self.threshold = threshold
        super().__init__(
            f"Threshold not met: {approve_count} of {threshold} approvals",
            'THRESHOLD_NOT_MET'
        )


class AuthorizationError(MultisigServiceError):
    """Exception raised for authorization failures."""

    def __init__(self, message: str, error_code: str = 'AUTHORIZATION_ERROR'):
        super().__init__(message, error_code, 403)


class NotASignatoryError(AuthorizationError):
    """Address is not a member of the committee's multisig."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"{address} is not a signatory for this committee", 'NOT_A_SIGNATORY')


class ResourceNotFoundError(MultisigServiceError):
    """Exception raised when a requested resource is not found."""

    def __init__(self, message: str, error_code: str = 'NOT_FOUND'):
        super().__init__(message, error_code, 404)


class DuplicateRequestError(MultisigServiceError):
    """A milestone already has a non-terminal approval request."""

    def __init__(self, milestone_id: int, approval_id: Optional[int] = None):
        self.milestone_id = milestone_id
        self.approval_id = approval_id
        super().__init__(
            f"There is already an active approval process for milestone {milestone_id}",
            'DUPLICATE_REQUEST',
            409
        )


class AlreadyVotedError(MultisigServiceError):
    """A signatory tried to vote twice on the same approval."""

    def __init__(self, approval_id: int, address: str):
        self.approval_id = approval_id
        self.address = address
        super().__init__(f"{address} has already voted on approval {approval_id}", 'ALREADY_VOTED', 409)


class AlreadyExecutedError(MultisigServiceError):
    """Execution requested for an approval that was already executed."""

    def __init__(self, approval_id: int, tx_hash: Optional[str] = None):
        self.approval_id = approval_id
        self.tx_hash = tx_hash
        super().__init__(f"Approval {approval_id} has already been executed", 'ALREADY_EXECUTED', 409)


class AddressMismatchError(MultisigServiceError):
    """Signatories and threshold do not reproduce the on-chain multisig."""

    def __init__(self, computed_address: str, expected_address: str):
        self.computed_address = computed_address
        self.expected_address = expected_address
        super().__init__(
            f"Computed multisig address {computed_address} does not match expected address {expected_address}",
            'ADDRESS_MISMATCH',
            422
        )


class ChainErrorKind(str, enum.Enum):
    """Closed taxonomy of chain-client failures."""
    INSUFFICIENT_BALANCE = 'insufficient_balance'
    ALREADY_APPROVED = 'already_approved'
    THRESHOLD_NOT_MET = 'threshold_not_met'
    TIMEPOINT_INVALID = 'timepoint_invalid'
    TRANSACTION_TIMEOUT = 'transaction_timeout'
    NETWORK_ERROR = 'network_error'
    USER_REJECTED = 'user_rejected'
    PERMISSION_DENIED = 'permission_denied'
    UNKNOWN = 'unknown'


class ChainError(MultisigServiceError):
    """Failure reported by the chain client while submitting a payout."""

    def __init__(self, kind: ChainErrorKind, message: Optional[str] = None):
        self.kind = ChainErrorKind(kind)
        status_code = 504 if self.kind is ChainErrorKind.TRANSACTION_TIMEOUT else 502
        super().__init__(
            message or f"Chain error: {self.kind.value}",
            f"CHAIN_{self.kind.value.upper()}",
            status_code
        )


class ServiceUnavailableError(MultisigServiceError):
    """A required collaborator (chain reader, payout executor) is not configured."""

    def __init__(self, message: str, error_code: str = 'SERVICE_UNAVAILABLE'):
        super().__init__(message, error_code, 503)


class RateLimitError(MultisigServiceError):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, message: str = 'Rate limit exceeded', error_code: str = 'RATE_LIMIT_EXCEEDED'):
        super().__init__(message, error_code, 429)


def create_error_response(
    error: Exception,
    include_details: bool = False
) -> Tuple[Dict[str, Any], int]:
    """
    Create a standardized error response with logging.

    Args:
        error: The exception that occurred
        include_details: Whether to include technical details (only in development)

    Returns:
        Tuple of (response dict, status code)
    """
    if isinstance(error, MultisigServiceError):
        status_code = error.status_code
        error_code = error.error_code
        message = error.message

        if isinstance(error, ChainError):
            audit_logger.log_event(
                AuditEventType.ERROR_CHAIN,
                status='failure',
                message=message,
                error_code=error_code,
                kind=error.kind.value
            )
        elif status_code >= 500:
            audit_logger.log_error(
                'application',
                message=message,
                error_code=error_code
            )

        response = {
            'error': message,
            'error_code': error_code
        }

        kind = getattr(error, 'kind', None)
        if kind is not None:
            response['kind'] = getattr(kind, 'value', kind)

        if include_details and hasattr(error, '__dict__'):
            response['details'] = {k: v for k, v in error.__dict__.items()
                                 if k not in ['message', 'error_code', 'status_code', 'kind']}

    else:
        status_code = 500
        error_code = 'INTERNAL_ERROR'

        logger.exception('Unexpected error', exc_info=error)
        audit_logger.log_error(
            'application',
            message=f'Unexpected error: {str(error)}',
            error_code=error_code,
            error_type=type(error).__name__
        )

        # Don't expose internal error details to users in production
        if include_details:
            message = str(error)
        else:
            message = 'An internal error occurred. Please try again later.'

        response = {
            'error': message,
            'error_code': error_code
        }

    return response, status_code


def register_error_handlers(app):
    """Turn typed service errors into JSON responses for every blueprint."""

    @app.errorhandler(MultisigServiceError)
    def handle_service_error(error):
        response, status_code = create_error_response(error, include_details=app.debug)
        return jsonify(response), status_code
