"""
Audit logging for payout-critical operations.

This module provides structured logging for approval lifecycle events
(initiation, votes, threshold transitions, execution, cancellation), multisig
configuration changes and errors. Logs are formatted as JSON for easy parsing
and analysis by monitoring tools.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from flask import request, has_request_context
from config import Config


# Define audit event types
class AuditEventType:
    """Enumeration of audit event types."""
    # Approval lifecycle
    APPROVAL_INITIATE = "approval.initiate"
    APPROVAL_VOTE = "approval.vote"
    APPROVAL_THRESHOLD_MET = "approval.threshold_met"
    APPROVAL_CANCEL = "approval.cancel"
    APPROVAL_EXPIRE = "approval.expire"

    # Payout execution
    PAYOUT_EXECUTE_SUCCESS = "payout.execute.success"
    PAYOUT_EXECUTE_FAILURE = "payout.execute.failure"

    # Multisig configuration
    MULTISIG_CONFIGURE = "multisig.configure"
    MULTISIG_ADDRESS_MISMATCH = "multisig.address_mismatch"

    # Security events
    RATE_LIMIT_HIT = "security.rate_limit"

    # Errors
    ERROR_CHAIN = "error.chain"


class AuditLogger:
    """
    Centralized audit logger for approval events.

    Logs are structured JSON with consistent fields:
    - timestamp: ISO8601 timestamp
    - event_type: Type of event (see AuditEventType)
    - approval_id: Approval request ID if applicable
    - address: Signatory address if applicable
    - ip_address: Client IP address
    - data: Event-specific data
    - status: success/failure
    - message: Human-readable message
    """

    def __init__(self):
        """Initialize the audit logger."""
        self.logger = logging.getLogger('audit')
        self.logger.setLevel(getattr(logging, Config.LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            if Config.AUDIT_LOG_FILE:
                handler = logging.FileHandler(Config.AUDIT_LOG_FILE)
            else:
                handler = logging.StreamHandler(sys.stdout)

            if Config.LOG_FORMAT == 'json':
                formatter = JSONFormatter()
            else:
                formatter = logging.Formatter(
                    '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
                )

            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract request context information."""
        context = {}

        if has_request_context():
            context['ip_address'] = request.remote_addr
            context['method'] = request.method
            context['path'] = request.path
            context['endpoint'] = request.endpoint

        return context

    def log_event(
        self,
        event_type: str,
        status: str = 'success',
        approval_id: Optional[int] = None,
        address: Optional[str] = None,
        message: Optional[str] = None,
        **data
    ):
        """
        Log an audit event.

        Args:
            event_type: Type of event (use AuditEventType constants)
            status: 'success' or 'failure'
            approval_id: Approval request ID if applicable
            address: Acting signatory address if known
            message: Human-readable message
            **data: Additional event-specific data
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event_type': event_type,
            'status': status,
        }

        event.update(self._get_request_context())

        if approval_id is not None:
            event['approval_id'] = approval_id
        if address:
            event['address'] = address

        if message:
            event['message'] = message

        if data:
            event['data'] = data

        payload = json.dumps(event, default=str) if Config.LOG_FORMAT == 'json' else str(event)
        if status == 'failure' or event_type.startswith('error.'):
            self.logger.warning(payload)
        else:
            self.logger.info(payload)

    # Convenience methods for common events

    def log_initiate(self, approval_id: int, milestone_id: int, initiator: str, amount: int):
        """Log creation of an approval request."""
        self.log_event(
            AuditEventType.APPROVAL_INITIATE,
            approval_id=approval_id,
            address=initiator,
            message=f'Approval {approval_id} initiated for milestone {milestone_id}',
            milestone_id=milestone_id,
            amount=amount
        )

    def log_vote(self, approval_id: int, address: str, decision: str, approve_count: int, threshold: int):
        """Log a signatory vote."""
        self.log_event(
            AuditEventType.APPROVAL_VOTE,
            approval_id=approval_id,
            address=address,
            message=f'{decision} vote recorded ({approve_count}/{threshold})',
            decision=decision,
            approve_count=approve_count,
            threshold=threshold
        )

    def log_threshold_met(self, approval_id: int, approve_count: int, threshold: int):
        """Log the transition into threshold_met."""
        self.log_event(
            AuditEventType.APPROVAL_THRESHOLD_MET,
            approval_id=approval_id,
            message=f'Threshold met for approval {approval_id}',
            approve_count=approve_count,
            threshold=threshold
        )

    def log_execution(self, approval_id: int, address: str, success: bool,
                      tx_hash: Optional[str] = None, reason: Optional[str] = None):
        """Log a payout execution attempt."""
        event_type = AuditEventType.PAYOUT_EXECUTE_SUCCESS if success else AuditEventType.PAYOUT_EXECUTE_FAILURE
        self.log_event(
            event_type,
            status='success' if success else 'failure',
            approval_id=approval_id,
            address=address,
            message=f'Payout execution {"succeeded" if success else "failed"}',
            tx_hash=tx_hash,
            reason=reason
        )

    def log_multisig_configured(self, committee_id: int, multisig_address: str, threshold: int, signatory_count: int):
        """Log a committee multisig configuration change."""
        self.log_event(
            AuditEventType.MULTISIG_CONFIGURE,
            message=f'Committee {committee_id} multisig set to {multisig_address}',
            committee_id=committee_id,
            multisig_address=multisig_address,
            threshold=threshold,
            signatory_count=signatory_count
        )

    def log_address_mismatch(self, committee_id: int, computed: str, expected: str):
        """Log a rejected configuration whose derived address differs from chain state."""
        self.log_event(
            AuditEventType.MULTISIG_ADDRESS_MISMATCH,
            status='failure',
            message='Computed multisig address does not match discovered multisig',
            committee_id=committee_id,
            computed_address=computed,
            expected_address=expected
        )

    def log_rate_limit_hit(self, limit_type: str):
        """Log rate limit violation."""
        self.log_event(
            AuditEventType.RATE_LIMIT_HIT,
            status='failure',
            message=f'Rate limit exceeded: {limit_type}',
            limit_type=limit_type
        )

    def log_error(self, error_type: str, message: str, **details):
        """Log error event."""
        event_type = f"error.{error_type}"
        self.log_event(
            event_type,
            status='failure',
            message=message,
            **details
        )


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format log record as JSON."""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
        }

        # If the message is already JSON (from audit logger), parse it
        try:
            message_data = json.loads(record.getMessage())
            log_data.update(message_data)
        except (json.JSONDecodeError, ValueError, TypeError):
            log_data['message'] = record.getMessage()

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


# Global audit logger instance
audit_logger = AuditLogger()
