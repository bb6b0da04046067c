"""
Approval service: multisig approval store and state machine.

This module provides the ApprovalService class which tracks milestone payouts
through the committee multisig:

    active --(approvals >= threshold)--> threshold_met --(execute)--> executed
    active --(cancel by initiator)--> rejected
    active --(expires_at passed)--> expired

Every mutation of a request runs under the per-key lock registry
(``approval:<id>`` / ``milestone:<id>``) inside a ``session_scope()``
transaction that re-reads the row. The ``version`` column turns a concurrent
write from another process into ``StaleDataError``, which is retried. The
``executed`` write is conditional on the row still being ``threshold_met``,
and no database transaction is held while the chain client is called.

Reject votes are recorded only. They neither cancel the request nor block
threshold progress; ``cancel`` is the only way into ``rejected``.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from db.database import get_session
from db.session_manager import get_approval_locks, session_scope
from models.approval import ApprovalRequest, ApprovalStatus, Timepoint, Vote, VoteDecision
from models.committee import Committee
from services.committee_service import parse_approval_pattern
from services.payout_service import ExecutionResult, PayoutExecutor, PayoutRequest, run_with_timeout
from utils.audit_logger import audit_logger, AuditEventType
from utils.error_handling import (
    AlreadyExecutedError,
    AlreadyVotedError,
    AuthorizationError,
    ChainError,
    DuplicateRequestError,
    MalformedAddressError,
    NotASignatoryError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    ThresholdNotMetError,
    ValidationError,
)
from utils.multisig_utils import MultisigConfig, is_quorum_met, is_signatory, will_hit_quorum
from utils.security_utils import parse_amount, validate_call_hash
from utils.ss58_utils import addresses_equal, decode_address, encode_address, to_hex


logger = logging.getLogger(__name__)

PENDING_STATUSES = (ApprovalStatus.ACTIVE, ApprovalStatus.THRESHOLD_MET)
STALE_RETRY_ATTEMPTS = 3


class InitiationResult(NamedTuple):
    approval: ApprovalRequest
    vote: Vote
    threshold_met: bool


class VoteResult(NamedTuple):
    approval: ApprovalRequest
    vote: Vote
    threshold_met: bool


class VoteEligibility(NamedTuple):
    """Whether an address may vote now, and whether its vote would reach the threshold."""
    can_vote: bool
    reason: Optional[str] = None
    is_final_voter: bool = False

    def to_dict(self) -> dict:
        return {'canVote': self.can_vote, 'reason': self.reason, 'isFinalVoter': self.is_final_voter}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def placeholder_call_hash(milestone_id: int, recipient_raw: bytes, amount: int) -> str:
    """Deterministic stand-in for the call hash until the chain call is built."""
    payload = (
        b"milestone-payout"
        + int(milestone_id).to_bytes(8, 'little')
        + recipient_raw
        + int(amount).to_bytes(16, 'little')
    )
    return '0x' + hashlib.blake2b(payload, digest_size=32).hexdigest()


def parse_decision(value) -> VoteDecision:
    try:
        return VoteDecision(value or VoteDecision.APPROVE.value)
    except ValueError:
        raise ValidationError("decision must be 'approve' or 'reject'", 'INVALID_DECISION')


class ApprovalService:
    """
    Service class for milestone payout approvals.

    Store queries:
        get_approval, get_approval_for_milestone, list_approvals_for_milestone,
        pending_approvals_for_committee, pending_approvals_for_signatory,
        vote_counts, progress

    State machine:
        initiate, attach_call, vote, can_vote, execute, cancel, expire_stale
    """

    def __init__(
        self,
        payout_executor: Optional[PayoutExecutor] = None,
        execution_timeout: float = 60,
        expiry_hours: int = 0,
        locks=None
    ):
        self.payout_executor = payout_executor
        self.execution_timeout = execution_timeout
        self.expiry_hours = expiry_hours
        self._locks = locks

    @property
    def locks(self):
        return self._locks if self._locks is not None else get_approval_locks()

    # Store queries

    def get_approval(self, approval_id: int) -> ApprovalRequest:
        approval = get_session().get(ApprovalRequest, approval_id, populate_existing=True)
        if approval is None:
            raise ResourceNotFoundError(f"Approval {approval_id} not found")
        return approval

    def get_approval_for_milestone(self, milestone_id: int) -> Optional[ApprovalRequest]:
        """The newest approval request of a milestone, or None."""
        return (
            get_session().query(ApprovalRequest)
            .filter(ApprovalRequest.milestone_id == milestone_id)
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
            .populate_existing()
            .first()
        )

    def list_approvals_for_milestone(self, milestone_id: int) -> List[ApprovalRequest]:
        return (
            get_session().query(ApprovalRequest)
            .filter(ApprovalRequest.milestone_id == milestone_id)
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
            .populate_existing()
            .all()
        )

    def pending_approvals_for_committee(self, committee_id: int) -> List[ApprovalRequest]:
        return (
            get_session().query(ApprovalRequest)
            .filter(ApprovalRequest.committee_id == committee_id,
                    ApprovalRequest.status.in_(PENDING_STATUSES))
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
            .populate_existing()
            .all()
        )

    def pending_approvals_for_signatory(self, committee_id: int, address: str) -> List[ApprovalRequest]:
        """Active requests of the committee that still wait on ``address``'s vote."""
        key = to_hex(decode_address(address))
        return [
            approval for approval in self.pending_approvals_for_committee(committee_id)
            if approval.status == ApprovalStatus.ACTIVE
            and is_signatory(address, approval.signatories)
            and approval.vote_for(key) is None
        ]

    def vote_counts(self, approval_id: int) -> dict:
        approval = self.get_approval(approval_id)
        return {
            'approve': approval.approve_count,
            'reject': approval.reject_count,
            'total': len(approval.votes),
        }

    def progress(self, approval_id: int) -> dict:
        approval = self.get_approval(approval_id)
        voted = {v.signatory_key: v for v in approval.votes}
        signatories = []
        for address in approval.signatories:
            v = voted.get(to_hex(decode_address(address)))
            signatories.append({
                'address': address,
                'voted': v is not None,
                'decision': v.decision.value if v else None,
            })
        return {
            'approvalId': approval.id,
            'status': approval.status.value,
            'threshold': approval.threshold,
            'approveCount': approval.approve_count,
            'rejectCount': approval.reject_count,
            'remaining': max(approval.threshold - approval.approve_count, 0),
            'thresholdMet': is_quorum_met(approval.approve_count, approval.threshold),
            'signatories': signatories,
        }

    # Internals

    def _with_retry(self, func, *args):
        for attempt in Retrying(
            stop=stop_after_attempt(STALE_RETRY_ATTEMPTS),
            retry=retry_if_exception_type(StaleDataError),
            reraise=True,
        ):
            with attempt:
                return func(*args)

    @staticmethod
    def _load_for_update(session, approval_id: int) -> ApprovalRequest:
        approval = (
            session.query(ApprovalRequest)
            .filter(ApprovalRequest.id == approval_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if approval is None:
            raise ResourceNotFoundError(f"Approval {approval_id} not found")
        return approval

    @staticmethod
    def _is_expired(approval: ApprovalRequest, now: Optional[datetime] = None) -> bool:
        if approval.expires_at is None:
            return False
        return _as_utc(approval.expires_at) <= (now or _utcnow())

    def _configured_committee(self, committee_id: int) -> Committee:
        committee = get_session().get(Committee, committee_id)
        if committee is None:
            raise ResourceNotFoundError(f"Committee {committee_id} not found")
        if not committee.is_configured:
            raise ValidationError(f"Committee {committee_id} has no multisig configured", 'MULTISIG_NOT_CONFIGURED')
        return committee

    # State machine

    def initiate(
        self,
        committee_id: int,
        milestone_id: int,
        recipient_address: str,
        amount,
        initiator_address: str,
        approval_pattern: Optional[str] = None,
        call_hash: Optional[str] = None,
        call_data: Optional[str] = None,
        timepoint: Optional[Timepoint] = None,
        tx_hash: Optional[str] = None
    ) -> InitiationResult:
        """
        Open an approval request for a milestone payout.

        The initiator's approve vote is recorded with the request. With a
        threshold of 1 the request starts out in ``threshold_met``. Without
        ``approval_pattern`` the committee's configured pattern is used.

        Raises:
            ValidationError: bad amount, address, pattern or call hash
            ResourceNotFoundError: unknown committee
            NotASignatoryError: initiator is not in the committee multisig
            DuplicateRequestError: the milestone already has a pending request
        """
        amount = parse_amount(amount)
        pattern = parse_approval_pattern(approval_pattern) if approval_pattern else None
        recipient_raw = decode_address(recipient_address)
        initiator_key = to_hex(decode_address(initiator_address))
        if call_hash is not None:
            valid, error = validate_call_hash(call_hash)
            if not valid:
                raise ValidationError(error, 'INVALID_CALL_HASH')

        committee = self._configured_committee(committee_id)
        config = committee.multisig_config
        pattern = pattern or parse_approval_pattern(committee.approval_pattern)
        if not config.contains(initiator_address):
            raise NotASignatoryError(initiator_address)

        now = _utcnow()
        fields = dict(
            milestone_id=milestone_id,
            committee_id=committee_id,
            recipient_address=encode_address(recipient_raw, config.prefix),
            amount_minor_units=str(amount),
            call_hash=call_hash or placeholder_call_hash(milestone_id, recipient_raw, amount),
            call_data=call_data,
            initiator_address=initiator_address,
            approval_pattern=pattern,
            signatories=list(config.signatories),
            threshold=config.threshold,
            expires_at=now + timedelta(hours=self.expiry_hours) if self.expiry_hours > 0 else None,
        )

        with self.locks.hold(f'milestone:{milestone_id}'):
            try:
                approval, vote, superseded_id = self._with_retry(
                    self._create_request, fields, timepoint, initiator_address, initiator_key, tx_hash
                )
            except IntegrityError:
                logger.info("Concurrent initiate for milestone %s lost the race", milestone_id)
                raise DuplicateRequestError(milestone_id)

        if superseded_id is not None:
            audit_logger.log_event(
                AuditEventType.APPROVAL_EXPIRE,
                approval_id=superseded_id,
                message=f"Approval {superseded_id} expired and was superseded by {approval.id}"
            )
        threshold_met = approval.status == ApprovalStatus.THRESHOLD_MET
        audit_logger.log_initiate(approval.id, milestone_id, initiator_address, amount)
        if threshold_met:
            audit_logger.log_threshold_met(approval.id, approval.approve_count, approval.threshold)
        return InitiationResult(approval, vote, threshold_met)

    def _create_request(self, fields: dict, timepoint, initiator_address: str, initiator_key: str, tx_hash):
        milestone_id = fields['milestone_id']
        with session_scope() as session:
            existing = (
                session.query(ApprovalRequest)
                .filter(ApprovalRequest.active_milestone_id == milestone_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if existing is not None:
                if existing.status != ApprovalStatus.ACTIVE or not self._is_expired(existing):
                    raise DuplicateRequestError(milestone_id, existing.id)
                # A lapsed request frees the milestone slot before the new row claims it
                existing.status = ApprovalStatus.EXPIRED
                existing.active_milestone_id = None
                existing.updated_at = _utcnow()
                session.flush()
                superseded_id = existing.id
            else:
                superseded_id = None

            threshold_met = is_quorum_met(1, fields['threshold'])
            approval = ApprovalRequest(
                **fields,
                status=ApprovalStatus.THRESHOLD_MET if threshold_met else ApprovalStatus.ACTIVE,
                active_milestone_id=milestone_id,
            )
            approval.timepoint = timepoint
            vote = Vote(
                signatory_address=initiator_address,
                signatory_key=initiator_key,
                decision=VoteDecision.APPROVE,
                tx_hash=tx_hash,
                is_initiator=True,
                is_final_approval=threshold_met,
            )
            approval.votes.append(vote)
            session.add(approval)
        return approval, vote, superseded_id

    def attach_call(
        self,
        approval_id: int,
        call_hash: str,
        call_data: Optional[str] = None,
        timepoint: Optional[Timepoint] = None
    ) -> ApprovalRequest:
        """Record the real call hash/data and, once known, the on-chain timepoint."""
        valid, error = validate_call_hash(call_hash)
        if not valid:
            raise ValidationError(error, 'INVALID_CALL_HASH')

        def _attach():
            with session_scope() as session:
                approval = self._load_for_update(session, approval_id)
                if approval.is_terminal:
                    raise ValidationError(f"Approval is {approval.status.value}", 'APPROVAL_CLOSED')
                approval.call_hash = call_hash
                if call_data is not None:
                    approval.call_data = call_data
                if timepoint is not None:
                    approval.timepoint = timepoint
            return approval

        with self.locks.hold(f'approval:{approval_id}'):
            return self._with_retry(_attach)

    def vote(
        self,
        approval_id: int,
        signatory_address: str,
        decision: str = 'approve',
        tx_hash: Optional[str] = None
    ) -> VoteResult:
        """
        Append a signatory's vote.

        Only ``active`` requests accept votes. The approve vote that brings the
        count to the threshold moves the request to ``threshold_met`` and is
        flagged ``is_final_approval``; exactly one vote ever is.

        Raises:
            ResourceNotFoundError, NotASignatoryError, AlreadyVotedError,
            ValidationError (request closed, expired or threshold already met)
        """
        decision = parse_decision(decision)
        signatory_key = to_hex(decode_address(signatory_address))

        with self.locks.hold(f'approval:{approval_id}'):
            try:
                approval, vote, reached = self._with_retry(
                    self._record_vote, approval_id, signatory_address, signatory_key, decision, tx_hash
                )
            except IntegrityError:
                raise AlreadyVotedError(approval_id, signatory_address)

        audit_logger.log_vote(approval.id, signatory_address, decision.value,
                              approval.approve_count, approval.threshold)
        if reached:
            audit_logger.log_threshold_met(approval.id, approval.approve_count, approval.threshold)
        return VoteResult(approval, vote, approval.status == ApprovalStatus.THRESHOLD_MET)

    def _record_vote(self, approval_id, signatory_address, signatory_key, decision, tx_hash):
        with session_scope() as session:
            approval = self._load_for_update(session, approval_id)

            if not is_signatory(signatory_address, approval.signatories):
                raise NotASignatoryError(signatory_address)
            if approval.vote_for(signatory_key) is not None:
                raise AlreadyVotedError(approval_id, signatory_address)
            if approval.is_terminal:
                raise ValidationError(f"Approval is {approval.status.value}", 'APPROVAL_CLOSED')
            if self._is_expired(approval):
                raise ValidationError('Approval has expired', 'APPROVAL_EXPIRED')
            if approval.status != ApprovalStatus.ACTIVE:
                raise ValidationError('Threshold already met; the approval is ready to execute',
                                      'THRESHOLD_ALREADY_MET')

            vote = Vote(
                signatory_address=signatory_address,
                signatory_key=signatory_key,
                decision=decision,
                tx_hash=tx_hash,
            )
            approval.votes.append(vote)
            # Touch the row so the version check also covers vote-only writes
            approval.updated_at = _utcnow()

            reached = (decision == VoteDecision.APPROVE
                       and is_quorum_met(approval.approve_count, approval.threshold))
            if reached:
                vote.is_final_approval = True
                approval.status = ApprovalStatus.THRESHOLD_MET
        return approval, vote, reached

    def can_vote(self, approval_id: int, address: str) -> VoteEligibility:
        """
        Check whether ``address`` may vote on the approval right now.

        Read-only and lock-free. ``is_final_voter`` is true exactly when this
        address's approve vote would bring the count to the threshold.

        Raises:
            ResourceNotFoundError: unknown approval
        """
        approval = self.get_approval(approval_id)
        try:
            key = to_hex(decode_address(address))
        except MalformedAddressError:
            return VoteEligibility(False, 'Malformed address')

        if not is_signatory(address, approval.signatories):
            return VoteEligibility(False, 'Not a signatory for this committee')
        if approval.vote_for(key) is not None:
            return VoteEligibility(False, 'Already voted')
        if approval.status == ApprovalStatus.EXECUTED:
            return VoteEligibility(False, 'Approval has already been executed')
        if approval.is_terminal:
            return VoteEligibility(False, f"Approval is {approval.status.value}")
        if self._is_expired(approval):
            return VoteEligibility(False, 'Approval has expired')
        if approval.status == ApprovalStatus.THRESHOLD_MET:
            return VoteEligibility(False, 'Threshold already met')

        return VoteEligibility(True, None, will_hit_quorum(approval.approve_count, approval.threshold))

    def execute(self, approval_id: int, final_signatory_address: str) -> ExecutionResult:
        """
        Submit the prepared payout through the payout executor, exactly once.

        The final signatory must already have voted approve; execution adds no
        vote. On any chain failure the request stays ``threshold_met`` so the
        call can be retried.

        Raises:
            AlreadyExecutedError, NotASignatoryError, ThresholdNotMetError,
            ValidationError (closed request, or the signatory has not voted),
            ServiceUnavailableError (no payout executor), ChainError
        """
        signatory_key = to_hex(decode_address(final_signatory_address))

        with self.locks.hold(f'approval:{approval_id}'):
            request = self._prepare_execution(approval_id, final_signatory_address, signatory_key)

            try:
                result = run_with_timeout(self.payout_executor, request, self.execution_timeout)
            except ChainError as e:
                audit_logger.log_execution(approval_id, final_signatory_address, False, reason=e.kind.value)
                raise

            self._with_retry(self._record_execution, approval_id, result)

        audit_logger.log_execution(approval_id, final_signatory_address, True, tx_hash=result.tx_hash)
        return result

    def _prepare_execution(self, approval_id, final_signatory_address, signatory_key) -> PayoutRequest:
        # Reads only; the transaction ends before the chain call
        with session_scope() as session:
            approval = self._load_for_update(session, approval_id)

            if approval.status == ApprovalStatus.EXECUTED:
                raise AlreadyExecutedError(approval_id, approval.execution_tx_hash)
            if not is_signatory(final_signatory_address, approval.signatories):
                raise NotASignatoryError(final_signatory_address)
            if approval.status == ApprovalStatus.ACTIVE:
                raise ThresholdNotMetError(approval.approve_count, approval.threshold)
            if approval.status != ApprovalStatus.THRESHOLD_MET:
                raise ValidationError(f"Approval is {approval.status.value}", 'APPROVAL_CLOSED')

            vote = approval.vote_for(signatory_key)
            if vote is None or vote.decision != VoteDecision.APPROVE:
                raise ValidationError('Signatory must cast an approve vote before executing', 'VOTE_REQUIRED')

            if self.payout_executor is None:
                raise ServiceUnavailableError('Payout executor is not configured')

            return PayoutRequest(
                approval_id=approval.id,
                milestone_id=approval.milestone_id,
                final_signatory=final_signatory_address,
                multisig=MultisigConfig(
                    signatories=tuple(approval.signatories),
                    threshold=approval.threshold,
                    prefix=approval.committee.ss58_prefix,
                ),
                recipient=approval.recipient_address,
                amount=approval.amount,
                approval_pattern=approval.approval_pattern,
                call_hash=approval.call_hash,
                call_data=approval.call_data,
                timepoint=approval.timepoint,
                parent_bounty_id=approval.committee.parent_bounty_id,
                curator=approval.committee.curator_proxy_address,
            )

    def _record_execution(self, approval_id: int, result: ExecutionResult):
        now = _utcnow()
        with session_scope() as session:
            updated = (
                session.query(ApprovalRequest)
                .filter(ApprovalRequest.id == approval_id,
                        ApprovalRequest.status == ApprovalStatus.THRESHOLD_MET)
                .update({
                    ApprovalRequest.status: ApprovalStatus.EXECUTED,
                    ApprovalRequest.active_milestone_id: None,
                    ApprovalRequest.execution_tx_hash: result.tx_hash,
                    ApprovalRequest.execution_block_number: result.block_number,
                    ApprovalRequest.executed_at: now,
                    ApprovalRequest.updated_at: now,
                    ApprovalRequest.version: ApprovalRequest.version + 1,
                }, synchronize_session=False)
            )
            if updated == 0:
                logger.warning("Approval %s was executed concurrently; extrinsic %s not recorded",
                               approval_id, result.tx_hash)
                raise AlreadyExecutedError(approval_id)

    def cancel(self, approval_id: int, signatory_address: str) -> ApprovalRequest:
        """
        Cancel an active request (initiator only), moving it to ``rejected``.

        Raises:
            NotASignatoryError, AuthorizationError (not the initiator),
            ValidationError (request not active)
        """
        decode_address(signatory_address)

        def _cancel():
            with session_scope() as session:
                approval = self._load_for_update(session, approval_id)
                if not is_signatory(signatory_address, approval.signatories):
                    raise NotASignatoryError(signatory_address)
                if not addresses_equal(signatory_address, approval.initiator_address):
                    raise AuthorizationError('Only the initiator can cancel an approval', 'NOT_INITIATOR')
                if approval.status != ApprovalStatus.ACTIVE:
                    raise ValidationError('Only active approvals can be cancelled', 'APPROVAL_NOT_ACTIVE')
                approval.status = ApprovalStatus.REJECTED
                approval.active_milestone_id = None
            return approval

        with self.locks.hold(f'approval:{approval_id}'):
            approval = self._with_retry(_cancel)

        audit_logger.log_event(
            AuditEventType.APPROVAL_CANCEL,
            approval_id=approval.id,
            address=signatory_address,
            message=f'Approval {approval.id} cancelled by initiator'
        )
        return approval

    def expire_stale(self, now: Optional[datetime] = None) -> List[int]:
        """Move active requests whose ``expires_at`` has passed to ``expired``; return their ids."""
        now = now or _utcnow()
        candidate_ids = [
            row.id for row in
            get_session().query(ApprovalRequest.id)
            .filter(ApprovalRequest.status == ApprovalStatus.ACTIVE,
                    ApprovalRequest.expires_at.isnot(None),
                    ApprovalRequest.expires_at <= now)
            .all()
        ]
        get_session().commit()

        expired = []
        for approval_id in candidate_ids:
            def _expire():
                with session_scope() as session:
                    approval = self._load_for_update(session, approval_id)
                    if approval.status != ApprovalStatus.ACTIVE or not self._is_expired(approval, now):
                        return False
                    approval.status = ApprovalStatus.EXPIRED
                    approval.active_milestone_id = None
                return True

            with self.locks.hold(f'approval:{approval_id}'):
                if self._with_retry(_expire):
                    expired.append(approval_id)
                    audit_logger.log_event(
                        AuditEventType.APPROVAL_EXPIRE,
                        approval_id=approval_id,
                        message=f'Approval {approval_id} expired'
                    )

        if expired:
            logger.info("Expired %d stale approvals", len(expired))
        return expired
