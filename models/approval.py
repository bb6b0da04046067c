"""
Approval request and vote models.

An ``ApprovalRequest`` tracks one milestone payout through the committee
multisig; every signatory decision on it is a ``Vote``. Both tables are audit
records: requests are never deleted and votes are never updated or deleted.
"""

import enum
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from sqlalchemy import Enum

from db.database import db


def _utcnow():
    return datetime.now(timezone.utc)


class ApprovalStatus(enum.Enum):
    """Lifecycle states of an approval request."""
    ACTIVE = "active"
    THRESHOLD_MET = "threshold_met"
    EXECUTED = "executed"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({ApprovalStatus.EXECUTED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED})


class VoteDecision(enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ApprovalPattern(enum.Enum):
    """How the payout call is shaped on chain."""
    COMBINED = "combined"    # transfer batched with a milestone remark
    SEPARATED = "separated"  # bare transfer


class Timepoint(NamedTuple):
    """Block height and extrinsic index at which a multisig call was first seen."""
    height: int
    index: int

    def to_dict(self) -> dict:
        return {'height': self.height, 'index': self.index}


def _enum_values(enum_class):
    return [member.value for member in enum_class]


class ApprovalRequest(db.Model):
    """A milestone payout waiting on multisig signatures."""

    __tablename__ = 'approval_requests'

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, nullable=False, index=True)
    committee_id = db.Column(db.Integer, db.ForeignKey('committees.id'), nullable=False, index=True)
    recipient_address = db.Column(db.String, nullable=False)
    # u128 balances overflow BigInteger, so the decimal string is stored
    amount_minor_units = db.Column('amount', db.String(40), nullable=False)
    call_hash = db.Column(db.String, nullable=False)
    call_data = db.Column(db.Text, nullable=True)
    timepoint_height = db.Column(db.Integer, nullable=True)
    timepoint_index = db.Column(db.Integer, nullable=True)
    initiator_address = db.Column(db.String, nullable=False)
    approval_pattern = db.Column(
        Enum(ApprovalPattern, name='approval_pattern', native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ApprovalPattern.COMBINED
    )
    # Snapshot of the committee config at initiation
    signatories = db.Column(db.JSON, nullable=False)
    threshold = db.Column(db.Integer, nullable=False)
    status = db.Column(
        Enum(ApprovalStatus, name='approval_status', native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ApprovalStatus.ACTIVE
    )
    # Equals milestone_id while the request is non-terminal, NULL afterwards
    active_milestone_id = db.Column(db.Integer, unique=True, nullable=True)
    execution_tx_hash = db.Column(db.String, nullable=True)
    execution_block_number = db.Column(db.Integer, nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False)

    committee = db.relationship('Committee', back_populates='approvals')
    votes = db.relationship(
        'Vote',
        back_populates='approval',
        order_by='Vote.id',
        lazy='selectin',
    )

    __mapper_args__ = {
        'version_id_col': version,
    }

    @property
    def amount(self) -> int:
        return int(self.amount_minor_units)

    @amount.setter
    def amount(self, value: int):
        self.amount_minor_units = str(int(value))

    @property
    def timepoint(self) -> Optional[Timepoint]:
        if self.timepoint_height is None or self.timepoint_index is None:
            return None
        return Timepoint(self.timepoint_height, self.timepoint_index)

    @timepoint.setter
    def timepoint(self, value: Optional[Timepoint]):
        if value is None:
            self.timepoint_height = None
            self.timepoint_index = None
        else:
            self.timepoint_height, self.timepoint_index = int(value[0]), int(value[1])

    @property
    def approve_count(self) -> int:
        return sum(1 for v in self.votes if v.decision == VoteDecision.APPROVE)

    @property
    def reject_count(self) -> int:
        return sum(1 for v in self.votes if v.decision == VoteDecision.REJECT)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def threshold_met(self) -> bool:
        return self.approve_count >= self.threshold

    def vote_for(self, signatory_key: str) -> Optional['Vote']:
        """The vote cast by the signatory with raw key ``signatory_key``, if any."""
        for v in self.votes:
            if v.signatory_key == signatory_key:
                return v
        return None

    def to_dict(self, include_votes: bool = True) -> dict:
        data = {
            'id': self.id,
            'milestoneId': self.milestone_id,
            'committeeId': self.committee_id,
            'recipientAddress': self.recipient_address,
            'amount': self.amount,
            'callHash': self.call_hash,
            'callData': self.call_data,
            'timepoint': self.timepoint.to_dict() if self.timepoint else None,
            'initiatorAddress': self.initiator_address,
            'approvalPattern': self.approval_pattern.value,
            'status': self.status.value,
            'threshold': self.threshold,
            'approveCount': self.approve_count,
            'rejectCount': self.reject_count,
            'executionTxHash': self.execution_tx_hash,
            'executionBlockNumber': self.execution_block_number,
            'executedAt': self.executed_at.isoformat() if self.executed_at else None,
            'expiresAt': self.expires_at.isoformat() if self.expires_at else None,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
        if include_votes:
            data['votes'] = [v.to_dict() for v in self.votes]
        return data

    def __repr__(self) -> str:
        return (f"<ApprovalRequest(id={self.id}, milestone_id={self.milestone_id}, "
                f"status='{self.status.value if self.status else None}')>")


class Vote(db.Model):
    """One signatory's decision on an approval request."""

    __tablename__ = 'approval_votes'
    __table_args__ = (
        db.UniqueConstraint('approval_id', 'signatory_key', name='uq_vote_approval_signatory'),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_id = db.Column(db.Integer, db.ForeignKey('approval_requests.id'), nullable=False, index=True)
    signatory_address = db.Column(db.String, nullable=False)
    signatory_key = db.Column(db.String(66), nullable=False)
    decision = db.Column(
        Enum(VoteDecision, name='vote_decision', native_enum=False, values_callable=_enum_values),
        nullable=False
    )
    tx_hash = db.Column(db.String, nullable=True)
    block_number = db.Column(db.Integer, nullable=True)
    is_initiator = db.Column(db.Boolean, nullable=False, default=False)
    is_final_approval = db.Column(db.Boolean, nullable=False, default=False)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    approval = db.relationship('ApprovalRequest', back_populates='votes')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'approvalId': self.approval_id,
            'signatoryAddress': self.signatory_address,
            'decision': self.decision.value,
            'txHash': self.tx_hash,
            'blockNumber': self.block_number,
            'isInitiator': self.is_initiator,
            'isFinalApproval': self.is_final_approval,
            'signedAt': self.signed_at.isoformat() if self.signed_at else None,
        }

    def __repr__(self) -> str:
        return f"<Vote(id={self.id}, approval_id={self.approval_id}, decision='{self.decision.value}')>"
