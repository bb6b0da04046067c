"""
Tests for database models.

Covers the Committee, ApprovalRequest and Vote models with database
integration: derived properties, serialisation and uniqueness constraints.
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import address
from db.database import db
from models.approval import ApprovalPattern, ApprovalRequest, ApprovalStatus, Timepoint, Vote, VoteDecision
from models.committee import Committee
from utils.multisig_utils import derive_multisig_address


def _committee(signatories, threshold=2, network='polkadot'):
    committee = Committee(name='Grants', network=network)
    committee.multisig_signatories = signatories
    committee.multisig_threshold = threshold
    db.session.add(committee)
    db.session.commit()
    return committee


def _approval(committee, milestone_id=1, **overrides):
    fields = dict(
        milestone_id=milestone_id,
        committee_id=committee.id,
        recipient_address=address(0x20),
        amount_minor_units='1000',
        call_hash='0x' + '11' * 32,
        initiator_address=committee.multisig_signatories[0],
        approval_pattern=ApprovalPattern.COMBINED,
        signatories=list(committee.multisig_signatories),
        threshold=committee.multisig_threshold,
        status=ApprovalStatus.ACTIVE,
        active_milestone_id=milestone_id,
    )
    fields.update(overrides)
    approval = ApprovalRequest(**fields)
    db.session.add(approval)
    db.session.commit()
    return approval


class TestCommitteeModel:
    """Test the Committee model with database integration."""

    def test_unconfigured_committee(self, app, db_session):
        committee = Committee(name='Empty')
        db.session.add(committee)
        db.session.commit()

        assert committee.id is not None
        assert committee.network == 'polkadot'
        assert not committee.is_configured
        assert committee.multisig_address is None
        assert committee.multisig_config is None
        assert committee.to_dict()['multisig'] is None

    def test_multisig_address_is_derived(self, app, db_session, signatories):
        committee = _committee(signatories, network='kusama')

        assert committee.ss58_prefix == 2
        assert committee.multisig_address == derive_multisig_address(signatories, 2, 2)
        assert committee.multisig_config.prefix == 2

        data = committee.to_dict()
        assert data['multisig']['address'] == committee.multisig_address
        assert data['multisig']['threshold'] == 2
        assert data['multisig']['approvalPattern'] == 'combined'


class TestApprovalRequestModel:
    """Test the ApprovalRequest and Vote models."""

    def test_creation_defaults(self, app, db_session, signatories):
        approval = _approval(_committee(signatories))

        assert approval.id is not None
        assert approval.version == 1
        assert approval.amount == 1000
        assert approval.timepoint is None
        assert approval.approve_count == 0
        assert not approval.is_terminal
        assert approval.created_at is not None

    def test_large_amount_round_trips(self, app, db_session, signatories):
        approval = _approval(_committee(signatories), amount_minor_units=str(2 ** 128 - 1))
        db.session.expire_all()
        assert db.session.get(ApprovalRequest, approval.id).amount == 2 ** 128 - 1

    def test_status_stored_as_lowercase_value(self, app, db_session, signatories):
        approval = _approval(_committee(signatories), status=ApprovalStatus.THRESHOLD_MET)
        stored = db.session.execute(
            text('SELECT status, approval_pattern FROM approval_requests WHERE id = :id'),
            {'id': approval.id}
        ).one()
        assert tuple(stored) == ('threshold_met', 'combined')

    def test_timepoint_property(self, app, db_session, signatories):
        approval = _approval(_committee(signatories))
        approval.timepoint = Timepoint(100, 2)
        db.session.commit()
        assert approval.timepoint == Timepoint(100, 2)
        assert approval.to_dict()['timepoint'] == {'height': 100, 'index': 2}

        approval.timepoint = None
        assert approval.timepoint_height is None

    def test_one_active_request_per_milestone(self, app, db_session, signatories):
        committee = _committee(signatories)
        _approval(committee, milestone_id=5)
        with pytest.raises(IntegrityError):
            _approval(committee, milestone_id=5)
        db.session.rollback()

    def test_terminal_request_frees_milestone(self, app, db_session, signatories):
        committee = _committee(signatories)
        _approval(committee, milestone_id=5, status=ApprovalStatus.REJECTED, active_milestone_id=None)
        assert _approval(committee, milestone_id=5).id is not None

    def test_vote_counts_and_lookup(self, app, db_session, signatories):
        approval = _approval(_committee(signatories))
        approval.votes.append(Vote(signatory_address=signatories[0], signatory_key='0x01',
                                   decision=VoteDecision.APPROVE, is_initiator=True))
        approval.votes.append(Vote(signatory_address=signatories[1], signatory_key='0x02',
                                   decision=VoteDecision.REJECT))
        db.session.commit()

        assert approval.approve_count == 1
        assert approval.reject_count == 1
        assert approval.vote_for('0x02').decision == VoteDecision.REJECT
        assert approval.vote_for('0x03') is None

        data = approval.to_dict()
        assert [v['decision'] for v in data['votes']] == ['approve', 'reject']
        assert 'votes' not in approval.to_dict(include_votes=False)

    def test_one_vote_per_signatory(self, app, db_session, signatories):
        approval = _approval(_committee(signatories))
        db.session.add(Vote(approval_id=approval.id, signatory_address=signatories[0],
                            signatory_key='0x01', decision=VoteDecision.APPROVE))
        db.session.commit()
        db.session.add(Vote(approval_id=approval.id, signatory_address=signatories[0],
                            signatory_key='0x01', decision=VoteDecision.REJECT))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()
