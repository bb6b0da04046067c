"""
Tests for CommitteeService multisig configuration.

Configuration is checked against the bounty's effective multisig whenever a
parent bounty id is supplied; FakeChainReader provides that chain state.
"""

import pytest

from conftest import address
from services.committee_service import CommitteeService, parse_approval_pattern
from models.approval import ApprovalPattern
from utils.error_handling import (
    AddressMismatchError,
    InsufficientSignatoriesError,
    InvalidThresholdError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from utils.multisig_utils import derive_multisig_address


class TestCreateCommittee:

    def test_create(self, committee_service):
        committee = committee_service.create_committee('  Grants  ', 'kusama')
        assert committee.id is not None
        assert committee.name == 'Grants'
        assert committee.network == 'kusama'

    def test_name_required(self, committee_service):
        with pytest.raises(ValidationError):
            committee_service.create_committee('   ')

    def test_unknown_network(self, committee_service):
        with pytest.raises(ValidationError) as exc:
            committee_service.create_committee('Grants', 'ethereum')
        assert exc.value.error_code == 'UNKNOWN_NETWORK'

    def test_get_missing(self, committee_service):
        with pytest.raises(ResourceNotFoundError):
            committee_service.get_committee(999)


class TestConfigureMultisig:
    """configure_multisig validates, canonicalises and stores signatories."""

    def test_configure_without_bounty(self, committee_service, signatories):
        committee = committee_service.create_committee('Grants')
        configured = committee_service.configure_multisig(
            committee.id, list(reversed(signatories)), 2, approval_pattern='separated'
        )

        assert configured.multisig_signatories == signatories
        assert configured.multisig_threshold == 2
        assert configured.approval_pattern == 'separated'
        assert configured.multisig_address == derive_multisig_address(signatories, 2)

    def test_signatories_reencoded_for_network(self, committee_service):
        committee = committee_service.create_committee('Grants', 'kusama')
        configured = committee_service.configure_multisig(committee.id, [address(1), address(2)], 1)
        assert configured.multisig_signatories == [address(1, 2), address(2, 2)]

    def test_invalid_threshold(self, committee_service, signatories):
        committee = committee_service.create_committee('Grants')
        with pytest.raises(InvalidThresholdError):
            committee_service.configure_multisig(committee.id, signatories, 4)

    def test_too_few_signatories(self, committee_service):
        committee = committee_service.create_committee('Grants')
        with pytest.raises(InsufficientSignatoriesError):
            committee_service.configure_multisig(committee.id, [address(1)], 1)

    def test_invalid_pattern(self, committee_service, signatories):
        committee = committee_service.create_committee('Grants')
        with pytest.raises(ValidationError) as exc:
            committee_service.configure_multisig(committee.id, signatories, 2, approval_pattern='mixed')
        assert exc.value.error_code == 'INVALID_APPROVAL_PATTERN'

    def test_matches_direct_multisig_curator(self, committee_service, chain_reader, signatories):
        multisig = derive_multisig_address(signatories, 2, 42)
        chain_reader.bounties[11] = {'Active': {'curator': multisig}}
        committee = committee_service.create_committee('Grants')

        configured = committee_service.configure_multisig(committee.id, signatories, 2, parent_bounty_id=11)

        assert configured.parent_bounty_id == 11
        assert configured.curator_proxy_address == derive_multisig_address(signatories, 2, 0)

    def test_matches_proxied_multisig(self, committee_service, chain_reader, signatories):
        proxy = address(0x50)
        chain_reader.bounties[11] = {'Active': {'curator': proxy}}
        chain_reader.set_proxy(proxy, derive_multisig_address(signatories, 2))
        committee = committee_service.create_committee('Grants')

        configured = committee_service.configure_multisig(committee.id, signatories, 2, parent_bounty_id=11)

        assert configured.curator_proxy_address == proxy
        assert configured.multisig_address == derive_multisig_address(signatories, 2)

    def test_mismatch_is_rejected_and_not_stored(self, committee_service, chain_reader, signatories):
        chain_reader.bounties[11] = {'Active': {'curator': derive_multisig_address(signatories, 3)}}
        committee = committee_service.create_committee('Grants')

        with pytest.raises(AddressMismatchError) as exc:
            committee_service.configure_multisig(committee.id, signatories, 2, parent_bounty_id=11)

        assert exc.value.status_code == 422
        assert exc.value.computed_address == derive_multisig_address(signatories, 2)
        assert exc.value.expected_address == derive_multisig_address(signatories, 3)
        assert not committee_service.get_committee(committee.id).is_configured

    def test_bounty_without_curator(self, committee_service, chain_reader, signatories):
        chain_reader.bounties[11] = 'Funded'
        committee = committee_service.create_committee('Grants')
        with pytest.raises(ResourceNotFoundError):
            committee_service.configure_multisig(committee.id, signatories, 2, parent_bounty_id=11)

    def test_bounty_check_needs_discovery(self, app, signatories):
        service = CommitteeService(discoverer=None)
        committee = service.create_committee('Grants')
        with pytest.raises(ServiceUnavailableError):
            service.configure_multisig(committee.id, signatories, 2, parent_bounty_id=11)


def test_parse_approval_pattern():
    assert parse_approval_pattern('combined') is ApprovalPattern.COMBINED
    assert parse_approval_pattern('separated') is ApprovalPattern.SEPARATED
    with pytest.raises(ValidationError):
        parse_approval_pattern('bogus')
