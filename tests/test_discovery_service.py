"""
Tests for bounty multisig structure discovery.

All chain state comes from FakeChainReader, so these tests exercise status
parsing, proxy resolution and caching without any RPC connection.
"""

import pytest

from conftest import FakeChainReader, address
from models.approval import Timepoint
from services.discovery_service import (
    Active,
    ApprovedWithCurator,
    CuratorProposed,
    Funded,
    PendingPayout,
    Proposed,
    StructureDiscoverer,
    Unknown,
    curator_of,
    decode_description,
    parse_bounty_status,
)


class TestBountyStatus:
    """Decoding of on-chain bounty status variants."""

    def test_unit_variants(self):
        assert parse_bounty_status('Proposed') == Proposed()
        assert parse_bounty_status('Funded') == Funded()
        assert curator_of(parse_bounty_status('Approved')) is None

    def test_active(self):
        status = parse_bounty_status({'Active': {'curator': address(1), 'update_due': 1200}})
        assert isinstance(status, Active)
        assert status.curator == address(1)
        assert status.update_due == 1200
        assert status.has_curator
        assert curator_of(status) == address(1)

    def test_pending_payout(self):
        status = parse_bounty_status({'PendingPayout': {
            'curator': address(1), 'beneficiary': address(2), 'unlock_at': 99
        }})
        assert isinstance(status, PendingPayout)
        assert status.beneficiary == address(2)
        assert status.unlock_at == 99
        assert curator_of(status) == address(1)

    def test_curator_proposed_and_approved_with_curator(self):
        assert isinstance(parse_bounty_status({'CuratorProposed': {'curator': address(1)}}), CuratorProposed)
        assert isinstance(parse_bounty_status({'ApprovedWithCurator': {'curator': address(1)}}),
                          ApprovedWithCurator)

    def test_unknown_variant(self):
        status = parse_bounty_status({'SomethingNew': {}})
        assert isinstance(status, Unknown)
        assert status.name == 'SomethingNew'
        assert curator_of(status) is None

    def test_curated_variant_without_curator_is_unknown(self):
        assert isinstance(parse_bounty_status({'Active': {'update_due': 5}}), Unknown)

    def test_unparseable_value(self):
        assert isinstance(parse_bounty_status(['a', 'b']), Unknown)


class TestDecodeDescription:

    def test_bytes(self):
        assert decode_description(b'Milestone grants') == 'Milestone grants'

    def test_hex(self):
        assert decode_description('0x' + 'Grants'.encode().hex()) == 'Grants'

    def test_plain_string(self):
        assert decode_description('Already text') == 'Already text'

    def test_byte_list(self):
        assert decode_description(list(b'abc')) == 'abc'

    def test_undecodable(self):
        assert decode_description(b'\xff\xfe') is None
        assert decode_description('0xzz') is None
        assert decode_description(None) is None


class TestStructureDiscoverer:
    """Resolution of the effective multisig for a bounty."""

    def test_missing_bounty(self):
        discoverer = StructureDiscoverer(FakeChainReader())
        assert discoverer.discover(1) is None

    def test_bounty_without_curator(self):
        reader = FakeChainReader()
        reader.bounties[1] = 'Funded'
        assert StructureDiscoverer(reader).discover(1) is None

    def test_direct_multisig_curator(self):
        reader = FakeChainReader()
        curator = address(0x40, 42)
        reader.bounties[7] = {'Active': {'curator': curator, 'update_due': 10}}
        reader.descriptions[7] = '0x' + b'Grants'.hex()

        structure = StructureDiscoverer(reader, prefix=0).discover(7)

        assert structure.target_id == 7
        assert structure.curator_is_multisig
        assert structure.curator == address(0x40, 0)
        assert structure.effective_multisig == address(0x40, 0)
        assert structure.controlling_multisig is None
        assert structure.proxy_type is None
        assert structure.description == 'Grants'
        assert structure.status.name == 'Active'

    def test_pure_proxy_curator(self):
        reader = FakeChainReader()
        curator = address(0x40)
        multisig = address(0x41)
        reader.bounties[7] = {'Active': {'curator': curator}}
        reader.set_proxy(curator, multisig, proxy_type='Any')
        reader.set_proxy(curator, address(0x42), proxy_type='Governance')

        structure = StructureDiscoverer(reader).discover(7)

        assert not structure.curator_is_multisig
        assert structure.curator == curator
        assert structure.controlling_multisig == multisig
        assert structure.effective_multisig == multisig
        assert structure.proxy_type == 'Any'

    def test_proxy_type_as_enum_dict(self):
        reader = FakeChainReader()
        curator = address(0x40)
        reader.bounties[7] = {'Active': {'curator': curator}}
        reader.set_proxy(curator, address(0x41), proxy_type={'NonTransfer': None})
        assert StructureDiscoverer(reader).discover(7).proxy_type == 'NonTransfer'

    def test_malformed_delegate_is_skipped(self):
        reader = FakeChainReader()
        curator = address(0x40)
        reader.bounties[7] = {'Active': {'curator': curator}}
        reader.set_proxy(curator, 'bogus')
        reader.set_proxy(curator, address(0x41), proxy_type='NonTransfer')

        structure = StructureDiscoverer(reader).discover(7)

        assert structure.controlling_multisig == address(0x41)
        assert structure.proxy_type == 'NonTransfer'

    def test_only_malformed_delegates_means_direct_curator(self):
        reader = FakeChainReader()
        curator = address(0x40)
        reader.bounties[7] = {'Active': {'curator': curator}}
        reader.set_proxy(curator, 'bogus')

        structure = StructureDiscoverer(reader).discover(7)

        assert structure.curator_is_multisig
        assert structure.effective_multisig == curator

    def test_hex_curator(self):
        reader = FakeChainReader()
        reader.bounties[3] = {'Active': {'curator': '0x' + '40' * 32}}
        assert StructureDiscoverer(reader).discover(3).curator == address(0x40)

    def test_undecodable_curator(self):
        reader = FakeChainReader()
        reader.bounties[3] = {'Active': {'curator': 'bogus'}}
        assert StructureDiscoverer(reader).discover(3) is None

    def test_to_dict(self):
        reader = FakeChainReader()
        reader.bounties[7] = {'Active': {'curator': address(0x40)}}
        data = StructureDiscoverer(reader).discover(7).to_dict()
        assert data['bountyId'] == 7
        assert data['bountyStatus'] == 'Active'
        assert data['effectiveMultisig'] == address(0x40)
        assert data['curatorIsMultisig'] is True

    def test_cache(self):
        reader = FakeChainReader()
        reader.bounties[7] = {'Active': {'curator': address(0x40)}}
        discoverer = StructureDiscoverer(reader, cache_ttl=60)

        first = discoverer.discover(7)
        second = discoverer.discover(7)
        assert first is second
        assert reader.status_queries == 1

        discoverer.invalidate(7)
        discoverer.discover(7)
        assert reader.status_queries == 2

    def test_cache_prunes_expired_entries(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr('services.discovery_service.time.monotonic', lambda: clock[0])
        reader = FakeChainReader()
        for bounty_id in (1, 2, 3):
            reader.bounties[bounty_id] = {'Active': {'curator': address(0x40)}}
        discoverer = StructureDiscoverer(reader, cache_ttl=60)

        discoverer.discover(1)
        discoverer.discover(2)
        clock[0] += 61
        discoverer.discover(3)

        assert list(discoverer._cache) == [3]

    def test_cache_disabled(self):
        reader = FakeChainReader()
        reader.bounties[7] = {'Active': {'curator': address(0x40)}}
        discoverer = StructureDiscoverer(reader, cache_ttl=0)
        discoverer.discover(7)
        discoverer.discover(7)
        assert reader.status_queries == 2

    def test_pending_calls(self):
        reader = FakeChainReader()
        multisig = address(0x41)
        reader.multisig_calls[bytes([0x41]) * 32] = [
            ('0x' + 'ab' * 32, {
                'when': {'height': 120, 'index': 3},
                'deposit': 5000,
                'depositor': address(1, 42),
                'approvals': [address(1, 42)],
            })
        ]
        calls = StructureDiscoverer(reader).pending_calls(multisig)

        assert len(calls) == 1
        call = calls[0]
        assert call.call_hash == '0x' + 'ab' * 32
        assert call.when == Timepoint(120, 3)
        assert call.depositor == address(1)
        assert call.approvals == (address(1),)
        assert call.to_dict()['when'] == {'height': 120, 'index': 3}
