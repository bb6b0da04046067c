"""
Committee service for multisig configuration.

A committee admin supplies the signatory set and threshold. When the committee
is linked to a bounty, the derived multisig address must match the effective
multisig discovered on chain before the configuration is stored.
"""

import logging
from typing import Optional, Sequence

from db.database import get_session
from db.session_manager import session_scope
from models.approval import ApprovalPattern
from models.committee import Committee
from services.discovery_service import StructureDiscoverer
from utils.audit_logger import audit_logger
from utils.error_handling import (
    AddressMismatchError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from utils.multisig_utils import MultisigConfig, build_multisig_config, validate_multisig_config
from utils.ss58_utils import NETWORK_PREFIXES, convert_address


logger = logging.getLogger(__name__)


def parse_approval_pattern(value) -> ApprovalPattern:
    try:
        return ApprovalPattern(value)
    except ValueError:
        raise ValidationError(
            f"approvalPattern must be one of: {', '.join(p.value for p in ApprovalPattern)}",
            'INVALID_APPROVAL_PATTERN'
        )


class CommitteeService:
    """
    Service class for committee multisig configuration.

    Methods:
        create_committee: Register a committee on a network
        get_committee: Load a committee or raise ResourceNotFoundError
        configure_multisig: Validate and store signatories/threshold
    """

    def __init__(self, discoverer: Optional[StructureDiscoverer] = None):
        self.discoverer = discoverer

    def create_committee(self, name: str, network: str = 'polkadot') -> Committee:
        if not name or not str(name).strip():
            raise ValidationError('Committee name is required')
        if network not in NETWORK_PREFIXES:
            raise ValidationError(
                f"Unknown network {network!r}. Known networks: {', '.join(sorted(NETWORK_PREFIXES))}",
                'UNKNOWN_NETWORK'
            )

        with session_scope() as session:
            committee = Committee(name=str(name).strip(), network=network)
            session.add(committee)
        logger.info("Created committee %s (%s)", committee.id, network)
        return committee

    def get_committee(self, committee_id: int) -> Committee:
        committee = get_session().get(Committee, committee_id)
        if committee is None:
            raise ResourceNotFoundError(f"Committee {committee_id} not found")
        return committee

    def configure_multisig(
        self,
        committee_id: int,
        signatories: Sequence[str],
        threshold: int,
        parent_bounty_id: Optional[int] = None,
        approval_pattern: str = 'combined'
    ) -> Committee:
        """
        Store the committee's multisig configuration.

        Signatories are canonicalised (sorted by raw key, re-encoded for the
        committee's network). With ``parent_bounty_id`` the derived address is
        checked against the bounty's effective multisig.

        Raises:
            ResourceNotFoundError: unknown committee, or the bounty has no curator
            AddressMismatchError: derived address differs from the discovered one
            ServiceUnavailableError: bounty check requested without a chain reader
            ValidationError: bad signatories, threshold or pattern
        """
        committee = self.get_committee(committee_id)
        pattern = parse_approval_pattern(approval_pattern)
        prefix = committee.ss58_prefix

        config = build_multisig_config(signatories, threshold, prefix)

        curator_proxy = None
        if parent_bounty_id is not None:
            curator_proxy = self._check_against_bounty(committee, config, parent_bounty_id)

        with session_scope() as session:
            committee = session.get(Committee, committee_id)
            committee.multisig_signatories = list(config.signatories)
            committee.multisig_threshold = config.threshold
            committee.approval_pattern = pattern.value
            if parent_bounty_id is not None:
                committee.parent_bounty_id = parent_bounty_id
                committee.curator_proxy_address = curator_proxy

        audit_logger.log_multisig_configured(
            committee_id=committee.id,
            multisig_address=config.address,
            threshold=config.threshold,
            signatory_count=len(config.signatories)
        )
        return committee

    def _check_against_bounty(self, committee: Committee, config: MultisigConfig, bounty_id: int) -> str:
        if self.discoverer is None:
            raise ServiceUnavailableError('Chain discovery is not configured (set CHAIN_RPC_URL)')

        structure = self.discoverer.discover(bounty_id)
        if structure is None:
            raise ResourceNotFoundError(f"Bounty {bounty_id} not found or has no curator")

        result = validate_multisig_config(
            structure.effective_multisig, config.signatories, config.threshold, config.prefix
        )
        if not result.valid:
            audit_logger.log_address_mismatch(committee.id, result.computed_address, result.expected_address)
            raise AddressMismatchError(result.computed_address, result.expected_address)

        return convert_address(structure.curator, config.prefix)
