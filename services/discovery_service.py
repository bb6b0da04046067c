"""
Multisig structure discovery.

Given a bounty id, reads chain state to find the multisig that actually has to
approve payouts. Two layouts exist on chain:

    signatories -> multisig -> pure proxy (curator) -> bounty
    signatories -> multisig (curator) -> bounty

Signatories themselves cannot be read back from chain; they are supplied by the
committee admin and checked against the effective multisig found here.

This module only issues read queries.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from models.approval import Timepoint
from utils.error_handling import ChainError, ChainErrorKind, MalformedAddressError
from utils.ss58_utils import decode_address, encode_address


logger = logging.getLogger(__name__)


# Bounty status variants

@dataclass(frozen=True)
class BountyStatus:
    """Base of the bounty status variants. Only curated variants carry ``curator``."""
    variant: ClassVar[str] = 'Unknown'

    @property
    def name(self) -> str:
        return self.variant

    @property
    def has_curator(self) -> bool:
        return False


@dataclass(frozen=True)
class Proposed(BountyStatus):
    variant: ClassVar[str] = 'Proposed'


@dataclass(frozen=True)
class Approved(BountyStatus):
    variant: ClassVar[str] = 'Approved'


@dataclass(frozen=True)
class Funded(BountyStatus):
    variant: ClassVar[str] = 'Funded'


@dataclass(frozen=True)
class _Curated(BountyStatus):
    curator: str = ''

    @property
    def has_curator(self) -> bool:
        return True


@dataclass(frozen=True)
class CuratorProposed(_Curated):
    variant: ClassVar[str] = 'CuratorProposed'


@dataclass(frozen=True)
class Active(_Curated):
    variant: ClassVar[str] = 'Active'
    update_due: Optional[int] = None


@dataclass(frozen=True)
class PendingPayout(_Curated):
    variant: ClassVar[str] = 'PendingPayout'
    beneficiary: Optional[str] = None
    unlock_at: Optional[int] = None


@dataclass(frozen=True)
class ApprovedWithCurator(_Curated):
    variant: ClassVar[str] = 'ApprovedWithCurator'


@dataclass(frozen=True)
class Unknown(BountyStatus):
    raw_variant: str = 'Unknown'

    @property
    def name(self) -> str:
        return self.raw_variant


_STATUS_VARIANTS = {
    cls.variant: cls
    for cls in (Proposed, Approved, Funded, CuratorProposed, Active, PendingPayout, ApprovedWithCurator)
}


def parse_bounty_status(raw: Any) -> BountyStatus:
    """
    Build a ``BountyStatus`` from a decoded chain value.

    Unit variants decode to a bare string (``'Funded'``), struct variants to a
    single-key dict (``{'Active': {'curator': ..., 'update_due': ...}}``).
    """
    if isinstance(raw, str):
        name, fields = raw, {}
    elif isinstance(raw, dict) and len(raw) == 1:
        name, fields = next(iter(raw.items()))
        fields = fields if isinstance(fields, dict) else {}
    else:
        return Unknown(raw_variant=str(raw))

    cls = _STATUS_VARIANTS.get(name)
    if cls is None:
        return Unknown(raw_variant=str(name))
    if not issubclass(cls, _Curated):
        return cls()

    curator = fields.get('curator')
    if not curator:
        return Unknown(raw_variant=str(name))
    if cls is Active:
        return Active(curator=curator, update_due=fields.get('update_due'))
    if cls is PendingPayout:
        return PendingPayout(curator=curator, beneficiary=fields.get('beneficiary'),
                             unlock_at=fields.get('unlock_at'))
    return cls(curator=curator)


def curator_of(status: BountyStatus) -> Optional[str]:
    """The curator of a curated status variant, None for every other variant."""
    if isinstance(status, _Curated):
        return status.curator
    return None


def decode_description(raw: Any) -> Optional[str]:
    """Best-effort UTF-8 decoding of on-chain metadata; None when it cannot be decoded."""
    if raw is None:
        return None
    try:
        if isinstance(raw, (bytes, bytearray)):
            return bytes(raw).decode('utf-8')
        if isinstance(raw, str):
            if raw.startswith('0x'):
                return bytes.fromhex(raw[2:]).decode('utf-8')
            return raw
        if isinstance(raw, (list, tuple)):
            return bytes(raw).decode('utf-8')
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        logger.debug("Could not decode description %r: %s", raw, e)
    return None


@dataclass(frozen=True)
class ProxyDelegation:
    delegate: str
    proxy_type: str
    delay: int = 0


@dataclass(frozen=True)
class PendingMultisigCall:
    """A multisig call waiting for approvals on chain."""
    call_hash: str
    depositor: str
    approvals: Tuple[str, ...]
    when: Timepoint
    deposit: int = 0

    def to_dict(self) -> dict:
        return {
            'callHash': self.call_hash,
            'depositor': self.depositor,
            'approvals': list(self.approvals),
            'when': self.when.to_dict(),
            'deposit': self.deposit,
        }


@dataclass(frozen=True)
class MultisigStructure:
    """Resolved control structure of a bounty."""
    target_id: int
    status: BountyStatus
    curator: str
    effective_multisig: str
    curator_is_multisig: bool
    description: Optional[str] = None
    controlling_multisig: Optional[str] = None
    proxy_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'bountyId': self.target_id,
            'bountyStatus': self.status.name,
            'bountyDescription': self.description,
            'curator': self.curator,
            'controllingMultisig': self.controlling_multisig,
            'proxyType': self.proxy_type,
            'curatorIsMultisig': self.curator_is_multisig,
            'effectiveMultisig': self.effective_multisig,
        }


class ChainReader(ABC):
    """Read-only view of the chain state used by discovery."""

    @abstractmethod
    def bounty_status(self, target_id: int) -> Any:
        """Decoded status of the bounty, or None if the bounty does not exist."""

    @abstractmethod
    def bounty_description(self, target_id: int) -> Any:
        """Raw description bytes (hex string or bytes), or None."""

    @abstractmethod
    def proxies(self, address: str) -> List[dict]:
        """Proxy definitions of ``address`` as dicts with delegate/proxy_type/delay."""

    @abstractmethod
    def pending_multisig_calls(self, multisig_address: str) -> List[Tuple[str, dict]]:
        """``(call_hash, multisig_info)`` pairs for every open call of the multisig."""

    def close(self):
        pass


_NETWORK_EXCEPTIONS = (ConnectionError, TimeoutError)


class SubstrateChainReader(ChainReader):
    """``ChainReader`` backed by a substrate-interface RPC connection."""

    def __init__(self, url: str, ss58_format: int = 0, retries: int = 3, retry_wait: float = 0.5):
        self.url = url
        self.ss58_format = ss58_format
        self.retries = retries
        self.retry_wait = retry_wait
        self._substrate = None
        self._lock = threading.Lock()

    @property
    def substrate(self):
        with self._lock:
            if self._substrate is None:
                from substrateinterface import SubstrateInterface
                logger.info("Connecting to chain RPC at %s", self.url)
                self._substrate = SubstrateInterface(url=self.url, ss58_format=self.ss58_format)
            return self._substrate

    def _call(self, func, *args):
        from substrateinterface.exceptions import SubstrateRequestException
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retries),
                wait=wait_fixed(self.retry_wait),
                retry=retry_if_exception_type(_NETWORK_EXCEPTIONS),
                reraise=True,
            ):
                with attempt:
                    return func(*args)
        except _NETWORK_EXCEPTIONS as e:
            raise ChainError(ChainErrorKind.NETWORK_ERROR, f"Chain RPC unreachable: {e}")
        except SubstrateRequestException as e:
            raise ChainError(ChainErrorKind.NETWORK_ERROR, f"Chain query failed: {e}")

    def _query(self, module: str, storage_function: str, params: list):
        result = self._call(self.substrate.query, module, storage_function, params)
        return result.value if result is not None else None

    def bounty_status(self, target_id: int) -> Any:
        bounty = self._query('Bounties', 'Bounties', [target_id])
        if not bounty:
            return None
        return bounty.get('status')

    def bounty_description(self, target_id: int) -> Any:
        return self._query('Bounties', 'BountyDescriptions', [target_id])

    def proxies(self, address: str) -> List[dict]:
        value = self._query('Proxy', 'Proxies', [address])
        if not value:
            return []
        definitions = value[0] if isinstance(value, (list, tuple)) else value.get('definitions', [])
        return list(definitions or [])

    def pending_multisig_calls(self, multisig_address: str) -> List[Tuple[str, dict]]:
        entries = self._call(self.substrate.query_map, 'Multisig', 'Multisigs', [multisig_address])
        return [(str(key.value), value.value) for key, value in entries]

    def close(self):
        with self._lock:
            if self._substrate is not None:
                self._substrate.close()
                self._substrate = None


@dataclass
class _CacheEntry:
    value: Optional[MultisigStructure]
    expires: float = field(default=0.0)


class StructureDiscoverer:
    """
    Resolve a bounty id to the multisig that controls it.

    Results are cached per bounty id for ``cache_ttl`` seconds (0 disables
    caching). Safe to share across request threads.
    """

    def __init__(self, reader: ChainReader, prefix: int = 0, cache_ttl: int = 30):
        self.reader = reader
        self.prefix = prefix
        self.cache_ttl = cache_ttl
        self._cache: Dict[int, _CacheEntry] = {}
        self._cache_lock = threading.Lock()

    def _format(self, address: Any) -> str:
        return encode_address(decode_address(address), self.prefix)

    def discover(self, target_id: int) -> Optional[MultisigStructure]:
        """
        Find the effective multisig of bounty ``target_id``.

        Returns None when the bounty does not exist or no curator is attached
        in its current status. If the curator is a registered proxy, the first
        delegate is the controlling multisig; otherwise the curator is the
        multisig itself.
        """
        if self.cache_ttl > 0:
            with self._cache_lock:
                entry = self._cache.get(target_id)
                if entry is not None and entry.expires > time.monotonic():
                    return entry.value

        structure = self._resolve(target_id)

        if self.cache_ttl > 0:
            now = time.monotonic()
            with self._cache_lock:
                for stale_id in [k for k, e in self._cache.items() if e.expires <= now]:
                    del self._cache[stale_id]
                self._cache[target_id] = _CacheEntry(structure, now + self.cache_ttl)
        return structure

    def _resolve(self, target_id: int) -> Optional[MultisigStructure]:
        raw_status = self.reader.bounty_status(target_id)
        if raw_status is None:
            logger.info("Bounty %s not found", target_id)
            return None

        status = parse_bounty_status(raw_status)
        curator_raw = curator_of(status)
        if not curator_raw:
            logger.info("Bounty %s has no curator (status %s)", target_id, status.name)
            return None

        try:
            curator = self._format(curator_raw)
        except MalformedAddressError:
            logger.warning("Bounty %s has an undecodable curator %r", target_id, curator_raw)
            return None

        description = decode_description(self.reader.bounty_description(target_id))

        delegations = self._delegations(curator)
        if delegations:
            first = delegations[0]
            structure = MultisigStructure(
                target_id=target_id,
                status=status,
                description=description,
                curator=curator,
                controlling_multisig=first.delegate,
                proxy_type=first.proxy_type,
                curator_is_multisig=False,
                effective_multisig=first.delegate,
            )
        else:
            structure = MultisigStructure(
                target_id=target_id,
                status=status,
                description=description,
                curator=curator,
                curator_is_multisig=True,
                effective_multisig=curator,
            )

        logger.info("Bounty %s effective multisig: %s", target_id, structure.effective_multisig)
        return structure

    def _delegations(self, address: str) -> List[ProxyDelegation]:
        delegations = []
        for definition in self.reader.proxies(address):
            proxy_type = definition.get('proxy_type')
            if isinstance(proxy_type, dict):
                proxy_type = next(iter(proxy_type), None)
            try:
                delegate = self._format(definition.get('delegate'))
            except MalformedAddressError:
                logger.warning("Skipping undecodable proxy delegate %r of %s", definition.get('delegate'), address)
                continue
            delegations.append(ProxyDelegation(
                delegate=delegate,
                proxy_type=str(proxy_type),
                delay=int(definition.get('delay') or 0),
            ))
        return delegations

    def pending_calls(self, multisig_address: str) -> List[PendingMultisigCall]:
        """Open multisig calls of ``multisig_address`` (never cached)."""
        address = self._format(multisig_address)
        calls = []
        for call_hash, info in self.reader.pending_multisig_calls(address):
            info = info or {}
            when = info.get('when') or {}
            depositor = info.get('depositor')
            calls.append(PendingMultisigCall(
                call_hash=call_hash,
                depositor=self._format(depositor) if depositor else '',
                approvals=tuple(self._format(a) for a in info.get('approvals') or []),
                when=Timepoint(int(when.get('height', 0)), int(when.get('index', 0))),
                deposit=int(info.get('deposit') or 0),
            ))
        return calls

    def invalidate(self, target_id: Optional[int] = None):
        """Drop the cached result for ``target_id``, or every cached result."""
        with self._cache_lock:
            if target_id is None:
                self._cache.clear()
            else:
                self._cache.pop(target_id, None)
