"""
Multisig account derivation.

The account id is the runtime's ``pallet_multisig::multi_account_id``, which
scalecodec exposes as ``MultiAccountId``. Signatory sort order, the domain
prefix and the integer widths all come from the codec. This module only
validates the signatory set before handing it over.
"""

from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence

from scalecodec.base import RuntimeConfigurationObject
from scalecodec.type_registry import load_type_registry_preset

from utils.error_handling import (
    InsufficientSignatoriesError,
    InvalidThresholdError,
    MultisigServiceError,
    ValidationError,
)
from utils.ss58_utils import addresses_equal, decode_address, encode_address, normalize_address


MIN_SIGNATORIES = 2
MAX_THRESHOLD = 0xFFFF

_runtime_config = None


def _scale():
    global _runtime_config
    if _runtime_config is None:
        runtime_config = RuntimeConfigurationObject()
        runtime_config.update_type_registry(load_type_registry_preset("legacy"))
        _runtime_config = runtime_config
    return _runtime_config


class MultisigValidation(NamedTuple):
    """Outcome of comparing a derived multisig address with an expected one."""
    valid: bool
    computed_address: str
    expected_address: str
    error: Optional[str] = None


@dataclass(frozen=True)
class MultisigConfig:
    """Signatory set and threshold of a committee multisig."""
    signatories: tuple
    threshold: int
    prefix: int = 0

    @property
    def address(self) -> str:
        return derive_multisig_address(self.signatories, self.threshold, self.prefix)

    def contains(self, address: str) -> bool:
        return is_signatory(address, self.signatories)


def _raw_signatories(signatories: Sequence[str], threshold: int) -> List[bytes]:
    if isinstance(signatories, (str, bytes)):
        raise ValidationError('Signatories must be a list of addresses', 'INVALID_SIGNATORIES')
    signatories = list(signatories)

    if len(signatories) < MIN_SIGNATORIES:
        raise InsufficientSignatoriesError(len(signatories))

    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise InvalidThresholdError(threshold, len(signatories))
    if threshold < 1 or threshold > len(signatories) or threshold > MAX_THRESHOLD:
        raise InvalidThresholdError(threshold, len(signatories))

    raw_keys = [decode_address(address) for address in signatories]
    if len(set(raw_keys)) != len(raw_keys):
        raise ValidationError('Signatories must be unique accounts', 'DUPLICATE_SIGNATORY')

    return sorted(raw_keys)


def derive_multisig_account_id(signatories: Sequence[str], threshold: int) -> bytes:
    """
    Derive the raw 32-byte multisig account id.

    Order of ``signatories`` and the network prefix each one is written in do
    not affect the result.

    Raises:
        InsufficientSignatoriesError: fewer than two signatories
        InvalidThresholdError: threshold outside 1..len(signatories)
        MalformedAddressError: a signatory does not decode
        ValidationError: the same account appears twice
    """
    sorted_keys = _raw_signatories(signatories, threshold)

    multi_account = _scale().create_scale_object('MultiAccountId').create_from_account_list(
        ['0x' + key.hex() for key in sorted_keys], threshold
    )
    return bytes.fromhex(multi_account.value[2:])


def derive_multisig_address(signatories: Sequence[str], threshold: int, prefix: int = 0) -> str:
    """Derive the multisig address for ``signatories``/``threshold``, SS58-encoded with ``prefix``."""
    return encode_address(derive_multisig_account_id(signatories, threshold), prefix)


def validate_multisig_config(
    expected_address: str,
    signatories: Sequence[str],
    threshold: int,
    prefix: int = 0
) -> MultisigValidation:
    """
    Check that ``signatories``/``threshold`` reproduce ``expected_address``.

    Never raises. On failure ``valid`` is False, ``error`` holds the
    diagnostic, and whichever address could not be produced is an empty
    string.
    """
    try:
        expected_raw = normalize_address(expected_address)
        expected = encode_address(expected_raw, prefix)
    except MultisigServiceError as e:
        return MultisigValidation(False, '', '', e.message)

    try:
        computed_raw = derive_multisig_account_id(signatories, threshold)
        computed = encode_address(computed_raw, prefix)
    except MultisigServiceError as e:
        return MultisigValidation(False, '', expected, e.message)

    if computed_raw != expected_raw:
        return MultisigValidation(
            False, computed, expected,
            'Computed multisig address does not match expected address'
        )
    return MultisigValidation(True, computed, expected)


def sort_signatories(addresses: Iterable[str]) -> List[str]:
    """Sort addresses by raw public key, the order the runtime expects."""
    return sorted(addresses, key=decode_address)


def other_signatories(all_signatories: Iterable[str], current: str) -> List[str]:
    """Sorted signatories without ``current`` (the ``other_signatories`` argument of ``as_multi``)."""
    current_raw = normalize_address(current)
    return sort_signatories(a for a in all_signatories if decode_address(a) != current_raw)


def is_signatory(address: str, signatories: Iterable[str]) -> bool:
    return any(addresses_equal(address, s) for s in signatories)


def signatory_index(address: str, signatories: Sequence[str]) -> int:
    """1-based position of ``address`` in ``signatories``, or -1."""
    for i, s in enumerate(signatories, 1):
        if addresses_equal(address, s):
            return i
    return -1


def will_hit_quorum(current_approvals: int, threshold: int) -> bool:
    """True when one more approval reaches the threshold exactly."""
    return current_approvals + 1 == threshold


def is_quorum_met(current_approvals: int, threshold: int) -> bool:
    return current_approvals >= threshold


def build_multisig_config(signatories: Sequence[str], threshold: int, prefix: int = 0) -> MultisigConfig:
    """Validate and canonicalise a signatory set into a ``MultisigConfig``."""
    derive_multisig_account_id(signatories, threshold)
    canonical = tuple(encode_address(decode_address(a), prefix) for a in sort_signatories(signatories))
    return MultisigConfig(signatories=canonical, threshold=threshold, prefix=prefix)
