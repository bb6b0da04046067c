"""
SS58 address utilities.

Converts between human-readable, network-prefixed SS58 addresses and the raw
32-byte account ids they encode. Raw bytes are the only comparison key used
by the rest of the service: two addresses are the same account exactly when
their decoded bytes are equal, whatever network prefix they were written in.
"""

import re
from typing import Any, Union

from scalecodec.utils.ss58 import ss58_decode, ss58_encode

from utils.error_handling import MalformedAddressError, ValidationError


ACCOUNT_ID_LENGTH = 32
MAX_SS58_PREFIX = 16383
RESERVED_SS58_PREFIXES = (46, 47)

NETWORK_PREFIXES = {
    'polkadot': 0,
    'kusama': 2,
    'paseo': 0,
    'substrate': 42,
}

_HEX_ACCOUNT_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')


def network_prefix(network: str) -> int:
    """Return the SS58 prefix for a network name."""
    try:
        return NETWORK_PREFIXES[network.lower()]
    except (KeyError, AttributeError):
        raise ValidationError(
            f"Unknown network {network!r}. Known networks: {', '.join(sorted(NETWORK_PREFIXES))}",
            'UNKNOWN_NETWORK'
        )


def _check_prefix(prefix: Any):
    if isinstance(prefix, bool) or not isinstance(prefix, int):
        raise ValidationError(f"SS58 prefix must be an integer, got {prefix!r}", 'INVALID_PREFIX')
    if not 0 <= prefix <= MAX_SS58_PREFIX or prefix in RESERVED_SS58_PREFIXES:
        raise ValidationError(f"SS58 prefix {prefix} is out of range or reserved", 'INVALID_PREFIX')


def decode_address(address: Any) -> bytes:
    """
    Decode an SS58 address to its raw 32-byte account id.

    A ``0x``-prefixed 64 digit hex public key is accepted as well, since chain
    queries hand back raw account ids in that form.

    Raises:
        MalformedAddressError: bad base58, bad checksum, unsupported length
            or non-string input
    """
    if not isinstance(address, str):
        raise MalformedAddressError(address, 'address must be a string')

    address = address.strip()
    if not address:
        raise MalformedAddressError(address, 'address is empty')

    if address.startswith('0x'):
        if not _HEX_ACCOUNT_RE.match(address):
            raise MalformedAddressError(address, 'hex account id must be 32 bytes')
        return bytes.fromhex(address[2:])

    try:
        decoded = ss58_decode(address)
    except (ValueError, TypeError, IndexError, AttributeError) as e:
        raise MalformedAddressError(address, str(e) or 'invalid SS58 address')

    raw = bytes.fromhex(decoded)
    if len(raw) != ACCOUNT_ID_LENGTH:
        raise MalformedAddressError(address, f'expected a 32 byte account id, got {len(raw)} bytes')
    return raw


def encode_address(raw: Union[bytes, bytearray], prefix: int = 0) -> str:
    """Encode a raw 32-byte account id as an SS58 address with ``prefix``."""
    _check_prefix(prefix)
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != ACCOUNT_ID_LENGTH:
        raise MalformedAddressError(raw, 'account id must be 32 bytes')
    return ss58_encode(bytes(raw), ss58_format=prefix)


def normalize_address(address: Any) -> bytes:
    """Return the canonical comparison key of an address (its raw bytes)."""
    return decode_address(address)


def addresses_equal(a: Any, b: Any) -> bool:
    """True when both addresses decode to the same account; malformed input is never equal."""
    try:
        return normalize_address(a) == normalize_address(b)
    except MalformedAddressError:
        return False


def convert_address(address: str, prefix: int) -> str:
    """Re-encode ``address`` for the network identified by ``prefix``."""
    return encode_address(decode_address(address), prefix)


def is_valid_address(address: Any) -> bool:
    try:
        decode_address(address)
        return True
    except MalformedAddressError:
        return False


def to_hex(raw: bytes) -> str:
    """``0x``-prefixed lowercase hex of ``raw``."""
    return '0x' + bytes(raw).hex()
