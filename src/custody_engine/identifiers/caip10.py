"""
Chain-qualified account identifiers (CAIP-10).

A canonical identifier has the form ``eip155:<chain_id>:<address>``. The
canonical string is always derived from ``(address, chain_id)`` and keeps
the address casing it was created with; comparisons between accounts ignore
hex casing.
"""

import re
from dataclasses import dataclass

from custody_engine.common.exceptions import (
    InvalidAddressError,
    InvalidChainIdError,
    MalformedIdentifierError,
)

NAMESPACE = "eip155"
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
CHAIN_ID_PATTERN = re.compile(r"^[1-9][0-9]*$")

SHORT_PREFIX_LEN = 6
SHORT_SUFFIX_LEN = 4


def is_valid_address(address: object) -> bool:
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))


def validate_address(address: object) -> str:
    """Return ``address`` unchanged or raise InvalidAddressError."""
    if not is_valid_address(address):
        raise InvalidAddressError(f"Invalid address format: {address!r}")
    return address  # type: ignore[return-value]


def validate_chain_id(chain_id: object) -> int:
    # bool is an int subclass; True is not a chain id
    if isinstance(chain_id, bool) or not isinstance(chain_id, int) or chain_id <= 0:
        raise InvalidChainIdError(f"Invalid chain id: {chain_id!r}")
    return chain_id


def address_key(address: str) -> str:
    """Case-folded form used for uniqueness and lookups."""
    return validate_address(address).lower()


def derive_canonical(address: str, chain_id: int) -> str:
    """Build ``eip155:<chain_id>:<address>`` from its parts."""
    validate_address(address)
    validate_chain_id(chain_id)
    return f"{NAMESPACE}:{chain_id}:{address}"


def parse_canonical(identifier: str) -> tuple[str, int]:
    """Split a canonical identifier into ``(address, chain_id)``."""
    if not identifier or not isinstance(identifier, str):
        raise MalformedIdentifierError("Identifier is empty or not a string")

    parts = identifier.split(":")
    if len(parts) != 3:
        raise MalformedIdentifierError(f"Invalid CAIP-10 format: {identifier}")

    namespace, chain_part, address = parts
    if namespace != NAMESPACE:
        raise MalformedIdentifierError(f"Unsupported namespace: {namespace}")
    if not CHAIN_ID_PATTERN.match(chain_part):
        raise MalformedIdentifierError(f"Invalid chain id: {chain_part}")
    if not is_valid_address(address):
        raise MalformedIdentifierError(f"Invalid address in CAIP-10: {address}")

    return address, int(chain_part)


def qualify_actor(actor: str, chain_id: int) -> str:
    """Canonical identifier for address actors; other actors (``system``) as-is."""
    if is_valid_address(actor):
        return derive_canonical(actor, chain_id)
    return actor


def short_form(address: str) -> str:
    """Display form, e.g. ``0x1234...abcd``. Not reversible."""
    validate_address(address)
    return f"{address[:SHORT_PREFIX_LEN]}...{address[-SHORT_SUFFIX_LEN:]}"


@dataclass(frozen=True, eq=False)
class ChainAccount:
    """An address bound to a numeric chain id."""

    address: str
    chain_id: int

    def __post_init__(self):
        validate_address(self.address)
        validate_chain_id(self.chain_id)

    @classmethod
    def from_canonical(cls, identifier: str) -> "ChainAccount":
        address, chain_id = parse_canonical(identifier)
        return cls(address, chain_id)

    @property
    def key(self) -> str:
        return self.address.lower()

    @property
    def canonical(self) -> str:
        return derive_canonical(self.address, self.chain_id)

    @property
    def short(self) -> str:
        return short_form(self.address)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChainAccount):
            return NotImplemented
        return self.chain_id == other.chain_id and self.key == other.key

    def __hash__(self) -> int:
        return hash((self.key, self.chain_id))

    def __str__(self) -> str:
        return self.canonical
