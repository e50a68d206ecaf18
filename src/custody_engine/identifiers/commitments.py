"""
Commitment roots over address sets.

Policies publish a root for their guardian and owner sets so external
verifiers can check membership proofs without the full list. Leaves are the
SHA-256 of the lower-cased address; interior nodes hash the sorted pair, so
proofs need no position bits.
"""

import hashlib
import re
from typing import Iterable

from custody_engine.common.exceptions import InvalidAddressError
from custody_engine.identifiers.caip10 import address_key

ROOT_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
ZERO_ROOT = "0x" + "0" * 64


def is_valid_root(value: object) -> bool:
    return isinstance(value, str) and bool(ROOT_PATTERN.match(value))


def normalize_addresses(addresses: Iterable[str]) -> list[str]:
    """Validate, case-fold, de-duplicate and sort an address list."""
    return sorted({address_key(a) for a in addresses})


def _leaf(address: str) -> bytes:
    return hashlib.sha256(address.encode()).digest()


def _pair(left: bytes, right: bytes) -> bytes:
    if right < left:
        left, right = right, left
    return hashlib.sha256(left + right).digest()


def compute_root(addresses: Iterable[str]) -> str:
    """Merkle root of the address set as ``0x``-prefixed hex."""
    level = [_leaf(a) for a in normalize_addresses(addresses)]
    if not level:
        return ZERO_ROOT
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                nxt.append(_pair(level[i], level[i + 1]))
            else:
                nxt.append(level[i])
        level = nxt
    return "0x" + level[0].hex()


def build_proof(addresses: Iterable[str], address: str) -> list[str]:
    """Sibling hashes from ``address``'s leaf up to the root."""
    leaves = [_leaf(a) for a in normalize_addresses(addresses)]
    target = _leaf(address_key(address))
    if target not in leaves:
        raise ValueError(f"{address} is not in the committed set")

    index = leaves.index(target)
    level = leaves
    proof: list[str] = []
    while len(level) > 1:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append("0x" + level[sibling].hex())
        nxt = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                nxt.append(_pair(level[i], level[i + 1]))
            else:
                nxt.append(level[i])
        level = nxt
        index //= 2
    return proof


def verify_proof(root: str, address: str, proof: list[str]) -> bool:
    """Recompute the root from ``address`` and ``proof`` and compare."""
    try:
        computed = _leaf(address_key(address))
        for element in proof:
            computed = _pair(computed, bytes.fromhex(element.removeprefix("0x")))
    except (ValueError, InvalidAddressError):
        return False
    return ("0x" + computed.hex()).lower() == root.lower()
