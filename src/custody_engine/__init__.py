"""Custody-Engine: multi-party vault approvals and audit ledger."""

from custody_engine.identifiers.caip10 import (
    ChainAccount,
    derive_canonical,
    parse_canonical,
    short_form,
    validate_address,
)
from custody_engine.identifiers.commitments import compute_root, verify_proof

__all__ = [
    "ChainAccount",
    "derive_canonical",
    "parse_canonical",
    "short_form",
    "validate_address",
    "compute_root",
    "verify_proof",
]
__version__ = "0.1.0"
