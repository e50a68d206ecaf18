"""Integer token amounts in the smallest unit.

Amounts travel as ``int`` inside the engine and as decimal strings at the
storage and JSON boundaries, so values up to 2**256 - 1 survive databases
and clients without integer-width limits. Floats are rejected outright.
"""

import re

from custody_engine.common.exceptions import AmountOverflowError, InvalidAmountError

MAX_UINT256 = 2**256 - 1
_DECIMAL = re.compile(r"^[0-9]+$")


def parse_amount(value: int | str, *, allow_zero: bool = False) -> int:
    """Coerce ``value`` to a bounded non-negative int."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise InvalidAmountError(f"Amount must be an integer or decimal string, got {type(value).__name__}")
    if isinstance(value, str):
        if not _DECIMAL.match(value):
            raise InvalidAmountError(f"Amount is not a non-negative integer: {value!r}")
        value = int(value)
    if value < 0:
        raise InvalidAmountError(f"Amount must be non-negative, got {value}")
    if value == 0 and not allow_zero:
        raise InvalidAmountError("Amount must be greater than zero")
    if value > MAX_UINT256:
        raise AmountOverflowError()
    return value


def checked_sum(values) -> int:
    """Sum that fails instead of leaving the 256-bit range."""
    total = 0
    for value in values:
        total += value
        if total > MAX_UINT256:
            raise AmountOverflowError()
    return total


def to_storage(value: int) -> str:
    return str(value)


def from_storage(value: str | None) -> int:
    return int(value) if value else 0
