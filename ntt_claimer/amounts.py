from __future__ import annotations

import re

from .errors import InvalidAmountFormat, PrecisionExceeded

TOKEN_DECIMALS = 9

_DECIMAL_RE = re.compile(r"[0-9]+(\.[0-9]+)?")


def to_raw(display: str, decimals: int) -> int:
    """Convert a human decimal string to integer base units, exactly."""
    text = str(display)
    if not _DECIMAL_RE.fullmatch(text):
        raise InvalidAmountFormat(f"invalid decimal amount: {display}")

    whole, _, fraction = text.partition(".")
    if len(fraction) > decimals:
        raise PrecisionExceeded(f"amount {display} has more than {decimals} decimal places")

    digits = (whole + fraction.ljust(decimals, "0")).lstrip("0") or "0"
    return int(digits)


def to_display(raw: int, decimals: int) -> str:
    value = int(raw)
    if value < 0:
        raise InvalidAmountFormat(f"raw amount cannot be negative: {raw}")
    if decimals <= 0:
        return str(value)
    whole, fraction = divmod(value, 10**decimals)
    fraction_text = str(fraction).rjust(decimals, "0").rstrip("0")
    if not fraction_text:
        return str(whole)
    return f"{whole}.{fraction_text}"
