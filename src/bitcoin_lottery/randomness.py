from __future__ import annotations

from .errors import InvalidBound

_MASK32 = 0xFFFFFFFF


def _utf16_code_units(text: str):
    raw = text.encode("utf-16-be")
    for i in range(0, len(raw), 2):
        yield (raw[i] << 8) | raw[i + 1]


def rolling_hash32(text: str) -> int:
    """
    Polynomial rolling hash (h = h * 31 + c) over UTF-16 code units,
    wrapped to a signed 32-bit integer after every step.

    Same value as Java's String.hashCode(), so third parties can
    reproduce it in practically any language.
    """
    h = 0
    for unit in _utf16_code_units(text):
        h = (h * 31 + unit) & _MASK32
    if h & 0x80000000:
        h -= 1 << 32
    return h


def derive_index(block_hash: str, seed: str, bound: int) -> int:
    """Deterministic index in [0, bound) from a block hash and a seed string."""
    if bound <= 0:
        raise InvalidBound(f"Bound must be positive, got {bound}.")
    return abs(rolling_hash32(block_hash + seed)) % bound
