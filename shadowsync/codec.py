# shadowsync/codec.py
"""
Packed ownership words and address normalization.

Layout of a packed word (256 bits):

    bits [255:160]  token id   (96 bits)
    bits [159:0]    owner      (160 bits)

Token ids >= 2**96 do not fit: their high bits are cut off when the word is
truncated to 256 bits, so the decoded id differs from the encoded one. This
is an encoding ceiling of the bulk path, not a checked error; callers that
may see large ids use fits_packed() and fall back to the array path.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Tuple

from .errors import ValidationError

TOKEN_ID_BITS = 96
OWNER_BITS = 160
WORD_BITS = TOKEN_ID_BITS + OWNER_BITS

MAX_PACKED_TOKEN_ID = (1 << TOKEN_ID_BITS) - 1
OWNER_MASK = (1 << OWNER_BITS) - 1
WORD_MASK = (1 << WORD_BITS) - 1

ZERO_ADDRESS = "0x" + "0" * 40

_HEX_ADDR = re.compile(r"^0[xX][0-9a-fA-F]{1,40}$")


def to_address(value: Any) -> str:
    """
    Normalize an owner identifier to "0x" + 40 lowercase hex digits.

    Accepts ints in [0, 2**160) and hex strings with a 0x prefix (any case,
    leading zeros optional). Anything else raises ValidationError.
    """
    if isinstance(value, bool):
        raise ValidationError("address must not be a bool")
    if isinstance(value, int):
        if value < 0 or value > OWNER_MASK:
            raise ValidationError("address out of 160-bit range")
        return "0x" + format(value, "040x")
    if isinstance(value, str):
        v = value.strip()
        if not _HEX_ADDR.match(v):
            raise ValidationError(f"malformed address: {value[:64]!r}")
        return "0x" + v[2:].lower().rjust(40, "0")
    raise ValidationError(f"unsupported address type: {type(value).__name__}")


def address_to_int(address: str) -> int:
    return int(to_address(address), 16)


def is_zero_address(value: Any) -> bool:
    return to_address(value) == ZERO_ADDRESS


def to_token_id(value: Any) -> int:
    """Coerce an int, decimal string or 0x-hex string into a token id."""
    if isinstance(value, bool):
        raise ValidationError("token id must not be a bool")
    if isinstance(value, int):
        tid = value
    elif isinstance(value, str):
        v = value.strip()
        try:
            tid = int(v, 16) if v[:2].lower() == "0x" else int(v, 10)
        except ValueError as e:
            raise ValidationError(f"malformed token id: {value[:80]!r}") from e
    else:
        raise ValidationError(f"unsupported token id type: {type(value).__name__}")
    if tid < 0:
        raise ValidationError("token id must be non-negative")
    return tid


def to_word(value: Any) -> int:
    """Coerce a packed word given as int or string; must fit in 256 bits."""
    word = to_token_id(value)
    if word > WORD_MASK:
        raise ValidationError("packed word exceeds 256 bits")
    return word


def fits_packed(token_id: int) -> bool:
    return 0 <= int(token_id) <= MAX_PACKED_TOKEN_ID


def pack_ownership(token_id: int, owner: Any) -> int:
    return ((int(token_id) << OWNER_BITS) | address_to_int(owner)) & WORD_MASK


def unpack_ownership(word: int) -> Tuple[int, str]:
    word = int(word) & WORD_MASK
    return word >> OWNER_BITS, "0x" + format(word & OWNER_MASK, "040x")


def pack_many(pairs: Iterable[Tuple[int, Any]]) -> List[int]:
    return [pack_ownership(tid, owner) for tid, owner in pairs]


def unpack_many(words: Iterable[int]) -> List[Tuple[int, str]]:
    return [unpack_ownership(w) for w in words]


__all__ = [
    "TOKEN_ID_BITS",
    "OWNER_BITS",
    "MAX_PACKED_TOKEN_ID",
    "ZERO_ADDRESS",
    "to_address",
    "address_to_int",
    "is_zero_address",
    "to_token_id",
    "to_word",
    "fits_packed",
    "pack_ownership",
    "unpack_ownership",
    "pack_many",
    "unpack_many",
]
