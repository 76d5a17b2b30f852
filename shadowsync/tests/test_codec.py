# shadowsync/tests/test_codec.py
import pytest

from shadowsync.codec import (
    MAX_PACKED_TOKEN_ID,
    ZERO_ADDRESS,
    fits_packed,
    pack_many,
    pack_ownership,
    to_address,
    to_token_id,
    to_word,
    unpack_many,
    unpack_ownership,
)
from shadowsync.errors import ValidationError


def test_to_address_normalizes():
    assert to_address("0xABCDEF" + "0" * 34) == "0xabcdef" + "0" * 34
    assert to_address(1) == "0x" + "0" * 39 + "1"
    assert to_address("0x1") == "0x" + "0" * 39 + "1"
    assert to_address(0) == ZERO_ADDRESS


@pytest.mark.parametrize("bad", ["", "abc", "0x" + "g" * 40, "0x" + "1" * 41, -1, 2**160, True, 1.5])
def test_to_address_rejects(bad):
    with pytest.raises(ValidationError):
        to_address(bad)


def test_token_id_forms():
    assert to_token_id(7) == 7
    assert to_token_id("7") == 7
    assert to_token_id("0x10") == 16
    with pytest.raises(ValidationError):
        to_token_id(-1)
    with pytest.raises(ValidationError):
        to_token_id("seven")


def test_pack_layout():
    owner = "0x" + "1" * 40
    word = pack_ownership(5, owner)
    assert word >> 160 == 5
    assert word & ((1 << 160) - 1) == int(owner, 16)
    assert unpack_ownership(word) == (5, owner)


def test_round_trip_at_the_ceiling():
    owner = "0x" + "f" * 40
    for tid in (0, 1, MAX_PACKED_TOKEN_ID):
        assert unpack_ownership(pack_ownership(tid, owner)) == (tid, owner)


def test_oversized_token_id_is_truncated():
    owner = "0x" + "2" * 40
    tid = MAX_PACKED_TOKEN_ID + 1 + 42
    assert not fits_packed(tid)
    decoded, addr = unpack_ownership(pack_ownership(tid, owner))
    assert decoded == 42
    assert addr == owner


def test_pack_many_preserves_order():
    pairs = [(3, "0x" + "1" * 40), (1, "0x" + "2" * 40)]
    assert unpack_many(pack_many(pairs)) == pairs


def test_to_word_bounds():
    assert to_word(hex(2**256 - 1)) == 2**256 - 1
    with pytest.raises(ValidationError):
        to_word(2**256)
