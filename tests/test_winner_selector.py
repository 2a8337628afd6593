import pytest

from raffle_backend.app.services.winner_selector import (
    blocks_until_next,
    current_cycle,
    estimate_time,
    next_cycle,
    select_winner_index,
)

HASH_07 = "0x" + "0" * 62 + "07"


def test_seven_tickets_hash_07_selects_index_zero():
    assert select_winner_index(HASH_07, 7) == 0


def test_single_ticket_always_wins():
    assert select_winner_index("ff" * 32, 1) == 0


def test_all_zero_hash_selects_first_ticket():
    assert select_winner_index("0" * 64, 13) == 0


def test_zero_tickets_has_no_winner():
    assert select_winner_index(HASH_07, 0) is None


def test_full_256_bit_hash_takes_part():
    block_hash = "00000000000000000002a7c4c1e48d76c5a37902165a270156b7a8d72728a054"
    assert select_winner_index(block_hash, 1000) == int(block_hash, 16) % 1000


def test_prefix_and_case_do_not_matter():
    assert select_winner_index("0xABCDEF", 10) == select_winner_index("abcdef", 10)


@pytest.mark.parametrize("bad", ["", "0x", "xyz", "12 34"])
def test_non_hex_hash_is_rejected(bad):
    with pytest.raises(ValueError):
        select_winner_index(bad, 3)


def test_negative_count_is_rejected():
    with pytest.raises(ValueError):
        select_winner_index("ab", -1)


def test_cycle_arithmetic():
    assert current_cycle(840_000) == 838_656
    assert current_cycle(838_656) == 838_656
    assert next_cycle(840_000) == 840_672
    assert blocks_until_next(840_000) == 672
    assert blocks_until_next(838_656) == 2016


def test_estimate_time_units():
    assert estimate_time(432) == "~3 days"
    assert "hour" in estimate_time(12)
    assert "minute" in estimate_time(3)
