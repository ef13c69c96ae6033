import pytest

from bitcoin_lottery.draw import build_position_seed, select_winners
from bitcoin_lottery.errors import InvalidWinnerCount
from bitcoin_lottery.models import Participant
from bitcoin_lottery.project_constants import SEED_SALT
from bitcoin_lottery.randomness import derive_index

from conftest import BLOCK_HASH, TARGET_HEIGHT, make_participants


class TestPositionSeed:
    def test_only_static_identifiers(self):
        assert build_position_seed("L1", 1, 800156) == (
            f"L1_POSITION_1_BLOCK_800156_SALT_{SEED_SALT}"
        )

    def test_stable_across_calls(self):
        assert build_position_seed("L1", 3, 5) == build_position_seed("L1", 3, 5)

    def test_distinct_per_position(self):
        seeds = {build_position_seed("L1", p, 5) for p in range(1, 20)}
        assert len(seeds) == 19


class TestSelectWinners:
    def test_identical_inputs_give_identical_results(self, block, participants):
        first = select_winners(block, "L1", participants, 2)
        second = select_winners(block, "L1", participants, 2)
        assert first == second
        assert [w.verification.selected_index for w in first] == [
            w.verification.selected_index for w in second
        ]

    def test_first_position_uses_full_pool(self, block, participants):
        winners = select_winners(block, "L1", participants, 1)
        seed = build_position_seed("L1", 1, TARGET_HEIGHT)
        expected = derive_index(BLOCK_HASH, seed, len(participants))
        assert winners[0].participant == participants[expected]
        assert winners[0].verification.selected_index == expected

    @pytest.mark.parametrize("pool_size", [1, 2, 5, 17])
    def test_every_winner_count_gives_distinct_contiguous_winners(self, block, pool_size):
        pool = make_participants(pool_size)
        for count in range(1, pool_size + 1):
            winners = select_winners(block, "L-prop", pool, count)
            assert len(winners) == count
            assert [w.position for w in winners] == list(range(1, count + 1))
            ids = [w.participant.participant_id for w in winners]
            assert len(set(ids)) == count

    def test_full_draw_is_a_permutation(self, block):
        pool = make_participants(12)
        winners = select_winners(block, "L-perm", pool, len(pool))
        assert sorted(w.participant.participant_id for w in winners) == sorted(
            p.participant_id for p in pool
        )

    def test_pool_shrinks_by_one_each_position(self, block):
        pool = make_participants(8)
        winners = select_winners(block, "L1", pool, 8)
        assert [w.verification.pool_size_at_selection for w in winners] == list(
            range(8, 0, -1)
        )
        assert winners[-1].verification.selected_index == 0

    def test_single_participant_always_wins(self, block):
        solo = [Participant("only")]
        winners = select_winners(block, "L1", solo, 1)
        assert winners[0].participant.participant_id == "only"
        assert winners[0].verification.selected_index == 0

    def test_payload_carries_verification_inputs(self, block, participants):
        w = select_winners(block, "L1", participants, 1)[0]
        v = w.verification
        assert v.block_hash == BLOCK_HASH
        assert v.block_height == TARGET_HEIGHT
        assert v.lottery_id == "L1"
        assert v.position_seed == build_position_seed("L1", 1, TARGET_HEIGHT)
        assert v.block_timestamp == block.timestamp
        assert v.verification_url == block.verification_url

    def test_input_pool_is_not_mutated(self, block, participants):
        before = list(participants)
        select_winners(block, "L1", participants, 3)
        assert participants == before

    def test_different_lottery_ids_draw_independently(self, block):
        pool = make_participants(50)
        a = [w.verification.selected_index for w in select_winners(block, "L1", pool, 5)]
        b = [w.verification.selected_index for w in select_winners(block, "L2", pool, 5)]
        assert a != b

    @pytest.mark.parametrize("count", [0, -1, 6])
    def test_invalid_winner_count(self, block, participants, count):
        with pytest.raises(InvalidWinnerCount):
            select_winners(block, "L1", participants, count)

    def test_empty_pool_rejected(self, block):
        with pytest.raises(InvalidWinnerCount):
            select_winners(block, "L1", [], 1)

    def test_duplicate_participant_ids_rejected(self, block):
        pool = [Participant("x"), Participant("y"), Participant("x")]
        with pytest.raises(InvalidWinnerCount):
            select_winners(block, "L1", pool, 2)
