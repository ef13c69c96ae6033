import json
import os
from datetime import datetime, timezone

import pytest

from bitcoin_lottery.draw import select_winners
from bitcoin_lottery.errors import (
    CommitmentImmutable,
    DrawAlreadyExecuted,
    DrawInProgress,
    LotteryNotFound,
    InvalidWinnerCount,
    LotteryStateError,
)
from bitcoin_lottery.models import BlockCommitment, Participant
from bitcoin_lottery.store import InMemoryLotteryStore, JsonFileLotteryStore

CLOSING = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _commitment(target=800156):
    return BlockCommitment(
        target_height=target,
        lottery_id="L1",
        computed_at="2026-10-18T12:00:00+00:00",
        margin_blocks=12,
        base_height=800000,
        blocks_until_close=144,
        margin_percent=10.0,
    )


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryLotteryStore()
    return JsonFileLotteryStore(str(tmp_path / "lotteries"))


class TestLotteryStore:
    def test_create_and_get(self, store):
        store.create_lottery("L1", CLOSING, 2, "weekly", prize_config={"fee": 1})
        record = store.get("L1")
        assert record.closing_time == CLOSING
        assert record.winner_count == 2
        assert record.lottery_class == "weekly"
        assert record.prize_config == {"fee": 1}
        assert not record.participants_frozen
        assert store.list_ids() == ["L1"]

    def test_naive_closing_time_stored_as_utc(self, store):
        store.create_lottery("L1", CLOSING.replace(tzinfo=None), 1)
        assert store.get("L1").closing_time == CLOSING

    def test_duplicate_create(self, store):
        store.create_lottery("L1", CLOSING, 1)
        with pytest.raises(LotteryStateError):
            store.create_lottery("L1", CLOSING, 1)

    def test_zero_winners_rejected(self, store):
        with pytest.raises(LotteryStateError):
            store.create_lottery("L1", CLOSING, 0)

    def test_missing(self, store):
        with pytest.raises(LotteryNotFound):
            store.get("nope")

    def test_commitment_written_once(self, store):
        store.create_lottery("L1", CLOSING, 1)
        store.save_commitment("L1", _commitment())
        with pytest.raises(CommitmentImmutable):
            store.save_commitment("L1", _commitment(900000))
        assert store.get("L1").commitment.target_height == 800156

    def test_participant_order_preserved(self, store, participants):
        store.create_lottery("L1", CLOSING, 1)
        reordered = list(reversed(participants))
        store.freeze_participants("L1", reordered)
        assert list(store.get("L1").participants) == reordered

    def test_freeze_once(self, store, participants):
        store.create_lottery("L1", CLOSING, 1)
        store.freeze_participants("L1", participants)
        with pytest.raises(LotteryStateError):
            store.freeze_participants("L1", participants[:2])

    def test_freeze_rejects_repeated_id(self, store, participants):
        store.create_lottery("L1", CLOSING, 1)
        pool = participants + [Participant("uid-b", "B again", 6)]
        with pytest.raises(InvalidWinnerCount):
            store.freeze_participants("L1", pool)
        assert not store.get("L1").participants_frozen
        store.freeze_participants("L1", participants)

    def test_freeze_rejects_pool_smaller_than_winner_count(self, store, participants):
        store.create_lottery("L1", CLOSING, 6)
        with pytest.raises(InvalidWinnerCount):
            store.freeze_participants("L1", participants)
        with pytest.raises(InvalidWinnerCount):
            store.freeze_participants("L1", [])
        assert not store.get("L1").participants_frozen

    def test_create_with_commitment(self, store):
        store.create_lottery("L1", CLOSING, 1, commitment=_commitment())
        assert store.get("L1").commitment == _commitment()
        with pytest.raises(CommitmentImmutable):
            store.save_commitment("L1", _commitment(900000))

    def test_draw_written_once(self, store, participants, block):
        store.create_lottery("L1", CLOSING, 2)
        winners = select_winners(block, "L1", participants, 2)
        store.record_draw("L1", block, winners)
        record = store.get("L1")
        assert record.is_drawn
        assert list(record.winners) == winners
        assert record.block == block
        assert record.drawn_at
        with pytest.raises(DrawAlreadyExecuted):
            store.record_draw("L1", block, winners)

    def test_nested_draw_lock(self, store):
        with store.draw_lock("L1"):
            with pytest.raises(DrawInProgress):
                with store.draw_lock("L1"):
                    pass
        # Released afterwards
        with store.draw_lock("L1"):
            pass

    def test_locks_are_per_lottery(self, store):
        with store.draw_lock("L1"):
            with store.draw_lock("L2"):
                pass


class TestJsonFileLotteryStore:
    def test_document_is_plain_json(self, tmp_path, participants):
        store = JsonFileLotteryStore(str(tmp_path))
        store.create_lottery("L1", CLOSING, 1)
        store.freeze_participants("L1", participants)
        doc = json.loads((tmp_path / "L1.json").read_text())
        assert [p["participant_id"] for p in doc["participants"]] == [
            p.participant_id for p in participants
        ]

    def test_lock_file_removed(self, tmp_path):
        store = JsonFileLotteryStore(str(tmp_path))
        with store.draw_lock("L1"):
            assert (tmp_path / ".L1.lock").exists()
        assert not (tmp_path / ".L1.lock").exists()

    def test_stale_lock_from_other_process(self, tmp_path):
        store = JsonFileLotteryStore(str(tmp_path))
        (tmp_path / ".L1.lock").write_text("12345")
        with pytest.raises(DrawInProgress):
            with store.draw_lock("L1"):
                pass
        # The in-process lock must not stay held after the failure
        os.unlink(tmp_path / ".L1.lock")
        with store.draw_lock("L1"):
            pass

    def test_failed_write_keeps_previous_document(self, tmp_path, monkeypatch, participants):
        store = JsonFileLotteryStore(str(tmp_path))
        store.create_lottery("L1", CLOSING, 1)

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(json, "dump", boom)
        with pytest.raises(OSError):
            store.freeze_participants("L1", participants)
        monkeypatch.undo()

        assert not store.get("L1").participants_frozen
        assert sorted(os.listdir(tmp_path)) == ["L1.json"]

    @pytest.mark.parametrize("bad", ["", "../escape", ".hidden"])
    def test_invalid_ids(self, tmp_path, bad):
        store = JsonFileLotteryStore(str(tmp_path))
        with pytest.raises(LotteryStateError):
            store.create_lottery(bad, CLOSING, 1)
