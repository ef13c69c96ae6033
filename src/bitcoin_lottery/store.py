from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import (
    CommitmentImmutable,
    DrawAlreadyExecuted,
    DrawInProgress,
    InvalidWinnerCount,
    LotteryNotFound,
    LotteryStateError,
)
from .models import (
    BlockCommitment,
    BlockRecord,
    LotteryRecord,
    Participant,
    WinnerRecord,
    ensure_utc,
)

log = logging.getLogger(__name__)


class LotteryStore:
    """
    Lottery record persistence.

    Subclasses provide raw document access (_read/_write) and a per-lottery
    lock; the state rules (commitment written once, pool frozen once,
    winners written once and all together) live here.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _read(self, lottery_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _write(self, lottery_id: str, doc: Dict[str, Any]) -> None:
        raise NotImplementedError

    def list_ids(self) -> List[str]:
        raise NotImplementedError

    @contextmanager
    def _process_lock(self, lottery_id: str) -> Iterator[None]:
        yield

    @contextmanager
    def draw_lock(self, lottery_id: str) -> Iterator[None]:
        """Exclusive section for one lottery; a second holder gets DrawInProgress."""
        with self._locks_guard:
            lock = self._locks.setdefault(lottery_id, threading.Lock())
        if not lock.acquire(blocking=False):
            raise DrawInProgress(f"A draw for {lottery_id} is already running.")
        try:
            with self._process_lock(lottery_id):
                yield
        finally:
            lock.release()

    def get(self, lottery_id: str) -> LotteryRecord:
        doc = self._read(lottery_id)
        if doc is None:
            raise LotteryNotFound(f"Lottery {lottery_id!r} not found.")
        return LotteryRecord.from_dict(doc)

    def _save(self, record: LotteryRecord) -> LotteryRecord:
        self._write(record.lottery_id, record.to_dict())
        return record

    def create_lottery(
        self,
        lottery_id: str,
        closing_time: datetime,
        winner_count: int,
        lottery_class: str = "standard",
        prize_config: Optional[Dict[str, Any]] = None,
        commitment: Optional[BlockCommitment] = None,
    ) -> LotteryRecord:
        """New record, optionally committed in the same write."""
        if self._read(lottery_id) is not None:
            raise LotteryStateError(f"Lottery {lottery_id!r} already exists.")
        if winner_count < 1:
            raise LotteryStateError(f"Winner count must be at least 1, got {winner_count}.")
        record = LotteryRecord(
            lottery_id=lottery_id,
            closing_time=ensure_utc(closing_time),
            winner_count=winner_count,
            lottery_class=lottery_class,
            prize_config=dict(prize_config or {}),
            commitment=commitment,
        )
        log.info("Created lottery %s closing %s", lottery_id, closing_time.isoformat())
        return self._save(record)

    def save_commitment(self, lottery_id: str, commitment: BlockCommitment) -> LotteryRecord:
        record = self.get(lottery_id)
        if record.commitment is not None:
            raise CommitmentImmutable(
                f"Lottery {lottery_id} is already committed to block "
                f"#{record.commitment.target_height}."
            )
        return self._save(record.evolve(commitment=commitment))

    def freeze_participants(
        self, lottery_id: str, participants: Sequence[Participant]
    ) -> LotteryRecord:
        record = self.get(lottery_id)
        if record.participants_frozen:
            raise LotteryStateError(f"Participant pool of {lottery_id} is already frozen.")
        # A frozen pool is final, so reject one the draw would refuse
        if len(participants) < record.winner_count:
            raise InvalidWinnerCount(
                f"{len(participants)} participants cannot fill "
                f"{record.winner_count} winner positions in {lottery_id}."
            )
        seen = set()
        for p in participants:
            if p.participant_id in seen:
                raise InvalidWinnerCount(
                    f"Participant {p.participant_id!r} appears more than once in the pool."
                )
            seen.add(p.participant_id)
        log.info("Freezing %d participants for %s", len(participants), lottery_id)
        return self._save(
            record.evolve(participants=tuple(participants), participants_frozen=True)
        )

    def record_draw(
        self,
        lottery_id: str,
        block: BlockRecord,
        winners: Sequence[WinnerRecord],
    ) -> LotteryRecord:
        """Block snapshot and full winner list in a single write."""
        record = self.get(lottery_id)
        if record.is_drawn:
            raise DrawAlreadyExecuted(f"Lottery {lottery_id} has already been drawn.")
        return self._save(
            record.evolve(
                block=block,
                winners=tuple(winners),
                drawn_at=datetime.now(timezone.utc).isoformat(),
            )
        )


class InMemoryLotteryStore(LotteryStore):
    def __init__(self) -> None:
        super().__init__()
        self._docs: Dict[str, Dict[str, Any]] = {}

    def _read(self, lottery_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(lottery_id)
        return copy.deepcopy(doc) if doc is not None else None

    def _write(self, lottery_id: str, doc: Dict[str, Any]) -> None:
        self._docs[lottery_id] = copy.deepcopy(doc)

    def list_ids(self) -> List[str]:
        return sorted(self._docs)


class JsonFileLotteryStore(LotteryStore):
    """One `<lottery_id>.json` document per lottery under `root`."""

    def __init__(self, root: str) -> None:
        super().__init__()
        self.root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, lottery_id: str) -> str:
        if not lottery_id or os.sep in lottery_id or lottery_id.startswith("."):
            raise LotteryStateError(f"Invalid lottery id {lottery_id!r}.")
        return os.path.join(self.root, f"{lottery_id}.json")

    def _read(self, lottery_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(lottery_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, lottery_id: str, doc: Dict[str, Any]) -> None:
        path = self._path(lottery_id)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{lottery_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # Readers see the old document or the new one, never a partial write
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def list_ids(self) -> List[str]:
        return sorted(
            name[: -len(".json")]
            for name in os.listdir(self.root)
            if name.endswith(".json") and not name.startswith(".")
        )

    @contextmanager
    def _process_lock(self, lottery_id: str) -> Iterator[None]:
        lock_path = os.path.join(self.root, f".{lottery_id}.lock")
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise DrawInProgress(
                f"Lock file {lock_path} exists; another process is drawing {lottery_id}."
            )
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            os.unlink(lock_path)
