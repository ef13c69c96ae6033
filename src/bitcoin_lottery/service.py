from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from .blockchain import BlockchainClient
from .draw import select_winners
from .errors import (
    CommitmentImmutable,
    DrawAlreadyExecuted,
    LotteryNotFound,
    LotteryStateError,
)
from .models import BlockCommitment, BlockRecord, LotteryRecord, WinnerRecord, ensure_utc
from .project_constants import DEFAULT_LOTTERY_CLASS
from .schedule import MarginPolicy, compute_commitment_block
from .store import LotteryStore
from .verify import DrawVerification, verify_draw

log = logging.getLogger(__name__)


class LotteryService:
    """Commitment, draw and verification for lotteries held in `store`."""

    def __init__(
        self,
        client: BlockchainClient,
        store: LotteryStore,
        margin_policy: Optional[MarginPolicy] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.margin_policy = margin_policy or MarginPolicy()

    def schedule_commitment(
        self,
        lottery_id: str,
        closing_time: Optional[datetime] = None,
        lottery_class: Optional[str] = None,
        winner_count: int = 1,
        now: Optional[datetime] = None,
    ) -> BlockCommitment:
        """
        Commit `lottery_id` to a future block. Creates the lottery record
        when the store does not know it yet.

        Nothing is written unless the commitment can be computed; a new
        record and its commitment are stored together.
        """
        if closing_time is not None:
            closing_time = ensure_utc(closing_time)
        try:
            record: Optional[LotteryRecord] = self.store.get(lottery_id)
        except LotteryNotFound:
            if closing_time is None:
                raise
            record = None

        if record is not None:
            if record.commitment is not None:
                raise CommitmentImmutable(
                    f"Lottery {lottery_id} is already committed to block "
                    f"#{record.commitment.target_height}."
                )
            if closing_time is not None and closing_time != record.closing_time:
                raise LotteryStateError(
                    f"Closing time {closing_time.isoformat()} does not match the stored "
                    f"{record.closing_time.isoformat()} for {lottery_id}."
                )
            closing_time = record.closing_time
            lottery_class = lottery_class or record.lottery_class
        else:
            if winner_count < 1:
                raise LotteryStateError(
                    f"Winner count must be at least 1, got {winner_count}."
                )
            lottery_class = lottery_class or DEFAULT_LOTTERY_CLASS
        now = now or datetime.now(timezone.utc)

        reading = self.client.get_current_height()
        if reading.degraded:
            log.warning(
                "Scheduling %s from an estimated height (%d); indexers unreachable",
                lottery_id,
                reading.height,
            )

        plan = compute_commitment_block(
            reading.height,
            closing_time,
            lottery_class,
            policy=self.margin_policy,
            now=now,
        )
        commitment = BlockCommitment(
            target_height=plan.target_height,
            lottery_id=lottery_id,
            computed_at=now.isoformat(),
            margin_blocks=plan.margin_blocks,
            base_height=plan.current_height,
            blocks_until_close=plan.blocks_until_close,
            margin_percent=plan.margin_percent,
            lottery_class=lottery_class,
            height_degraded=reading.degraded,
        )
        if record is None:
            self.store.create_lottery(
                lottery_id,
                closing_time,
                winner_count,
                lottery_class,
                commitment=commitment,
            )
        else:
            self.store.save_commitment(lottery_id, commitment)
        log.info("Lottery %s committed to block #%d", lottery_id, commitment.target_height)
        return commitment

    def execute_draw(
        self,
        lottery_id: str,
        block: Optional[BlockRecord] = None,
        now: Optional[datetime] = None,
    ) -> List[WinnerRecord]:
        """
        Fetch the committed block, select winners and store them.

        A supplied `block` is only accepted when the indexer reports the
        same hash at the committed height. Runs at most once per lottery. BlockUnavailable propagates so the
        caller can retry later; nothing is written unless every winner
        was selected.
        """
        now = ensure_utc(now or datetime.now(timezone.utc))
        with self.store.draw_lock(lottery_id):
            record = self.store.get(lottery_id)
            if record.is_drawn:
                raise DrawAlreadyExecuted(f"Lottery {lottery_id} has already been drawn.")
            if record.commitment is None:
                raise LotteryStateError(f"Lottery {lottery_id} has no block commitment.")
            if now < record.closing_time:
                raise LotteryStateError(
                    f"Lottery {lottery_id} is still open until {record.closing_time.isoformat()}."
                )
            if not record.participants_frozen:
                raise LotteryStateError(f"Participant pool of {lottery_id} is not frozen.")

            target = record.commitment.target_height
            if block is not None and block.height != target:
                raise LotteryStateError(
                    f"Supplied block #{block.height} is not the committed block #{target}."
                )
            chain_block = self.client.get_block(target)
            if block is not None and block.hash != chain_block.hash:
                raise LotteryStateError(
                    f"Supplied block hash {block.hash} for #{target} does not match "
                    f"the chain ({chain_block.hash})."
                )
            block = block or chain_block

            winners = select_winners(
                block, lottery_id, record.participants, record.winner_count
            )
            self.store.record_draw(lottery_id, block, winners)

        for w in winners:
            log.info("Position %d: %s", w.position, w.participant.label())
        return winners

    def verify_draw(self, lottery_id: str, recheck_chain: bool = False) -> DrawVerification:
        """
        Replay a stored draw. With recheck_chain, also confirm the stored
        block hash against the indexer.
        """
        record = self.store.get(lottery_id)
        if not record.is_drawn or record.block is None or record.commitment is None:
            return DrawVerification(False, reason=f"lottery {lottery_id} has not been drawn")

        if record.block.height != record.commitment.target_height:
            return DrawVerification(
                False,
                reason=(
                    f"stored block #{record.block.height} is not the committed "
                    f"block #{record.commitment.target_height}"
                ),
            )

        if recheck_chain:
            live = self.client.get_block(record.block.height)
            if live.hash != record.block.hash:
                return DrawVerification(
                    False,
                    reason=f"stored block hash {record.block.hash} != chain {live.hash}",
                )

        result = verify_draw(
            record.winners,
            record.participants,
            lottery_id,
            record.block.hash,
            record.block.height,
        )
        log.info("Verification of %s: valid=%s", lottery_id, result.valid)
        return result
