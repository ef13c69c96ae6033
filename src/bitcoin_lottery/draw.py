from __future__ import annotations

import logging
from typing import List, Sequence

from .errors import InvalidWinnerCount
from .models import BlockRecord, Participant, VerificationPayload, WinnerRecord
from .project_constants import ALGORITHM, SEED_SALT
from .randomness import derive_index

log = logging.getLogger(__name__)


def build_position_seed(lottery_id: str, position: int, block_height: int) -> str:
    # Only replayable identifiers: a clock value here would make the draw unverifiable.
    return f"{lottery_id}_POSITION_{position}_BLOCK_{block_height}_SALT_{SEED_SALT}"


def select_winners(
    block: BlockRecord,
    lottery_id: str,
    participants: Sequence[Participant],
    winner_count: int,
) -> List[WinnerRecord]:
    """
    Ordered, duplicate-free winner list drawn from the frozen pool.

    Position p draws an index into the pool left over after positions
    1..p-1 removed their winners. `participants` must be in the exact
    order recorded at close; nothing here sorts or deduplicates it.
    """
    if not participants:
        raise InvalidWinnerCount("Cannot draw winners from an empty pool.")
    if winner_count < 1 or winner_count > len(participants):
        raise InvalidWinnerCount(
            f"Invalid winner count: {winner_count}. "
            f"Must be between 1 and {len(participants)}."
        )

    seen = set()
    for p in participants:
        if p.participant_id in seen:
            raise InvalidWinnerCount(
                f"Participant {p.participant_id!r} appears more than once in the pool."
            )
        seen.add(p.participant_id)

    log.info(
        "Drawing %d winner(s) for %s from %d participants using block #%d",
        winner_count,
        lottery_id,
        len(participants),
        block.height,
    )

    pool = list(participants)
    winners: List[WinnerRecord] = []
    for position in range(1, winner_count + 1):
        seed = build_position_seed(lottery_id, position, block.height)
        pool_size = len(pool)
        index = derive_index(block.hash, seed, pool_size)
        chosen = pool.pop(index)

        winners.append(
            WinnerRecord(
                position=position,
                participant=chosen,
                verification=VerificationPayload(
                    block_height=block.height,
                    block_hash=block.hash,
                    lottery_id=lottery_id,
                    position_seed=seed,
                    pool_size_at_selection=pool_size,
                    selected_index=index,
                    block_timestamp=block.timestamp,
                    verification_url=block.verification_url,
                    algorithm=ALGORITHM,
                ),
            )
        )
        log.debug(
            "Position %d: index %d of %d -> %s",
            position,
            index,
            pool_size,
            chosen.label(),
        )

    return winners
