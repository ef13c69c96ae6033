from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import InvalidSchedule
from .project_constants import (
    AVG_BLOCK_SECONDS,
    DEFAULT_LOTTERY_CLASS,
    DEFAULT_MARGIN_PERCENTS,
    DEFAULT_MAX_MARGIN_BLOCKS,
    DEFAULT_MIN_MARGIN_BLOCKS,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarginPolicy:
    """
    Safety margin added past the estimated closing block.

    Block arrival is memoryless, so a height computed from elapsed time
    alone can be mined before entries lock. The margin is a percentage of
    the blocks-until-close estimate, clamped to [min_blocks, max_blocks].
    Short lotteries use a larger relative margin because the estimate is
    proportionally noisier over short windows.
    """

    percents: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_MARGIN_PERCENTS)
    )
    min_blocks: int = DEFAULT_MIN_MARGIN_BLOCKS
    max_blocks: int = DEFAULT_MAX_MARGIN_BLOCKS

    def percent_for(self, lottery_class: str) -> float:
        if lottery_class in self.percents:
            return self.percents[lottery_class]
        return self.percents.get(
            DEFAULT_LOTTERY_CLASS, DEFAULT_MARGIN_PERCENTS[DEFAULT_LOTTERY_CLASS]
        )

    def margin_for(self, blocks_until_close: int, lottery_class: str) -> int:
        percent = self.percent_for(lottery_class)
        raw = math.ceil(blocks_until_close * percent / 100)
        return max(self.min_blocks, min(self.max_blocks, raw))


@dataclass(frozen=True)
class CommitmentPlan:
    target_height: int
    current_height: int
    blocks_until_close: int
    margin_blocks: int
    margin_percent: float
    lottery_class: str
    estimated_draw_time: datetime


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def compute_commitment_block(
    current_height: int,
    closing_time: datetime,
    lottery_class: str = DEFAULT_LOTTERY_CLASS,
    policy: Optional[MarginPolicy] = None,
    now: Optional[datetime] = None,
) -> CommitmentPlan:
    """target = current_height + ceil(time to close / block interval) + margin."""
    policy = policy or MarginPolicy()
    if policy.min_blocks < 1 or policy.max_blocks < policy.min_blocks:
        raise InvalidSchedule(
            f"Invalid margin clamp [{policy.min_blocks}, {policy.max_blocks}]."
        )
    if current_height < 0:
        raise InvalidSchedule(f"Current height must be non-negative, got {current_height}.")

    now = _utc(now or datetime.now(timezone.utc))
    closing_time = _utc(closing_time)
    seconds_until_close = (closing_time - now).total_seconds()
    if seconds_until_close <= 0:
        raise InvalidSchedule(
            f"Closing time {closing_time.isoformat()} must be in the future "
            f"(now {now.isoformat()})."
        )

    blocks_until_close = math.ceil(seconds_until_close / AVG_BLOCK_SECONDS)
    margin = policy.margin_for(blocks_until_close, lottery_class)
    target = current_height + blocks_until_close + margin

    estimated = datetime.fromtimestamp(
        now.timestamp() + (blocks_until_close + margin) * AVG_BLOCK_SECONDS,
        tz=timezone.utc,
    )
    log.info(
        "Commitment for %s lottery: current=%d blocks_until_close=%d margin=%d (%.1f%%) -> target=%d",
        lottery_class,
        current_height,
        blocks_until_close,
        margin,
        policy.percent_for(lottery_class),
        target,
    )
    return CommitmentPlan(
        target_height=target,
        current_height=current_height,
        blocks_until_close=blocks_until_close,
        margin_blocks=margin,
        margin_percent=policy.percent_for(lottery_class),
        lottery_class=lottery_class,
        estimated_draw_time=estimated,
    )
