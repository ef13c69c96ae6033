from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Union

from .draw import build_position_seed
from .models import Participant, VerificationPayload, WinnerRecord
from .project_constants import BLOCK_HASH_LENGTH, BLOCK_HASH_RE
from .randomness import derive_index

WinnerInput = Union[WinnerRecord, Mapping[str, Any]]


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    recomputed_index: Optional[int] = None
    reason: Optional[str] = None
    position: Optional[int] = None


@dataclass(frozen=True)
class DrawVerification:
    valid: bool
    positions: List[VerificationResult] = field(default_factory=list)
    reason: Optional[str] = None

    def failures(self) -> List[VerificationResult]:
        return [p for p in self.positions if not p.valid]


def _is_block_hash(value: str) -> bool:
    return bool(BLOCK_HASH_RE.fullmatch(value))


def _parse_winner(item: WinnerInput) -> WinnerRecord:
    if isinstance(item, WinnerRecord):
        return item
    return WinnerRecord.from_dict(item)


def _check_payload(v: VerificationPayload) -> Optional[str]:
    if not _is_block_hash(v.block_hash):
        return f"block hash {v.block_hash!r} is not {BLOCK_HASH_LENGTH} hex characters"
    if v.pool_size_at_selection <= 0:
        return f"pool size {v.pool_size_at_selection} is not positive"
    if not v.position_seed:
        return "position seed is empty"
    return None


def verify_winner(
    record: WinnerInput,
    original_participants: Optional[Sequence[Participant]] = None,
) -> VerificationResult:
    """
    Recompute one position's index from its stored payload.

    Only the index arithmetic is checked; whether the recorded participant
    really sat at that index needs the full replay in verify_draw.
    Bad input yields valid=False with a reason, never an exception.
    """
    try:
        winner = _parse_winner(record)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        return VerificationResult(False, reason=f"malformed winner record: {e!r}")

    v = winner.verification
    problem = _check_payload(v)
    if problem:
        return VerificationResult(False, reason=problem, position=winner.position)

    if original_participants is not None and v.pool_size_at_selection > len(
        original_participants
    ):
        return VerificationResult(
            False,
            reason=(
                f"pool size {v.pool_size_at_selection} exceeds the "
                f"{len(original_participants)} original participants"
            ),
            position=winner.position,
        )

    recomputed = derive_index(v.block_hash, v.position_seed, v.pool_size_at_selection)
    if recomputed != v.selected_index:
        return VerificationResult(
            False,
            recomputed_index=recomputed,
            reason=f"index mismatch: stored={v.selected_index} recomputed={recomputed}",
            position=winner.position,
        )
    return VerificationResult(True, recomputed_index=recomputed, position=winner.position)


def verify_draw(
    winners: Sequence[WinnerInput],
    participants: Sequence[Participant],
    lottery_id: str,
    block_hash: str,
    block_height: int,
) -> DrawVerification:
    """Replay the whole draw from position 1 and compare every recorded winner."""
    if not winners:
        return DrawVerification(False, reason="no winners recorded")
    if len(winners) > len(participants):
        return DrawVerification(
            False,
            reason=f"{len(winners)} winners recorded from {len(participants)} participants",
        )

    pool = list(participants)
    results: List[VerificationResult] = []
    for expected_position, item in enumerate(winners, start=1):
        try:
            winner = _parse_winner(item)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            results.append(
                VerificationResult(
                    False,
                    reason=f"malformed winner record: {e!r}",
                    position=expected_position,
                )
            )
            # Cannot know which participant to remove; later positions are unverifiable
            break

        v = winner.verification
        problem = _check_payload(v)
        if problem is None and winner.position != expected_position:
            problem = f"position {winner.position} recorded where {expected_position} expected"
        if problem is None and v.lottery_id != lottery_id:
            problem = f"lottery id {v.lottery_id!r} != {lottery_id!r}"
        if problem is None and v.block_hash != block_hash:
            problem = "block hash differs from the committed block"
        if problem is None and v.block_height != block_height:
            problem = f"block height {v.block_height} != committed {block_height}"
        if problem is None:
            seed = build_position_seed(lottery_id, expected_position, block_height)
            if v.position_seed != seed:
                problem = f"position seed {v.position_seed!r} != expected {seed!r}"
        if problem is None and v.pool_size_at_selection != len(pool):
            problem = f"pool size {v.pool_size_at_selection} != replayed {len(pool)}"
        if problem is not None:
            results.append(VerificationResult(False, reason=problem, position=expected_position))
            break

        recomputed = derive_index(block_hash, v.position_seed, len(pool))
        if recomputed != v.selected_index:
            results.append(
                VerificationResult(
                    False,
                    recomputed_index=recomputed,
                    reason=f"index mismatch: stored={v.selected_index} recomputed={recomputed}",
                    position=expected_position,
                )
            )
            break

        chosen = pool.pop(recomputed)
        if chosen.participant_id != winner.participant.participant_id:
            results.append(
                VerificationResult(
                    False,
                    recomputed_index=recomputed,
                    reason=(
                        f"winner mismatch: recorded={winner.participant.participant_id} "
                        f"recomputed={chosen.participant_id}"
                    ),
                    position=expected_position,
                )
            )
            break

        results.append(
            VerificationResult(True, recomputed_index=recomputed, position=expected_position)
        )

    if len(results) < len(winners):
        for position in range(len(results) + 1, len(winners) + 1):
            results.append(
                VerificationResult(
                    False, reason="not checked: an earlier position failed", position=position
                )
            )

    failures = [r for r in results if not r.valid]
    if failures:
        first = failures[0]
        return DrawVerification(
            False, results, reason=f"position {first.position}: {first.reason}"
        )
    return DrawVerification(True, results)


def verify_audit(audit_path: str) -> DrawVerification:
    """Verify a self-contained audit JSON written by `bitcoin-lottery draw --out`."""
    try:
        with open(audit_path, "r", encoding="utf-8") as f:
            audit = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        return DrawVerification(False, reason=f"unreadable audit file {audit_path}: {e}")

    try:
        meta = audit["metadata"]
        participants = [Participant.from_dict(p) for p in audit["all_participants"]]
        winners = audit["winners"]
        if not isinstance(winners, list):
            raise TypeError(f"winners is not a list: {type(winners).__name__}")
        lottery_id = str(meta["lottery_id"])
        block_hash = str(meta["block_hash"])
        block_height = int(meta["block_height"])
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        return DrawVerification(False, reason=f"malformed audit file: {e!r}")

    return verify_draw(winners, participants, lottery_id, block_hash, block_height)
