from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .project_constants import ALGORITHM, DEFAULT_LOTTERY_CLASS


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    return ensure_utc(dt).astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@dataclass(frozen=True)
class BlockRecord:
    height: int
    hash: str
    timestamp: int
    merkle_root: Optional[str] = None
    previous_block_hash: Optional[str] = None
    version: Optional[int] = None
    bits: Optional[int] = None
    nonce: Optional[int] = None
    difficulty: Optional[float] = None
    size: Optional[int] = None
    weight: Optional[int] = None
    tx_count: Optional[int] = None
    verification_url: Optional[str] = None
    fetched_at: Optional[str] = None
    used_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "height": self.height,
            "hash": self.hash,
            "timestamp": self.timestamp,
            "merkle_root": self.merkle_root,
            "previous_block_hash": self.previous_block_hash,
            "version": self.version,
            "bits": self.bits,
            "nonce": self.nonce,
            "difficulty": self.difficulty,
            "size": self.size,
            "weight": self.weight,
            "tx_count": self.tx_count,
            "verification_url": self.verification_url,
            "fetched_at": self.fetched_at,
            "used_fallback": self.used_fallback,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "BlockRecord":
        return BlockRecord(
            height=int(d["height"]),
            hash=str(d["hash"]),
            timestamp=int(d["timestamp"]),
            merkle_root=d.get("merkle_root"),
            previous_block_hash=d.get("previous_block_hash"),
            version=d.get("version"),
            bits=d.get("bits"),
            nonce=d.get("nonce"),
            difficulty=d.get("difficulty"),
            size=d.get("size"),
            weight=d.get("weight"),
            tx_count=d.get("tx_count"),
            verification_url=d.get("verification_url"),
            fetched_at=d.get("fetched_at"),
            used_fallback=bool(d.get("used_fallback", False)),
        )


@dataclass(frozen=True)
class BlockCommitment:
    """Future block height whose hash will seed the draw. Never changes once stored."""

    target_height: int
    lottery_id: str
    computed_at: str
    margin_blocks: int
    base_height: int
    blocks_until_close: int
    margin_percent: float
    lottery_class: str = DEFAULT_LOTTERY_CLASS
    height_degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_height": self.target_height,
            "lottery_id": self.lottery_id,
            "computed_at": self.computed_at,
            "margin_blocks": self.margin_blocks,
            "base_height": self.base_height,
            "blocks_until_close": self.blocks_until_close,
            "margin_percent": self.margin_percent,
            "lottery_class": self.lottery_class,
            "height_degraded": self.height_degraded,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "BlockCommitment":
        return BlockCommitment(
            target_height=int(d["target_height"]),
            lottery_id=str(d["lottery_id"]),
            computed_at=str(d["computed_at"]),
            margin_blocks=int(d["margin_blocks"]),
            base_height=int(d["base_height"]),
            blocks_until_close=int(d["blocks_until_close"]),
            margin_percent=float(d["margin_percent"]),
            lottery_class=str(d.get("lottery_class", DEFAULT_LOTTERY_CLASS)),
            height_degraded=bool(d.get("height_degraded", False)),
        )


@dataclass(frozen=True)
class Participant:
    participant_id: str
    display_name: Optional[str] = None
    ticket_number: Optional[int] = None

    def label(self) -> str:
        return self.display_name or self.participant_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "display_name": self.display_name,
            "ticket_number": self.ticket_number,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "Participant":
        if not isinstance(d, Mapping):
            raise TypeError(f"Participant entry is not an object: {d!r}")
        # Entry exports from the web app use uid/userId and username
        pid = d.get("participant_id") or d.get("uid") or d.get("userId")
        if not pid:
            raise ValueError(f"Participant entry has no identifier: {dict(d)!r}")
        ticket = d.get("ticket_number", d.get("ticketNumber"))
        return Participant(
            participant_id=str(pid),
            display_name=d.get("display_name") or d.get("username"),
            ticket_number=int(ticket) if ticket is not None else None,
        )


@dataclass(frozen=True)
class VerificationPayload:
    block_height: int
    block_hash: str
    lottery_id: str
    position_seed: str
    pool_size_at_selection: int
    selected_index: int
    block_timestamp: Optional[int] = None
    verification_url: Optional[str] = None
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_height": self.block_height,
            "block_hash": self.block_hash,
            "lottery_id": self.lottery_id,
            "position_seed": self.position_seed,
            "pool_size_at_selection": self.pool_size_at_selection,
            "selected_index": self.selected_index,
            "block_timestamp": self.block_timestamp,
            "verification_url": self.verification_url,
            "algorithm": self.algorithm,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "VerificationPayload":
        return VerificationPayload(
            block_height=int(d["block_height"]),
            block_hash=str(d["block_hash"]),
            lottery_id=str(d["lottery_id"]),
            position_seed=str(d["position_seed"]),
            pool_size_at_selection=int(d["pool_size_at_selection"]),
            selected_index=int(d["selected_index"]),
            block_timestamp=d.get("block_timestamp"),
            verification_url=d.get("verification_url"),
            algorithm=str(d.get("algorithm", ALGORITHM)),
        )


@dataclass(frozen=True)
class WinnerRecord:
    position: int
    participant: Participant
    verification: VerificationPayload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "participant": self.participant.to_dict(),
            "verification": self.verification.to_dict(),
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "WinnerRecord":
        return WinnerRecord(
            position=int(d["position"]),
            participant=Participant.from_dict(d["participant"]),
            verification=VerificationPayload.from_dict(d["verification"]),
        )


@dataclass(frozen=True)
class LotteryRecord:
    lottery_id: str
    closing_time: datetime
    winner_count: int
    lottery_class: str = DEFAULT_LOTTERY_CLASS
    participants: Tuple[Participant, ...] = ()
    participants_frozen: bool = False
    # Entry fee / prize split; consumed by the payout side, never interpreted here
    prize_config: Dict[str, Any] = field(default_factory=dict)
    commitment: Optional[BlockCommitment] = None
    block: Optional[BlockRecord] = None
    winners: Tuple[WinnerRecord, ...] = ()
    drawn_at: Optional[str] = None

    @property
    def is_drawn(self) -> bool:
        return bool(self.winners)

    def evolve(self, **changes: Any) -> "LotteryRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lottery_id": self.lottery_id,
            "closing_time": to_iso(self.closing_time),
            "winner_count": self.winner_count,
            "lottery_class": self.lottery_class,
            "participants": [p.to_dict() for p in self.participants],
            "participants_frozen": self.participants_frozen,
            "prize_config": dict(self.prize_config),
            "commitment": self.commitment.to_dict() if self.commitment else None,
            "block": self.block.to_dict() if self.block else None,
            "winners": [w.to_dict() for w in self.winners],
            "drawn_at": self.drawn_at,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "LotteryRecord":
        participants: List[Participant] = [
            Participant.from_dict(p) for p in d.get("participants", [])
        ]
        commitment = d.get("commitment")
        block = d.get("block")
        return LotteryRecord(
            lottery_id=str(d["lottery_id"]),
            closing_time=parse_iso(d["closing_time"]),
            winner_count=int(d["winner_count"]),
            lottery_class=str(d.get("lottery_class", DEFAULT_LOTTERY_CLASS)),
            participants=tuple(participants),
            participants_frozen=bool(d.get("participants_frozen", False)),
            prize_config=dict(d.get("prize_config") or {}),
            commitment=BlockCommitment.from_dict(commitment) if commitment else None,
            block=BlockRecord.from_dict(block) if block else None,
            winners=tuple(WinnerRecord.from_dict(w) for w in d.get("winners", [])),
            drawn_at=d.get("drawn_at"),
        )
