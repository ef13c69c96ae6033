from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from .blockchain import BlockchainClient, load_block_from_file
from .config import Settings
from .errors import BlockUnavailable, LotteryError, LotteryStateError, NetworkFailure
from .models import LotteryRecord, Participant, parse_iso
from .project_constants import ALGORITHM, SEED_SALT
from .service import LotteryService
from .store import JsonFileLotteryStore
from .verify import DrawVerification, verify_audit

EXIT_BAD_INPUT = 1
EXIT_NETWORK = 2
EXIT_NOT_READY = 3


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _settings(args: argparse.Namespace) -> Settings:
    return Settings.from_env(
        primary_api_override=args.api_url, timeout_override=args.timeout
    )


def _service(settings: Settings, args: argparse.Namespace) -> LotteryService:
    store = JsonFileLotteryStore(args.store_dir or settings.store_dir)
    client = BlockchainClient.from_settings(settings)
    return LotteryService(client, store, margin_policy=settings.margin_policy)


def load_participants(path: str) -> List[Participant]:
    """JSON list of entries, or {"participants": [...]}, in entry order."""
    with open(path, "r", encoding="utf-8") as f:
        j = json.load(f)
    if isinstance(j, dict):
        j = j.get("participants")
    if not isinstance(j, list):
        raise LotteryError(f"{path}: expected a JSON list of participants.")
    try:
        return [Participant.from_dict(item) for item in j]
    except (AttributeError, TypeError, ValueError) as e:
        raise LotteryError(f"{path}: bad participant entry: {e}")


def build_audit(record: LotteryRecord) -> Dict[str, Any]:
    if record.block is None or record.commitment is None:
        raise LotteryStateError(f"Lottery {record.lottery_id} has not been drawn.")
    return {
        "metadata": {
            "tool": "bitcoin-provably-fair-lottery",
            "version": "1.0.0",
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "lottery_id": record.lottery_id,
            "closing_time": record.closing_time.isoformat(),
            "commitment": record.commitment.to_dict(),
            "block_height": record.block.height,
            "block_hash": record.block.hash,
            "block_timestamp": record.block.timestamp,
            "verification_url": record.block.verification_url,
            "seed_salt": SEED_SALT,
            "algorithm": ALGORITHM,
            "winner_count": record.winner_count,
        },
        "block": record.block.to_dict(),
        "winners": [w.to_dict() for w in record.winners],
        # Entry order is part of the public input; anyone can re-run from this list.
        "all_participants": [p.to_dict() for p in record.participants],
    }


def _print_verification(result: DrawVerification) -> int:
    if result.valid:
        print("✅ DRAW VERIFIED")
    else:
        print("❌ VERIFICATION FAILED")
        if result.reason:
            print(f"Reason        : {result.reason}")
    for r in result.positions:
        mark = "ok" if r.valid else f"FAIL ({r.reason})"
        print(f"  #{r.position}: index={r.recomputed_index} {mark}")
    return 0 if result.valid else EXIT_BAD_INPUT


def _closing_time(text: str) -> datetime:
    try:
        return parse_iso(text)
    except ValueError:
        raise LotteryError(f"Closing time {text!r} is not an ISO 8601 timestamp.")


def cmd_height(args: argparse.Namespace) -> int:
    settings = _settings(args)
    with BlockchainClient.from_settings(settings) as client:
        reading = client.get_current_height()
    print(f"Current height : {reading.height}")
    print(f"Source         : {reading.source}")
    if reading.degraded:
        print("⚠️  ESTIMATED from clock; not usable as a randomness source.")
    return 0


def cmd_block(args: argparse.Namespace) -> int:
    settings = _settings(args)
    with BlockchainClient.from_settings(settings) as client:
        block = client.get_block(args.height)
    print(json.dumps(block.to_dict(), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = _settings(args)
    with BlockchainClient.from_settings(settings) as client:
        status = client.is_block_confirmed(args.height)
    print(f"Block         : {status.height}")
    print(f"Chain tip     : {status.tip}{' (estimated)' if status.degraded else ''}")
    print(f"Mined         : {'yes' if status.exists else 'no'}")
    print(f"Confirmations : {status.confirmations}")
    if not status.exists:
        print(f"Est. wait     : ~{status.estimated_wait_minutes} min")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    settings = _settings(args)
    with BlockchainClient.from_settings(settings) as client:
        blocks = client.get_recent_blocks(limit=args.limit)
    print(f"{'Height':>8}  {'Txs':>6}  {'Size':>9}  Hash")
    for b in blocks:
        mined = datetime.fromtimestamp(b.timestamp, timezone.utc).strftime("%Y-%m-%d %H:%M")
        tx_count = b.tx_count if b.tx_count is not None else "?"
        size = b.size if b.size is not None else "?"
        print(f"{b.height:>8}  {tx_count:>6}  {size:>9}  {b.hash}  {mined}")
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    settings = _settings(args)
    service = _service(settings, args)
    try:
        commitment = service.schedule_commitment(
            args.lottery_id,
            closing_time=_closing_time(args.closing_time),
            lottery_class=args.lottery_class,
            winner_count=args.winners,
        )
    finally:
        service.client.close()

    print("--- BLOCK COMMITMENT ---")
    print(f"Lottery       : {commitment.lottery_id}")
    print(f"Base height   : {commitment.base_height}{' (estimated)' if commitment.height_degraded else ''}")
    print(f"Blocks to close: {commitment.blocks_until_close}")
    print(f"Safety margin : {commitment.margin_blocks} ({commitment.margin_percent:g}%)")
    print("-" * 24)
    print(f'PUBLIC ANNOUNCEMENT:\n"Draw block is #{commitment.target_height}"')
    return 0


def cmd_close(args: argparse.Namespace) -> int:
    settings = _settings(args)
    store = JsonFileLotteryStore(args.store_dir or settings.store_dir)
    participants = load_participants(args.participants)
    record = store.freeze_participants(args.lottery_id, participants)
    print(f"Frozen {len(record.participants)} participants for {record.lottery_id}.")
    return 0


def cmd_draw(args: argparse.Namespace) -> int:
    settings = _settings(args)
    service = _service(settings, args)
    log = logging.getLogger("draw")

    block = None
    if args.block_file:
        record = service.store.get(args.lottery_id)
        target = record.commitment.target_height if record.commitment else None
        block = load_block_from_file(args.block_file, height_hint=target)
        log.info("Block source     : file:%s", args.block_file)

    try:
        winners = service.execute_draw(args.lottery_id, block=block)
    finally:
        service.client.close()

    record = service.store.get(args.lottery_id)
    if record.block is None:
        raise LotteryStateError(f"Lottery {record.lottery_id} has no stored block after the draw.")
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(build_audit(record), f, indent=2)

    print("========================================")
    print("🔒 PROVABLY FAIR LOTTERY DRAW")
    print("========================================")
    print(f"Lottery       : {record.lottery_id}")
    print(f"Block         : #{record.block.height}")
    print(f"Block hash    : {record.block.hash}")
    print(f"Participants  : {len(record.participants)}")
    print("----------------------------------------")
    print("🏆 WINNERS")
    for w in winners:
        v = w.verification
        print(
            f"#{w.position:<3} {w.participant.label():<24} "
            f"index {v.selected_index} of {v.pool_size_at_selection}"
        )
    print("----------------------------------------")
    if args.out:
        print(f"🧾 Wrote audit: {args.out}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    if args.audit:
        return _print_verification(verify_audit(args.audit))

    settings = _settings(args)
    service = _service(settings, args)
    try:
        result = service.verify_draw(args.lottery_id, recheck_chain=args.recheck_chain)
    finally:
        service.client.close()
    return _print_verification(result)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bitcoin-lottery",
        description="Provably fair lottery draws seeded by a committed Bitcoin block.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--api-url", default=None, help="Override primary indexer URL (else use env).")
    p.add_argument("--timeout", type=float, default=None, help="Request timeout seconds.")
    p.add_argument("--store-dir", default=None, help="Lottery record directory (else use env).")

    sub = p.add_subparsers(dest="cmd", required=True)

    h = sub.add_parser("height", help="Show the current chain tip height.")
    h.set_defaults(func=cmd_height)

    b = sub.add_parser("block", help="Fetch and validate one block.")
    b.add_argument("--height", required=True, type=int)
    b.set_defaults(func=cmd_block)

    st = sub.add_parser("status", help="Check whether a block has been mined.")
    st.add_argument("--height", required=True, type=int)
    st.set_defaults(func=cmd_status)

    bs = sub.add_parser("stats", help="Show the most recent blocks.")
    bs.add_argument("--limit", type=int, default=5, help="Number of blocks to list.")
    bs.set_defaults(func=cmd_stats)

    s = sub.add_parser("schedule", help="Create a lottery and commit it to a future block.")
    s.add_argument("--lottery-id", required=True)
    s.add_argument(
        "--closing-time", required=True, help="ISO 8601 closing time (UTC if no offset)."
    )
    s.add_argument(
        "--class",
        dest="lottery_class",
        default="standard",
        help="Lottery class: daily, weekly or standard.",
    )
    s.add_argument("--winners", type=int, default=1, help="Number of winners.")
    s.set_defaults(func=cmd_schedule)

    c = sub.add_parser("close", help="Freeze the participant pool.")
    c.add_argument("--lottery-id", required=True)
    c.add_argument("--participants", required=True, help="Path to participants JSON.")
    c.set_defaults(func=cmd_close)

    d = sub.add_parser("draw", help="Run the draw on the committed block.")
    d.add_argument("--lottery-id", required=True)
    d.add_argument(
        "--block-file",
        default=None,
        help="Saved indexer block JSON to draw from; its hash must match the chain.",
    )
    d.add_argument("--out", default=None, help="Also write a standalone audit JSON.")
    d.set_defaults(func=cmd_draw)

    v = sub.add_parser("verify", help="Replay a draw and check every winner.")
    group = v.add_mutually_exclusive_group(required=True)
    group.add_argument("--lottery-id")
    group.add_argument("--audit", help="Path to an audit JSON written by `draw --out`.")
    v.add_argument(
        "--recheck-chain",
        action="store_true",
        help="Also compare the stored block hash with the indexer.",
    )
    v.set_defaults(func=cmd_verify)

    return p


def run(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    log = logging.getLogger("bitcoin_lottery")
    try:
        return args.func(args)
    except BlockUnavailable as e:
        log.error("Not ready: %s", e)
        return EXIT_NOT_READY
    except NetworkFailure as e:
        log.error("Indexers exhausted, operator intervention needed: %s", e)
        return EXIT_NETWORK
    except LotteryError as e:
        log.error("%s", e)
        return EXIT_BAD_INPUT


def main() -> None:
    raise SystemExit(run())
