from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

import httpx

from .errors import BlockUnavailable, InvalidBlockHeight, MalformedResponse, NetworkFailure
from .models import BlockRecord
from .project_constants import (
    AVG_BLOCK_SECONDS,
    BLOCK_HASH_RE,
    GENESIS_TIMESTAMP,
    MAX_BLOCK_HEIGHT,
    MIN_PLAUSIBLE_TIP,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Wait after failed attempt number `attempt` (1-based); grows linearly."""
        return self.base_delay_s * attempt

    def delays(self) -> List[float]:
        return [self.delay_for(a) for a in range(1, self.max_attempts)]


def call_with_retry(
    policy: RetryPolicy,
    fn: Callable[[], T],
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `fn` up to policy.max_attempts times.

    Only NetworkFailure is retried. BlockUnavailable is an answer, not a
    failure, so it propagates on the first occurrence.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[NetworkFailure] = None
    for attempt in range(1, attempts + 1):
        try:
            log.debug("%s (attempt %d/%d)", description, attempt, attempts)
            return fn()
        except BlockUnavailable:
            raise
        except NetworkFailure as e:
            last_error = e
            log.warning("%s failed (attempt %d/%d): %s", description, attempt, attempts, e)
            if attempt < attempts:
                sleep(policy.delay_for(attempt))
    raise NetworkFailure(
        f"{description} failed after {attempts} attempts: {last_error}"
    ) from last_error


@dataclass(frozen=True)
class HeightReading:
    height: int
    source: str
    # True when estimated from the clock: usable for scheduling, never as randomness
    degraded: bool = False


@dataclass(frozen=True)
class BlockStatus:
    height: int
    tip: int
    exists: bool
    confirmations: int
    estimated_wait_minutes: int
    degraded: bool = False


def estimate_height(now_s: float) -> int:
    return int((now_s - GENESIS_TIMESTAMP) // AVG_BLOCK_SECONDS)


def validate_height(height: Any) -> int:
    if isinstance(height, bool) or not isinstance(height, int):
        raise InvalidBlockHeight(f"Block height must be an integer, got {height!r}.")
    if height < 0 or height >= MAX_BLOCK_HEIGHT:
        raise InvalidBlockHeight(
            f"Block height {height} outside [0, {MAX_BLOCK_HEIGHT})."
        )
    return height


def _require_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedResponse(f"Block field {key!r} missing or not an integer: {value!r}")
    return value


def _optional(data: Mapping[str, Any], key: str, cast: Callable[[Any], Any]) -> Any:
    value = data.get(key)
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise MalformedResponse(f"Block field {key!r} has invalid value {value!r}")


def parse_block(
    data: Any,
    expected_height: Optional[int] = None,
    expected_hash: Optional[str] = None,
    explorer_url: Optional[str] = None,
    used_fallback: bool = False,
    fetched_at: Optional[str] = None,
) -> BlockRecord:
    """Strict parse of an Esplora `/block/{hash}` document into a BlockRecord."""
    if not isinstance(data, dict):
        raise MalformedResponse(f"Block data is not a JSON object: {type(data).__name__}")

    block_id = data.get("id")
    if not isinstance(block_id, str) or not BLOCK_HASH_RE.fullmatch(block_id.lower()):
        raise MalformedResponse(f"Block id is not a 64-char hex hash: {block_id!r}")
    block_id = block_id.lower()

    height = _require_int(data, "height")
    if height < 0 or height >= MAX_BLOCK_HEIGHT:
        raise MalformedResponse(f"Block height {height} outside sane range.")
    timestamp = _require_int(data, "timestamp")

    if expected_hash is not None and block_id != expected_hash:
        raise MalformedResponse(f"Asked for block {expected_hash}, got {block_id}.")
    if expected_height is not None and height != expected_height:
        raise MalformedResponse(f"Asked for height {expected_height}, got {height}.")

    return BlockRecord(
        height=height,
        hash=block_id,
        timestamp=timestamp,
        merkle_root=_optional(data, "merkle_root", str),
        previous_block_hash=_optional(data, "previousblockhash", str),
        version=_optional(data, "version", int),
        bits=_optional(data, "bits", int),
        nonce=_optional(data, "nonce", int),
        difficulty=_optional(data, "difficulty", float),
        size=_optional(data, "size", int),
        weight=_optional(data, "weight", int),
        tx_count=_optional(data, "tx_count", int),
        verification_url=f"{explorer_url}/block/{block_id}" if explorer_url else None,
        fetched_at=fetched_at,
        used_fallback=used_fallback,
    )


class BlockchainClient:
    """
    Esplora-style indexer client (blockstream.info / mempool.space API).

    Every lookup goes to the primary endpoint first, retried per the
    RetryPolicy, then to the fallback endpoint. Endpoints are tried one
    after the other, never raced.
    """

    def __init__(
        self,
        primary_url: str,
        fallback_url: Optional[str] = None,
        explorer_url: Optional[str] = None,
        timeout_s: float = 30.0,
        retry: Optional[RetryPolicy] = None,
        cache_ttl_s: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.primary_url = primary_url.rstrip("/")
        self.fallback_url = fallback_url.rstrip("/") if fallback_url else None
        self.explorer_url = explorer_url.rstrip("/") if explorer_url else None
        self.retry = retry or RetryPolicy()
        self.cache_ttl_s = cache_ttl_s
        self._sleep = sleep
        self._clock = clock
        self._cache: Dict[int, Tuple[float, BlockRecord]] = {}
        self.client = httpx.Client(
            timeout=timeout_s,
            transport=transport,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )

    @classmethod
    def from_settings(cls, settings, **kwargs: Any) -> "BlockchainClient":
        return cls(
            primary_url=settings.primary_api,
            fallback_url=settings.fallback_api,
            explorer_url=settings.explorer_url,
            timeout_s=settings.timeout_s,
            retry=RetryPolicy(settings.max_retries, settings.retry_delay_s),
            **kwargs,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "BlockchainClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _endpoints(self) -> List[Tuple[str, bool]]:
        out = [(self.primary_url, False)]
        if self.fallback_url and self.fallback_url != self.primary_url:
            out.append((self.fallback_url, True))
        return out

    def _get(self, base: str, path: str) -> httpx.Response:
        url = f"{base}{path}"
        try:
            resp = self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NetworkFailure(f"GET {url}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NetworkFailure(f"GET {url}: {e!r}") from e
        return resp

    def _get_json(self, base: str, path: str) -> Any:
        resp = self._get(base, path)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"GET {base}{path}: body is not JSON") from e

    def _with_fallback(self, description: str, fn: Callable[[str, bool], T]) -> T:
        errors: List[str] = []
        for base, is_fallback in self._endpoints():
            if is_fallback:
                log.warning("Primary indexer failed, trying fallback %s", base)
            try:
                return call_with_retry(
                    self.retry,
                    lambda: fn(base, is_fallback),
                    f"{description} via {base}",
                    sleep=self._sleep,
                )
            except NetworkFailure as e:
                errors.append(str(e))
        raise NetworkFailure(f"{description}: all indexers failed. " + " | ".join(errors))

    # Chain tip

    def _fetch_tip(self, base: str, _is_fallback: bool = False) -> int:
        text = self._get(base, "/blocks/tip/height").text.strip()
        try:
            height = int(text)
        except ValueError:
            raise MalformedResponse(f"Tip height is not an integer: {text[:40]!r}")
        if height < MIN_PLAUSIBLE_TIP or height >= MAX_BLOCK_HEIGHT:
            raise MalformedResponse(f"Implausible tip height received: {height}")
        return height

    def get_tip_height(self) -> int:
        """Chain tip from an indexer. Raises NetworkFailure; never estimates."""
        return self._with_fallback("Tip height lookup", self._fetch_tip)

    def get_current_height(self) -> HeightReading:
        """
        Chain tip, falling back to a clock-based estimate when every
        indexer is down. The estimate is flagged degraded and is only fit
        for scheduling margins.
        """
        try:
            height = self.get_tip_height()
        except NetworkFailure as e:
            estimated = estimate_height(self._clock())
            log.warning("All indexers failed (%s); using estimated height %d", e, estimated)
            return HeightReading(estimated, source="estimate", degraded=True)
        log.info("Current Bitcoin block height: %d", height)
        return HeightReading(height, source="indexer")

    # Blocks

    def _fetch_block(self, base: str, height: int, used_fallback: bool) -> BlockRecord:
        block_hash = self._fetch_block_hash(base, height).strip().lower()
        if not BLOCK_HASH_RE.fullmatch(block_hash):
            raise MalformedResponse(
                f"Invalid block hash received for height {height}: {block_hash[:80]!r}"
            )
        data = self._get_json(base, f"/block/{block_hash}")
        return parse_block(
            data,
            expected_height=height,
            expected_hash=block_hash,
            explorer_url=self.explorer_url,
            used_fallback=used_fallback,
            fetched_at=datetime.now(timezone.utc).isoformat(),
        )

    def _fetch_block_hash(self, base: str, height: int) -> str:
        url = f"{base}/block-height/{height}"
        try:
            resp = self.client.get(url)
        except httpx.HTTPError as e:
            raise NetworkFailure(f"GET {url}: {e!r}") from e
        if resp.status_code == 404:
            raise BlockUnavailable(height)
        if resp.is_error:
            raise NetworkFailure(f"GET {url}: HTTP {resp.status_code}")
        return resp.text

    def get_block(self, height: int) -> BlockRecord:
        """
        Fetch and validate block `height`.

        Raises BlockUnavailable when the block is not mined yet, and
        NetworkFailure when the indexers cannot produce a valid block.
        """
        validate_height(height)

        cached = self._cache.get(height)
        if cached and cached[0] > self._clock():
            log.debug("Block #%d served from cache", height)
            return cached[1]

        tip = self.get_tip_height()
        if height > tip:
            raise BlockUnavailable(height, tip)

        log.info("Fetching Bitcoin block #%d", height)
        record = self._with_fallback(
            f"Block #{height} lookup",
            lambda base, is_fallback: self._fetch_block(base, height, is_fallback),
        )
        log.info(
            "Block #%d hash=%s... timestamp=%d fallback=%s",
            record.height,
            record.hash[:16],
            record.timestamp,
            record.used_fallback,
        )
        if self.cache_ttl_s > 0:
            self._cache[height] = (self._clock() + self.cache_ttl_s, record)
        return record

    def is_block_confirmed(self, height: int) -> BlockStatus:
        validate_height(height)
        reading = self.get_current_height()
        exists = reading.height >= height
        status = BlockStatus(
            height=height,
            tip=reading.height,
            exists=exists,
            confirmations=reading.height - height + 1 if exists else 0,
            estimated_wait_minutes=(
                0 if exists else (height - reading.height) * AVG_BLOCK_SECONDS // 60
            ),
            degraded=reading.degraded,
        )
        log.debug("Confirmation check: %s", status)
        return status

    def get_recent_blocks(self, limit: int = 5) -> List[BlockRecord]:
        def fetch(base: str, is_fallback: bool) -> List[BlockRecord]:
            data = self._get_json(base, "/blocks")
            if not isinstance(data, list):
                raise MalformedResponse("Recent blocks response is not a list")
            return [
                parse_block(item, explorer_url=self.explorer_url, used_fallback=is_fallback)
                for item in data[:limit]
            ]

        return self._with_fallback("Recent blocks lookup", fetch)


def load_block_from_file(path: str, height_hint: Optional[int] = None) -> BlockRecord:
    """
    Read a block saved from an indexer, for offline draws and audits.

    Supports:
    1) An Esplora block object: {"id": "...", "height": 123, "timestamp": ...}
    2) {"block": {...}} wrapping either an Esplora object or a BlockRecord dict
    3) {"blocks": {"123": {...}}} (needs height_hint)
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            j = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"Block file {path} is not valid JSON: {e}")

    if isinstance(j, dict) and isinstance(j.get("block"), dict):
        j = j["block"]
    elif isinstance(j, dict) and isinstance(j.get("blocks"), dict):
        if height_hint is None:
            raise MalformedResponse("Block file holds several blocks; a height is required.")
        j = j["blocks"].get(str(int(height_hint)))

    # BlockRecord.to_dict() output uses "hash"; Esplora uses "id"
    if isinstance(j, dict) and "id" not in j and "hash" in j:
        j = dict(j, id=j["hash"], previousblockhash=j.get("previous_block_hash"))

    return parse_block(j, expected_height=height_hint)
