from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx
import pytest

from bitcoin_lottery.blockchain import BlockchainClient, RetryPolicy
from bitcoin_lottery.models import BlockRecord, Participant
from bitcoin_lottery.project_constants import AVG_BLOCK_SECONDS, GENESIS_TIMESTAMP

PRIMARY = "https://primary.test/api"
FALLBACK = "https://fallback.test/api"
EXPLORER = "https://explorer.test"

BLOCK_HASH = ("00000000000000000abc" + "0123456789abcdef" * 3)[:64]
TARGET_HEIGHT = 800156
TIP_HEIGHT = 800200

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def esplora_block(height: int, block_hash: str) -> Dict[str, Any]:
    return {
        "id": block_hash,
        "height": height,
        "version": 536870912,
        "timestamp": 1760788800,
        "tx_count": 3120,
        "size": 1587432,
        "weight": 3993012,
        "merkle_root": "ab" * 32,
        "previousblockhash": "00" * 32,
        "mediantime": 1760786400,
        "nonce": 2083236893,
        "bits": 386043996,
        "difficulty": 150839487445890.5,
    }


class FakeIndexer:
    """httpx.MockTransport handler serving canned Esplora routes."""

    def __init__(self) -> None:
        self.routes: Dict[str, Any] = {}
        self.calls: List[str] = []

    def set(self, url: str, body: Any, status: int = 200) -> None:
        self.routes[url] = (status, body)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def serve_block(self, base: str, height: int, block_hash: str, tip: int = TIP_HEIGHT) -> None:
        self.set(f"{base}/blocks/tip/height", str(tip))
        self.set(f"{base}/block-height/{height}", block_hash)
        self.set(f"{base}/block/{block_hash}", esplora_block(height, block_hash))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="Block not found")
        if isinstance(route, Exception):
            raise route
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(indexer, sleeps):
    c = BlockchainClient(
        PRIMARY,
        FALLBACK,
        explorer_url=EXPLORER,
        retry=RetryPolicy(max_attempts=3, base_delay_s=2.0),
        transport=httpx.MockTransport(indexer),
        sleep=sleeps.append,
        clock=lambda: GENESIS_TIMESTAMP + 800000 * AVG_BLOCK_SECONDS,
    )
    yield c
    c.close()


@pytest.fixture
def block():
    return BlockRecord(
        height=TARGET_HEIGHT,
        hash=BLOCK_HASH,
        timestamp=1760788800,
        verification_url=f"{EXPLORER}/block/{BLOCK_HASH}",
    )


@pytest.fixture
def participants():
    return [
        Participant("uid-a", "A", 1),
        Participant("uid-b", "B", 2),
        Participant("uid-c", "C", 3),
        Participant("uid-d", "D", 4),
        Participant("uid-e", "E", 5),
    ]


def make_participants(n: int) -> List[Participant]:
    return [Participant(f"uid-{i:03d}", f"user{i}", i + 1) for i in range(n)]
