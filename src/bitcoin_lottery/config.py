from __future__ import annotations

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

from .project_constants import (
    DEFAULT_MARGIN_PERCENTS,
    DEFAULT_MAX_MARGIN_BLOCKS,
    DEFAULT_MIN_MARGIN_BLOCKS,
)
from .schedule import MarginPolicy

DEFAULT_PRIMARY_API = "https://blockstream.info/api"
# Must serve the same chain as the primary; a testnet fallback would hand back a foreign hash.
DEFAULT_FALLBACK_API = "https://mempool.space/api"
DEFAULT_EXPLORER_URL = "https://blockstream.info"


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.")


@dataclass(frozen=True)
class Settings:
    primary_api: str = DEFAULT_PRIMARY_API
    fallback_api: str = DEFAULT_FALLBACK_API
    explorer_url: str = DEFAULT_EXPLORER_URL
    timeout_s: float = 30.0
    max_retries: int = 3
    retry_delay_s: float = 2.0
    margin_policy: MarginPolicy = field(default_factory=MarginPolicy)
    store_dir: str = "lotteries"

    @staticmethod
    def from_env(
        primary_api_override: str | None = None,
        timeout_override: float | None = None,
    ) -> "Settings":
        load_dotenv()

        percents = {
            "daily": _env_number(
                "DAILY_LOTTERY_MARGIN_PERCENT", DEFAULT_MARGIN_PERCENTS["daily"]
            ),
            "weekly": _env_number(
                "WEEKLY_LOTTERY_MARGIN_PERCENT", DEFAULT_MARGIN_PERCENTS["weekly"]
            ),
            "standard": _env_number(
                "STANDARD_LOTTERY_MARGIN_PERCENT", DEFAULT_MARGIN_PERCENTS["standard"]
            ),
        }
        policy = MarginPolicy(
            percents=percents,
            min_blocks=_env_number(
                "MIN_BLOCK_SAFETY_MARGIN", DEFAULT_MIN_MARGIN_BLOCKS, int
            ),
            max_blocks=_env_number(
                "MAX_BLOCK_SAFETY_MARGIN", DEFAULT_MAX_MARGIN_BLOCKS, int
            ),
        )

        # If user provides --api-url / --timeout, trust them.
        primary = primary_api_override or os.getenv("BITCOIN_API_PRIMARY", "").strip()
        timeout = timeout_override or _env_number("BITCOIN_REQUEST_TIMEOUT", 30.0)

        return Settings(
            primary_api=(primary or DEFAULT_PRIMARY_API).rstrip("/"),
            fallback_api=(
                os.getenv("BITCOIN_API_FALLBACK", "").strip() or DEFAULT_FALLBACK_API
            ).rstrip("/"),
            explorer_url=(
                os.getenv("BITCOIN_EXPLORER_URL", "").strip() or DEFAULT_EXPLORER_URL
            ).rstrip("/"),
            timeout_s=timeout,
            max_retries=_env_number("BITCOIN_MAX_RETRIES", 3, int),
            retry_delay_s=_env_number("BITCOIN_RETRY_DELAY", 2.0),
            margin_policy=policy,
            store_dir=os.getenv("LOTTERY_STORE_DIR", "").strip() or "lotteries",
        )
