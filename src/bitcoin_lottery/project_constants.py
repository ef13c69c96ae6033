"""
Chain-level parameters for the Bitcoin-block lottery draw.

These values are part of the public rules of every draw.
Changing them changes which winners a given block produces and MUST be
publicly announced.
"""

import re

# Bitcoin genesis block timestamp (unix seconds)
GENESIS_TIMESTAMP = 1231006505

# Target inter-block interval: 10 minutes
AVG_BLOCK_SECONDS = 600

# Any mainnet tip below this is an indexer bug, not the real chain
MIN_PLAUSIBLE_TIP = 700_000

# Sanity ceiling for block heights
MAX_BLOCK_HEIGHT = 10_000_000

# Block hashes are 32 bytes, lowercase hex encoded
BLOCK_HASH_LENGTH = 64
BLOCK_HASH_RE = re.compile(r"[0-9a-f]{64}")

# Fixed disambiguating literal appended to every position seed
SEED_SALT = "PROVABLY_FAIR_V1"

# Label stored with every verification payload
ALGORITHM = "rolling-hash32(block_hash + position_seed) mod pool_size"

# Commitment safety margin defaults (percent of blocks until close)
DEFAULT_MARGIN_PERCENTS = {
    "daily": 5.0,
    "weekly": 10.0,
    "standard": 10.0,
}
DEFAULT_LOTTERY_CLASS = "standard"
DEFAULT_MIN_MARGIN_BLOCKS = 1
DEFAULT_MAX_MARGIN_BLOCKS = 12
