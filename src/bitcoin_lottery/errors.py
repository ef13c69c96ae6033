from __future__ import annotations


class LotteryError(RuntimeError):
    """Base class for every failure raised by this package."""


class NetworkFailure(LotteryError):
    """Indexer unreachable or misbehaving after all retries and fallbacks."""


class MalformedResponse(NetworkFailure):
    """Indexer answered, but with data that failed validation."""


class BlockUnavailable(LotteryError):
    """The requested block has not been mined yet. Retry later."""

    def __init__(self, height: int, tip: int | None = None) -> None:
        self.height = height
        self.tip = tip
        if tip is None:
            msg = f"Block #{height} is not available yet."
        else:
            msg = f"Block #{height} is not mined yet (chain tip is #{tip})."
        super().__init__(msg)


class InvalidSchedule(LotteryError):
    pass


class InvalidWinnerCount(LotteryError):
    pass


class InvalidBound(LotteryError):
    pass


class LotteryNotFound(LotteryError):
    pass


class LotteryStateError(LotteryError):
    """The lottery is not in a state that allows the requested operation."""


class CommitmentImmutable(LotteryStateError):
    pass


class DrawAlreadyExecuted(LotteryStateError):
    pass


class DrawInProgress(LotteryStateError):
    pass


class InvalidBlockHeight(LotteryError):
    pass
