"""Exception hierarchy for the acquisition engine."""

from __future__ import annotations


class AudioEngineError(Exception):
    """Base class for every error the engine surfaces to callers."""


class InvalidSourceId(AudioEngineError, ValueError):
    pass


class ExtractionError(AudioEngineError):
    """A single extraction attempt failed.

    ``strategy`` names the strategy that produced the failure and ``stderr``
    holds the tail of the tool's error stream for diagnostics.
    """

    def __init__(self, message: str, *, strategy: str | None = None, stderr: str | None = None):
        super().__init__(message)
        self.strategy = strategy
        self.stderr = stderr


class StrategyTimeout(ExtractionError):
    pass


class AntiBotBlock(ExtractionError):
    pass


class EmptyOutput(ExtractionError):
    pass


class StrategyFailed(ExtractionError):
    pass


class ExtractionExhausted(ExtractionError):
    """Every strategy failed; ``last_error`` is the final attempt's failure."""

    def __init__(self, source_id: str, last_error: ExtractionError | None):
        detail = str(last_error) if last_error is not None else "no strategies configured"
        super().__init__(
            f"All extraction strategies failed for {source_id}: {detail}",
            strategy=getattr(last_error, "strategy", None),
            stderr=getattr(last_error, "stderr", None),
        )
        self.source_id = source_id
        self.last_error = last_error

    @property
    def timed_out(self) -> bool:
        return isinstance(self.last_error, StrategyTimeout)


class NoSearchResults(ExtractionError):
    pass


class SearchFailed(ExtractionError):
    pass
