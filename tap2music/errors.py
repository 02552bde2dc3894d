"""
Exception hierarchy shared by every layer of the package.

The engine never swallows these: a load or self-test failure must reach the
surrounding application as "engine unavailable" rather than turning into a
silently wrong prediction.
"""


class Tap2MusicError(Exception):
    """Base class for all package errors."""


class LoadError(Tap2MusicError):
    """A checkpoint manifest, parameter shard or reference trace is missing or malformed."""


class SelfTestError(Tap2MusicError):
    """The forward pass disagrees with the recorded reference trace."""

    def __init__(self, message: str, total_error: float = float("nan")):
        super().__init__(message)
        self.total_error = total_error


class VocabularyRangeError(Tap2MusicError, IndexError):
    """A pitch or hand index fell outside its embedding table (caller bug)."""


class EngineStateError(Tap2MusicError, RuntimeError):
    """An operation was attempted in a lifecycle state that does not allow it."""
