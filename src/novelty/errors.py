"""
Error taxonomy for extrapolation analyses.

Fatal errors abort a single analysis run; UnmatchedPointWarning is
emitted through ``warnings`` and counted, never raised.
"""


class NoveltyError(ValueError):
    """Base class for all fatal analysis errors."""


class DimensionMismatchError(NoveltyError):
    """Attribute vectors disagree in length or in dimension names."""


class DegenerateInputError(NoveltyError):
    """Too few or affinely dependent points to span a hull."""


class InsufficientDataError(NoveltyError):
    """A performance group lacks enough valid samples to be scored."""


class InsufficientSampleError(NoveltyError):
    """Too few matched extrapolation/performance pairs to correlate."""

    def __init__(self, message: str, n_matched: int = 0):
        super().__init__(message)
        self.n_matched = n_matched


class UnmatchedPointWarning(UserWarning):
    """Points present in only one of the joined record sets."""
