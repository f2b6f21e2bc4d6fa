"""Error kinds reported by :mod:`ranklda_jax`."""


class RankLDAError(Exception):
    """Base class for every error raised by the package."""


class MalformedInputError(RankLDAError, ValueError):
    """Unparsable or out-of-range input (bad numbers, ids beyond the vocabulary)."""


class DimensionMismatchError(RankLDAError, ValueError):
    """Shapes of a model, a corpus or a parameter vector disagree."""


class NonConvergenceError(RankLDAError, RuntimeError):
    """A numerical solver produced non-finite or infeasible iterates."""


__all__ = [
    "RankLDAError",
    "MalformedInputError",
    "DimensionMismatchError",
    "NonConvergenceError",
]
