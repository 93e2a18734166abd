"""
Exception hierarchy for tweedie-screen.

Configuration-level errors are fatal and raised before any model is fit.
Per-feature problems are recorded on the feature's result instead.
"""


class TweedieScreenError(Exception):
    """Base class for all tweedie-screen errors."""
    pass


class FatalConfigError(TweedieScreenError, ValueError):
    """Raised when the model specification cannot be applied to the data."""
    pass


class EmptyIntersectionError(FatalConfigError):
    """Raised when the feature and metadata tables share no samples."""
    pass


class MissingOffsetDataError(TweedieScreenError):
    """Raised when offsets are requested but cannot be computed."""
    pass


class PerFeatureFitFailure(TweedieScreenError):
    """Raised by a model fitter when a single fit does not converge.

    Never propagates past the per-feature boundary.
    """
    pass
