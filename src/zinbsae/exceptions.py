"""
Exception hierarchy for ZINB small-area estimation.

Every error raised by the package derives from ZinbSAEError, and each
concrete error also derives from the builtin it specialises so callers
can keep catching ValueError / RuntimeError.
"""

__all__ = [
    "ZinbSAEError",
    "ConfigError",
    "InvalidInputError",
    "SamplingError",
]


class ZinbSAEError(Exception):
    """Base class for all estimation errors."""

    pass


class ConfigError(ZinbSAEError, ValueError):
    """Invalid estimation option (wrong length, non-positive value, too few updates)."""

    pass


class InvalidInputError(ZinbSAEError, ValueError):
    """Input areas cannot be modelled (missing covariates, bad outcomes)."""

    pass


class SamplingError(ZinbSAEError, RuntimeError):
    """The MCMC engine failed to build or run the model."""

    pass
