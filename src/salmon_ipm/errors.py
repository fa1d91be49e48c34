"""
Error and warning taxonomy for the integrated population model pipeline.

Fatal for the whole run:
- DataAlignmentError: input series cannot be aligned
- ModelSpecError: invalid age / lag / candidate configuration

Fatal for one candidate only:
- InferenceEngineError: sampler failure or non-finite draws

Recovered locally:
- CacheCorruptionError: unreadable persisted result, triggers a refit
- NumericalUnderflowWarning: non-finite log-likelihood values, sanitized
- ConvergenceWarning: Rhat above threshold, reported alongside the ranking
"""


class IPMError(Exception):
    """Base class for all pipeline errors."""


class DataAlignmentError(IPMError):
    """Observation series are inconsistent or contain invalid quantities."""


class ModelSpecError(IPMError):
    """Age classes, covariate lags or candidate settings are inconsistent."""


class InferenceEngineError(IPMError):
    """The inference engine failed for a single candidate."""


class CacheCorruptionError(IPMError):
    """A persisted fit result exists but cannot be read."""


class NumericalUnderflowWarning(RuntimeWarning):
    """Log-likelihood values underflowed to non-finite numbers."""


class ConvergenceWarning(UserWarning):
    """Chains have not mixed (Rhat above the configured threshold)."""
