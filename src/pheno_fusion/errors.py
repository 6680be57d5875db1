"""Exception hierarchy for the phenology fusion engine."""


class PhenoFusionError(Exception):
    """Base class for engine errors."""


class ProviderError(PhenoFusionError):
    """An external data collaborator failed, timed out or returned garbage."""


class CalibrationError(PhenoFusionError):
    """Numerical degeneracy while training a SAR-NDVI calibration model."""


class PersistenceError(PhenoFusionError):
    """The record store rejected a write."""


class ShortCircuitViolation(PhenoFusionError):
    """A step tried to write agronomic fields after the run short-circuited."""


class FieldBusyError(PhenoFusionError):
    """A pipeline run for this field id is already in flight."""
