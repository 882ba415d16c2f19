"""Exception and warning types raised by the reconstruction pipeline."""


class ReconstructionError(Exception):
    """Base class for all errors raised by mpireco."""


class ConfigurationError(ReconstructionError, ValueError):
    """Missing paths or handles, unknown options, inconsistent grids or patch counts."""


class EmptySelectionError(ReconstructionError, ValueError):
    """The frequency selection is empty after intersecting all filters."""


class ShapeMismatchError(ReconstructionError, ValueError):
    """Measurement and system matrix (or patch layout) disagree in size."""


class SolverFailure(ReconstructionError, RuntimeError):
    """The linear solver raised or returned an unusable result."""


class NonConvergenceError(SolverFailure):
    """The linear solver diverged (non-finite iterate)."""


class InterpolationWarning(UserWarning):
    """The system matrix is resampled onto a grid that differs from the calibration grid."""
