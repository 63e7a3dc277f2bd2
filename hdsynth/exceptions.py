"""Custom exception classes for the hdsynth library."""

class HDSynthError(Exception):
    """Base class for all custom exceptions in the hdsynth library."""
    pass

class HDSynthConfigError(HDSynthError):
    """Exception raised for errors in configuration."""
    pass

class HDSynthDataError(HDSynthError):
    """Exception raised for errors related to input data."""
    pass

class HDSynthEstimationError(HDSynthError):
    """Exception raised for errors during the estimation process."""
    pass

class HDSynthInfeasibleError(HDSynthEstimationError):
    """Exception raised when no balancing tolerance in the searched range is feasible.

    Carries a machine-readable ``reason`` tag together with the search range
    so callers can tell an infeasible balance apart from a solver crash.
    """

    def __init__(self, message, reason="infeasible_balance", lo=None, hi=None, by=None):
        super().__init__(message)
        self.reason = reason
        self.lo = lo
        self.hi = hi
        self.by = by

class HDSynthPlottingError(HDSynthError):
    """Exception raised for errors during plot generation."""
    pass
