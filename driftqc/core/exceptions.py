"""
Exception hierarchy for drift correction and feature quality operations.

Structural problems (too few QC injections, missing sample classes, malformed
input) raise and abort the call. Per-column numerical failures of the spline
fit are raised as ``FitConvergenceError`` inside the fit and collected by the
correction service instead of aborting the matrix.
"""

from typing import Optional


class DriftQCError(Exception):
    """Base exception for all driftqc operations."""

    pass


class StudyMatrixError(DriftQCError):
    """Raised when an input table violates the study matrix layout."""

    pass


class InvalidParameterError(DriftQCError, ValueError):
    """Raised when correction or filter parameters are out of range."""

    pass


class InsufficientQCError(DriftQCError):
    """A batch lacks enough QC injections for the requested operation."""

    def __init__(self, batch, required: int, available: int, detail: str = ""):
        self.batch = batch
        self.required = required
        self.available = available
        message = (
            f"Batch '{batch}' has {available} QC sample(s); "
            f"at least {required} required"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class FitConvergenceError(DriftQCError):
    """
    A smoothing spline fit failed numerically.

    Scoped to one (batch, feature) pair. ``candidate`` and ``held_out`` are set
    when the failure happened inside leave-one-out cross-validation.
    """

    def __init__(
        self,
        reason: str,
        batch=None,
        feature: Optional[str] = None,
        candidate: Optional[float] = None,
        held_out: Optional[int] = None,
    ):
        self.reason = reason
        self.batch = batch
        self.feature = feature
        self.candidate = candidate
        self.held_out = held_out
        super().__init__(self._format())

    def _format(self) -> str:
        where = []
        if self.batch is not None:
            where.append(f"batch '{self.batch}'")
        if self.feature is not None:
            where.append(f"feature '{self.feature}'")
        if self.candidate is not None:
            where.append(f"p={self.candidate:g}")
        if self.held_out is not None:
            where.append(f"held-out point {self.held_out}")
        if where:
            return f"Spline fit failed for {', '.join(where)}: {self.reason}"
        return f"Spline fit failed: {self.reason}"

    def scoped(self, batch, feature: str) -> "FitConvergenceError":
        """Return a copy of this error attributed to a batch and feature."""
        return FitConvergenceError(
            self.reason,
            batch=batch,
            feature=feature,
            candidate=self.candidate,
            held_out=self.held_out,
        )


class InsufficientDataError(DriftQCError):
    """Metrics were requested on a matrix missing Sample or QC rows."""

    pass
