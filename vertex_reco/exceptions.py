"""Exception hierarchy for vertex fitting."""

from __future__ import annotations

from typing import Optional


class VertexingError(Exception):
    """Base exception for all vertex_reco errors."""

    pass


class SingularMatrixError(VertexingError):
    """Raised when a matrix that must be inverted is numerically singular."""

    def __init__(self, message: str, matrix_name: Optional[str] = None):
        self.matrix_name = matrix_name
        super().__init__(message)


class LinearizationError(VertexingError):
    """Raised when a track cannot be linearized around a reference point."""

    def __init__(self, message: str, track_id: Optional[int] = None):
        self.track_id = track_id
        super().__init__(message)


# Name used by callers that think of the collaborator as a propagator.
PropagationFailure = LinearizationError


class ConfigError(VertexingError):
    """Raised when fitter, linearizer or run configuration is invalid."""

    pass
