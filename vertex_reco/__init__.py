__all__ = [
    "PerigeeTrack", "LinearizedTrack", "VertexConstraint", "TrackAtVertex", "Vertex",
    "VertexingError", "SingularMatrixError", "LinearizationError", "PropagationFailure",
    "ConfigError",
    "MathBackend",
    "TrackLinearizer", "HelicalTrackLinearizer", "StraightLineLinearizer",
    "BilloirTrack", "BilloirVertex", "FullBilloirVertexFitter",
    "BilloirFitterConfig", "LinearizerConfig", "SimulationConfig", "load_config",
    "make_vertex_tracks", "make_event",
    "group_tracks_by_z0",
    "VertexFitResult", "fit_vertices",
    "vertex_residuals", "vertex_pulls", "summarize_fits",
]

# Event data model
from .event_data import PerigeeTrack, LinearizedTrack, VertexConstraint, TrackAtVertex, Vertex

# Errors
from .exceptions import (
    VertexingError,
    SingularMatrixError,
    LinearizationError,
    PropagationFailure,
    ConfigError,
)

# Numerical kernels
from .vertex_kernels import MathBackend

# Track models
from .linearizers import TrackLinearizer, HelicalTrackLinearizer, StraightLineLinearizer

# Fitter
from .fitters import BilloirTrack, BilloirVertex, FullBilloirVertexFitter

# Configuration
from .config import BilloirFitterConfig, LinearizerConfig, SimulationConfig, load_config

# Synthetic events, grouping, batch fitting, metrics
from .simulate import make_vertex_tracks, make_event
from .grouping import group_tracks_by_z0
from .parallel import VertexFitResult, fit_vertices
from .metrics import vertex_residuals, vertex_pulls, summarize_fits

# Plotting is imported on demand (vertex_reco.plotting) so the CLI can pick a
# matplotlib backend first.
