r"""
Run configuration for the vertexing pipeline.

Three dataclass blocks cover the tunable parts of a run:

- :class:`BilloirFitterConfig` for :class:`~vertex_reco.fitters.FullBilloirVertexFitter`;
- :class:`LinearizerConfig` for the track model (field strength, model choice);
- :class:`SimulationConfig` for synthetic events.

A JSON file may override any of them:

.. code-block:: json

   {
     "fitter":     {"max_iterations": 10, "convergence_tolerance": 1e-7},
     "linearizer": {"B_z": 2.0, "model": "helix"},
     "simulation": {"n_vertices": 4, "tracks_per_vertex": [5, 20]}
   }

Unknown blocks or keys raise :class:`~vertex_reco.exceptions.ConfigError`.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import orjson

from vertex_reco.exceptions import ConfigError

logger = logging.getLogger(__name__)

__all__ = [
    "BilloirFitterConfig",
    "LinearizerConfig",
    "SimulationConfig",
    "RunConfig",
    "load_config",
    "deep_update",
    "build_run_config",
]

LINEARIZER_MODELS: Tuple[str, ...] = ("helix", "straight")


@dataclass(slots=True)
class BilloirFitterConfig:
    """Fitter settings. ``convergence_tolerance=None`` keeps the full iteration budget."""
    max_iterations: int = 5
    convergence_tolerance: Optional[float] = None

    def __post_init__(self) -> None:
        if int(self.max_iterations) < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations!r}")
        self.max_iterations = int(self.max_iterations)
        if self.convergence_tolerance is not None:
            self.convergence_tolerance = float(self.convergence_tolerance)
            if self.convergence_tolerance < 0:
                raise ConfigError("convergence_tolerance must be non-negative")


@dataclass(slots=True)
class LinearizerConfig:
    """Track model: ``B_z`` in Tesla, ``model`` one of ``'helix'`` / ``'straight'``."""
    B_z: float = 2.0
    model: str = "helix"
    min_sin_theta: float = 1e-6

    def __post_init__(self) -> None:
        self.B_z = float(self.B_z)
        if self.model not in LINEARIZER_MODELS:
            raise ConfigError(f"unknown linearizer model {self.model!r}; "
                              f"expected one of {', '.join(LINEARIZER_MODELS)}")
        if not 0.0 < self.min_sin_theta < 1.0:
            raise ConfigError("min_sin_theta must lie in (0, 1)")

    def build(self):
        """Instantiate the configured :class:`~vertex_reco.linearizers.TrackLinearizer`."""
        from vertex_reco.linearizers import HelicalTrackLinearizer, StraightLineLinearizer

        if self.model == "straight":
            return StraightLineLinearizer(min_sin_theta=self.min_sin_theta)
        return HelicalTrackLinearizer(B_z=self.B_z, min_sin_theta=self.min_sin_theta)


@dataclass(slots=True)
class SimulationConfig:
    r"""
    Synthetic event settings.

    Vertex positions are drawn from a Gaussian beam spot of widths
    ``beam_sigma_xy`` / ``beam_sigma_z`` (meters). Each vertex gets a uniform
    number of tracks in ``tracks_per_vertex`` (inclusive), with :math:`p_T`
    uniform in ``pt_range`` (GeV) and :math:`\eta` uniform in ``eta_range``.
    Track parameters are smeared with ``resolution`` (per-parameter sigmas of
    :math:`d_0, z_0, \phi, \theta` and relative :math:`q/p`).
    """
    n_vertices: int = 3
    tracks_per_vertex: Tuple[int, int] = (4, 12)
    beam_sigma_xy: float = 1e-5
    beam_sigma_z: float = 0.05
    pt_range: Tuple[float, float] = (0.5, 10.0)
    eta_range: Tuple[float, float] = (-2.5, 2.5)
    resolution: Tuple[float, float, float, float, float] = (2e-5, 5e-5, 1e-4, 1e-4, 0.01)
    smear: bool = True

    def __post_init__(self) -> None:
        self.tracks_per_vertex = tuple(int(v) for v in self.tracks_per_vertex)
        self.pt_range = tuple(float(v) for v in self.pt_range)
        self.eta_range = tuple(float(v) for v in self.eta_range)
        self.resolution = tuple(float(v) for v in self.resolution)
        if self.n_vertices < 0:
            raise ConfigError("n_vertices must be non-negative")
        lo, hi = self.tracks_per_vertex
        if lo < 1 or hi < lo:
            raise ConfigError(f"invalid tracks_per_vertex {self.tracks_per_vertex!r}")
        if self.pt_range[0] <= 0 or self.pt_range[1] < self.pt_range[0]:
            raise ConfigError(f"invalid pt_range {self.pt_range!r}")
        if self.eta_range[1] < self.eta_range[0]:
            raise ConfigError(f"invalid eta_range {self.eta_range!r}")
        if len(self.resolution) != 5 or any(r < 0 for r in self.resolution):
            raise ConfigError("resolution must hold 5 non-negative sigmas")


@dataclass(slots=True)
class RunConfig:
    """All blocks of a run."""
    fitter: BilloirFitterConfig = field(default_factory=BilloirFitterConfig)
    linearizer: LinearizerConfig = field(default_factory=LinearizerConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)


_BLOCKS = {
    "fitter": BilloirFitterConfig,
    "linearizer": LinearizerConfig,
    "simulation": SimulationConfig,
}


def deep_update(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    r"""
    Recursively merge dictionaries (without side effects).

    Parameters
    ----------
    base : dict
        Base dictionary.
    overrides : dict
        Overrides (recursively merged).

    Returns
    -------
    dict
        New dictionary where nested dicts are merged and scalars/containers from
        ``overrides`` replace those in ``base``.
    """
    out = dict(base)
    for k, v in overrides.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_update(out[k], v)
        else:
            out[k] = v
    return out


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    r"""
    Load a JSON configuration with :mod:`orjson`.

    Parameters
    ----------
    config_path : str or pathlib.Path

    Returns
    -------
    dict
        Parsed configuration (top level must be an object).

    Raises
    ------
    ConfigError
        If the file cannot be read or parsed.
    """
    path = Path(config_path)
    try:
        data = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level JSON value must be an object")
    return data


def _make_block(name: str, cls, values: Any):
    if not isinstance(values, Mapping):
        raise ConfigError(f"config block {name!r} must be an object")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"unknown key(s) in {name!r}: {', '.join(unknown)}")
    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid {name!r} block: {e}") from e


def build_run_config(raw: Optional[Mapping[str, Any]] = None) -> RunConfig:
    """Validate a raw (parsed JSON) mapping into a :class:`RunConfig`."""
    raw = raw or {}
    unknown = sorted(set(raw) - set(_BLOCKS))
    if unknown:
        raise ConfigError(f"unknown config block(s): {', '.join(unknown)}")
    blocks = {name: _make_block(name, cls, raw.get(name, {})) for name, cls in _BLOCKS.items()}
    logger.debug("run config: %s", blocks)
    return RunConfig(**blocks)
