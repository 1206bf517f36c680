r"""
Synthetic vertices and tracks for studies and tests.

Tracks are generated *at* the vertex with momentum
:math:`(\phi, \theta, q/p)` and expressed as perigee parameters about a
reference point through the same analytic track model the fit uses
(:meth:`~vertex_reco.linearizers.TrackLinearizer.perigee_parameters`), so a
noise-free event is an exact solution of the vertex fit.

Kinematics
----------
With :math:`\eta` the pseudorapidity and :math:`p_T` the transverse momentum,

.. math::

    \theta = 2\arctan e^{-\eta}, \qquad
    p = p_T / \sin\theta, \qquad
    q/p = \pm 1/p.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from vertex_reco.config import SimulationConfig
from vertex_reco.event_data import PerigeeTrack
from vertex_reco.linearizers import HelicalTrackLinearizer, StraightLineLinearizer, TrackLinearizer

logger = logging.getLogger(__name__)

__all__ = ["track_covariance", "make_vertex_tracks", "make_event"]


def track_covariance(qop: float, resolution: Sequence[float]) -> np.ndarray:
    r"""
    Diagonal perigee covariance.

    ``resolution`` holds the absolute sigmas of :math:`d_0, z_0, \phi, \theta`
    and the relative sigma of :math:`q/p`:

    .. math::

        C = \operatorname{diag}(\sigma_{d_0}^2,\ \sigma_{z_0}^2,\
        \sigma_\phi^2,\ \sigma_\theta^2,\ (\sigma_{rel}\,q/p)^2).

    A zero relative sigma (or ``qop == 0``) falls back to ``1e-12`` so the
    matrix stays invertible.
    """
    s = np.asarray(resolution, dtype=np.float64)
    sig_qop = s[4] * abs(qop)
    if sig_qop == 0.0:
        sig_qop = 1e-12
    sig = np.array([s[0], s[1], s[2], s[3], sig_qop])
    sig[sig == 0.0] = 1e-12
    return np.diag(sig * sig)


def _model(B_z: float) -> TrackLinearizer:
    return HelicalTrackLinearizer(B_z=B_z) if B_z != 0.0 else StraightLineLinearizer()


def make_vertex_tracks(vertex: Sequence[float],
                       n_tracks: int,
                       rng: np.random.Generator,
                       *,
                       B_z: float = 2.0,
                       reference_point: Optional[Sequence[float]] = None,
                       pt_range: Tuple[float, float] = (0.5, 10.0),
                       eta_range: Tuple[float, float] = (-2.5, 2.5),
                       resolution: Sequence[float] = (2e-5, 5e-5, 1e-4, 1e-4, 0.01),
                       smear: bool = False,
                       first_id: int = 0) -> List[PerigeeTrack]:
    r"""
    Tracks that originate from a single vertex.

    Parameters
    ----------
    vertex : array_like, shape (3,)
        True vertex position (meters).
    n_tracks : int
    rng : numpy.random.Generator
    B_z : float, keyword-only
        Field (Tesla); ``0`` gives straight lines.
    reference_point : array_like, optional
        Perigee reference; default origin.
    pt_range, eta_range : tuple of float
        Uniform sampling ranges.
    resolution : sequence of 5 floats
        See :func:`track_covariance`.
    smear : bool
        If ``True``, parameters are drawn from :math:`\mathcal N(\mathbf{q}, C)`.
    first_id : int
        ``track_id`` of the first track; the rest are consecutive.

    Returns
    -------
    list[PerigeeTrack]
    """
    V = np.asarray(vertex, dtype=np.float64)
    ref = np.zeros(3) if reference_point is None else np.asarray(reference_point, dtype=np.float64)
    model = _model(float(B_z))

    phi = rng.uniform(-np.pi, np.pi, size=n_tracks)
    eta = rng.uniform(eta_range[0], eta_range[1], size=n_tracks)
    pt = rng.uniform(pt_range[0], pt_range[1], size=n_tracks)
    charge = rng.choice([-1.0, 1.0], size=n_tracks)
    theta = 2.0 * np.arctan(np.exp(-eta))
    qop = charge * np.sin(theta) / pt

    tracks: List[PerigeeTrack] = []
    for i in range(n_tracks):
        params = model.perigee_parameters(V, (phi[i], theta[i], qop[i]), ref)
        cov = track_covariance(qop[i], resolution)
        if smear:
            params = params + rng.normal(0.0, np.sqrt(np.diag(cov)))
        tracks.append(PerigeeTrack(params, cov, reference_point=ref.copy(), track_id=first_id + i))
    return tracks


def make_event(config: SimulationConfig,
               rng: np.random.Generator,
               *,
               B_z: float = 2.0) -> Tuple[pd.DataFrame, List[PerigeeTrack], np.ndarray]:
    r"""
    Synthetic event with several vertices drawn from the beam spot.

    Parameters
    ----------
    config : SimulationConfig
    rng : numpy.random.Generator
    B_z : float, keyword-only

    Returns
    -------
    truth : pandas.DataFrame
        One row per vertex: ``vertex_id, x, y, z, n_tracks``.
    tracks : list[PerigeeTrack]
        All tracks, ``track_id`` equal to their list index.
    labels : ndarray of int
        ``vertex_id`` of each track.
    """
    rows = []
    tracks: List[PerigeeTrack] = []
    labels: List[int] = []
    lo, hi = config.tracks_per_vertex
    for vid in range(config.n_vertices):
        pos = np.array([
            rng.normal(0.0, config.beam_sigma_xy),
            rng.normal(0.0, config.beam_sigma_xy),
            rng.normal(0.0, config.beam_sigma_z),
        ])
        n = int(rng.integers(lo, hi + 1))
        tracks.extend(make_vertex_tracks(
            pos, n, rng,
            B_z=B_z,
            pt_range=config.pt_range,
            eta_range=config.eta_range,
            resolution=config.resolution,
            smear=config.smear,
            first_id=len(tracks),
        ))
        labels.extend([vid] * n)
        rows.append({"vertex_id": vid, "x": pos[0], "y": pos[1], "z": pos[2], "n_tracks": n})

    truth = pd.DataFrame(rows, columns=["vertex_id", "x", "y", "z", "n_tracks"])
    logger.debug("simulated %d vertices with %d tracks", len(truth), len(tracks))
    return truth, tracks, np.asarray(labels, dtype=np.int64)
