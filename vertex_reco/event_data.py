from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

import numpy as np
from scipy.stats import chi2 as _chi2_dist

__all__ = [
    "PerigeeTrack",
    "LinearizedTrack",
    "VertexConstraint",
    "TrackAtVertex",
    "Vertex",
    "direction_vector",
    "momentum_vector",
]

# parameter indices of the bound (perigee) vector
D0, Z0, PHI, THETA, QOP = range(5)


def _as_vec(a, n: int, name: str) -> np.ndarray:
    v = np.array(a, dtype=np.float64).reshape(-1)
    if v.shape != (n,):
        raise ValueError(f"{name} must have {n} components, got shape {np.shape(a)}")
    return v


def _as_mat(a, n: int, name: str) -> np.ndarray:
    m = np.array(a, dtype=np.float64)
    if m.shape != (n, n):
        raise ValueError(f"{name} must have shape ({n}, {n}), got {m.shape}")
    return m


def direction_vector(phi: float, theta: float) -> np.ndarray:
    r"""Unit vector :math:`(\cos\phi\sin\theta,\ \sin\phi\sin\theta,\ \cos\theta)`."""
    st = np.sin(theta)
    return np.array([np.cos(phi) * st, np.sin(phi) * st, np.cos(theta)], dtype=np.float64)


def momentum_vector(phi: float, theta: float, qop: float) -> np.ndarray:
    r"""
    Cartesian momentum :math:`\mathbf{p} = \hat{\mathbf{d}}(\phi,\theta)/|q/p|`.

    Returns the unit direction for neutral/infinite-momentum input (``qop == 0``).
    """
    d = direction_vector(phi, theta)
    if qop == 0.0:
        return d
    return d / abs(qop)


@dataclass(slots=True)
class PerigeeTrack:
    r"""
    Track parameters bound to a perigee about a 3D reference point.

    The parameter vector is

    .. math::

        \mathbf{q} = (d_0,\ z_0,\ \phi,\ \theta,\ q/p),

    where :math:`d_0` is the signed transverse impact parameter,
    :math:`z_0` the longitudinal impact parameter, :math:`\phi` and
    :math:`\theta` the azimuth and polar angle of the momentum at the point of
    closest approach (PCA) and :math:`q/p` the charge over momentum (e/GeV).
    The PCA in global coordinates is

    .. math::

        \mathbf{x}_{PCA} = \mathbf{r} + (-d_0\sin\phi,\ d_0\cos\phi,\ z_0).

    Attributes
    ----------
    parameters : (5,) ndarray
    covariance : (5, 5) ndarray
    reference_point : (3,) ndarray
        Perigee reference :math:`\mathbf{r}` (meters).
    track_id : int, optional
        Free label carried through to the refit results.
    """
    parameters: np.ndarray
    covariance: np.ndarray
    reference_point: np.ndarray = field(default_factory=lambda: np.zeros(3))
    track_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.parameters = _as_vec(self.parameters, 5, "parameters")
        self.covariance = _as_mat(self.covariance, 5, "covariance")
        self.reference_point = _as_vec(self.reference_point, 3, "reference_point")

    @property
    def d0(self) -> float:
        return float(self.parameters[D0])

    @property
    def z0(self) -> float:
        return float(self.parameters[Z0])

    @property
    def phi(self) -> float:
        return float(self.parameters[PHI])

    @property
    def theta(self) -> float:
        return float(self.parameters[THETA])

    @property
    def qop(self) -> float:
        return float(self.parameters[QOP])

    def position(self) -> np.ndarray:
        """Global position of the PCA to :attr:`reference_point`."""
        d0, z0, phi = self.parameters[D0], self.parameters[Z0], self.parameters[PHI]
        return self.reference_point + np.array([-d0 * np.sin(phi), d0 * np.cos(phi), z0])

    def momentum(self) -> np.ndarray:
        """Cartesian momentum (GeV) at the PCA."""
        return momentum_vector(self.phi, self.theta, self.qop)


@dataclass(slots=True)
class LinearizedTrack:
    r"""
    First-order expansion of a track's perigee parameters about a reference point.

    With vertex position :math:`\mathbf{V}` and momentum
    :math:`\mathbf{p}=(\phi,\theta,q/p)` at the vertex,

    .. math::

        \mathbf{q}(\mathbf{V},\mathbf{p}) \approx \mathbf{q}_0
        + D\,\delta\mathbf{V} + E\,\delta\mathbf{p},

    where ``position_jacobian`` is :math:`D\in\mathbb{R}^{5\times3}` and
    ``momentum_jacobian`` is :math:`E\in\mathbb{R}^{5\times3}`.

    Attributes
    ----------
    parameters_at_pca : (5,) ndarray
        Measured parameters re-expressed at the PCA to ``linearization_point``.
    covariance_at_pca : (5, 5) ndarray
    linearization_point : (3,) ndarray
    position_jacobian : (5, 3) ndarray
    momentum_jacobian : (5, 3) ndarray
    position_at_pca : (3,) ndarray
    momentum_at_pca : (3,) ndarray
        :math:`(\phi, \theta, q/p)` at the PCA.
    """
    parameters_at_pca: np.ndarray
    covariance_at_pca: np.ndarray
    linearization_point: np.ndarray
    position_jacobian: np.ndarray
    momentum_jacobian: np.ndarray
    position_at_pca: np.ndarray
    momentum_at_pca: np.ndarray


@dataclass(slots=True)
class VertexConstraint:
    r"""
    Gaussian prior on the vertex position (e.g. the beam spot).

    The constraint takes part in the fit only if the trace of its covariance is
    nonzero (:attr:`is_active`); otherwise only :attr:`position` is used, as the
    starting linearization point.
    """
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    def __post_init__(self) -> None:
        self.position = _as_vec(self.position, 3, "constraint position")
        self.covariance = _as_mat(self.covariance, 3, "constraint covariance")

    @property
    def is_active(self) -> bool:
        return bool(np.trace(self.covariance) != 0.0)

    @classmethod
    def beam_spot(cls,
                  sigma_xy: float,
                  sigma_z: float,
                  center: Optional[np.ndarray] = None) -> "VertexConstraint":
        """Diagonal beam-spot constraint with transverse/longitudinal widths (meters)."""
        pos = np.zeros(3) if center is None else center
        cov = np.diag([sigma_xy ** 2, sigma_xy ** 2, sigma_z ** 2])
        return cls(position=pos, covariance=cov)


@dataclass(frozen=True, slots=True)
class TrackAtVertex:
    """Refitted track attached to a fitted vertex."""
    chi2: float
    fitted_params: PerigeeTrack
    original_track: Any


@dataclass(frozen=True, slots=True)
class Vertex:
    r"""
    Result of a vertex fit.

    A default-constructed instance is the vertex returned for an empty track
    list: origin, zero covariance, no tracks.

    Attributes
    ----------
    position : (3,) ndarray
    covariance : (3, 3) ndarray
    chi2 : float
    ndf : int
    tracks : list[TrackAtVertex]
        In the order of the input tracks.
    n_iterations : int
        1-based iteration that produced this vertex (``0`` if none did).
    """
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    chi2: float = 0.0
    ndf: int = 0
    tracks: List[TrackAtVertex] = field(default_factory=list)
    n_iterations: int = 0

    @property
    def fit_quality(self) -> tuple:
        return self.chi2, self.ndf

    @property
    def chi2_per_ndf(self) -> float:
        return self.chi2 / self.ndf if self.ndf > 0 else float("nan")

    @property
    def fit_probability(self) -> float:
        r""":math:`P(\chi^2 > \chi^2_{fit} \mid ndf)`; ``nan`` when ``ndf <= 0``."""
        if self.ndf <= 0:
            return float("nan")
        return float(_chi2_dist.sf(self.chi2, self.ndf))
