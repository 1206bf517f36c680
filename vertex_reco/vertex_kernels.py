from __future__ import annotations

import math
from typing import Callable, Tuple

import numpy as np
import scipy.linalg as sla
from numba import njit

from vertex_reco.exceptions import SingularMatrixError


__all__ = [
    "SINGULAR_RTOL",
    "is_singular",
    "invert3",
    "invert_covariance",
    "correct_phi_theta_periodicity",
    "wrap_phi",
    "chi2_quadratic",
    "MathBackend",
]

PI = math.pi
TWO_PI = 2.0 * math.pi

# relative determinant threshold: |det| / prod|diag| below this is singular
SINGULAR_RTOL = 1e-12


@njit(cache=True)
def _inv3_kernel(M: np.ndarray, rtol: float) -> Tuple[bool, np.ndarray]:
    r"""
    Closed-form :math:`3\times 3` inverse with a scale-free singularity test.

    The inverse is the transposed cofactor matrix divided by the determinant,

    .. math::

        M^{-1} = \frac{\operatorname{adj}(M)}{\det M}.

    The matrix is declared singular when a diagonal element is zero or
    non-finite, or when

    .. math::

        \frac{|\det M|}{\prod_i |M_{ii}|} < \text{rtol}.

    For symmetric positive semi-definite matrices the ratio lies in
    :math:`[0, 1]` (Hadamard), so the test does not depend on units.

    Parameters
    ----------
    M : ndarray, shape (3, 3)
        Matrix to invert (float64).
    rtol : float
        Relative determinant threshold.

    Returns
    -------
    ok : bool
        ``False`` if ``M`` is numerically singular.
    inv : ndarray, shape (3, 3)
        Inverse of ``M`` (zeros when ``ok`` is ``False``).
    """
    out = np.zeros((3, 3), dtype=np.float64)
    m00 = M[0, 0]; m01 = M[0, 1]; m02 = M[0, 2]
    m10 = M[1, 0]; m11 = M[1, 1]; m12 = M[1, 2]
    m20 = M[2, 0]; m21 = M[2, 1]; m22 = M[2, 2]

    c00 = m11 * m22 - m12 * m21
    c01 = -(m10 * m22 - m12 * m20)
    c02 = m10 * m21 - m11 * m20
    c10 = -(m01 * m22 - m02 * m21)
    c11 = m00 * m22 - m02 * m20
    c12 = -(m00 * m21 - m01 * m20)
    c20 = m01 * m12 - m02 * m11
    c21 = -(m00 * m12 - m02 * m10)
    c22 = m00 * m11 - m01 * m10

    det = m00 * c00 + m01 * c01 + m02 * c02
    scale = abs(m00) * abs(m11) * abs(m22)
    if not math.isfinite(det) or not math.isfinite(scale) or scale == 0.0:
        return False, out
    if abs(det) < rtol * scale:
        return False, out

    inv_det = 1.0 / det
    out[0, 0] = c00 * inv_det
    out[0, 1] = c10 * inv_det
    out[0, 2] = c20 * inv_det
    out[1, 0] = c01 * inv_det
    out[1, 1] = c11 * inv_det
    out[1, 2] = c21 * inv_det
    out[2, 0] = c02 * inv_det
    out[2, 1] = c12 * inv_det
    out[2, 2] = c22 * inv_det
    return True, out


@njit(cache=True)
def _phi_theta_kernel(phi: float, theta: float) -> Tuple[float, float]:
    r"""
    Bring :math:`(\phi, \theta)` into :math:`(-\pi,\pi]\times[0,\pi]`.

    Steps (order matters):

    1. :math:`\phi \leftarrow \operatorname{fmod}(\phi, 2\pi)` folded into
       :math:`(-\pi, \pi]`.
    2. :math:`\theta \leftarrow \operatorname{fmod}(\theta, 2\pi)`.
    3. :math:`\theta < -\pi`: :math:`\theta \leftarrow |\theta + 2\pi|`.
       Otherwise :math:`\theta < 0`: :math:`\theta \leftarrow -\theta`,
       :math:`\phi \leftarrow \phi + \pi` (re-folded).
    4. :math:`\theta > \pi`: :math:`\theta \leftarrow 2\pi - \theta`,
       :math:`\phi \leftarrow \phi + \pi` (re-folded).

    Every branch leaves the unit direction
    :math:`(\cos\phi\sin\theta,\ \sin\phi\sin\theta,\ \cos\theta)` unchanged.
    """
    tmp_phi = np.fmod(phi, TWO_PI)
    if tmp_phi > PI:
        tmp_phi -= TWO_PI
    if tmp_phi <= -PI:
        tmp_phi += TWO_PI

    tmp_theta = np.fmod(theta, TWO_PI)
    if tmp_theta < -PI:
        tmp_theta = abs(tmp_theta + TWO_PI)
    elif tmp_theta < 0.0:
        tmp_theta = -tmp_theta
        tmp_phi += PI
        if tmp_phi > PI:
            tmp_phi -= TWO_PI
    if tmp_theta > PI:
        tmp_theta = TWO_PI - tmp_theta
        tmp_phi += PI
        if tmp_phi > PI:
            tmp_phi -= TWO_PI
    return tmp_phi, tmp_theta


def is_singular(M: np.ndarray, rtol: float = SINGULAR_RTOL) -> bool:
    r"""
    Scale-free singularity test for a square matrix of any size.

    Uses :func:`numpy.linalg.slogdet` so that very small or very large
    entries do not under/overflow:

    .. math::

        \log|\det M| - \sum_i \log|M_{ii}| < \log(\text{rtol}).

    Parameters
    ----------
    M : array_like, shape (n, n)
        Matrix to test.
    rtol : float, optional
        Relative determinant threshold (default :data:`SINGULAR_RTOL`).

    Returns
    -------
    bool
        ``True`` if ``M`` contains non-finite entries, has a zero diagonal
        element, or fails the relative determinant test.
    """
    M = np.asarray(M, dtype=np.float64)
    if not np.all(np.isfinite(M)):
        return True
    d = np.abs(np.diag(M))
    if np.any(d == 0.0):
        return True
    sign, logdet = np.linalg.slogdet(M)
    if sign == 0.0 or not np.isfinite(logdet):
        return True
    return bool(logdet - np.sum(np.log(d)) < np.log(rtol))


def invert3(M: np.ndarray, name: str = "3x3 matrix") -> np.ndarray:
    r"""
    Invert a :math:`3\times 3` matrix or raise :class:`SingularMatrixError`.

    Parameters
    ----------
    M : array_like, shape (3, 3)
        Matrix to invert.
    name : str, optional
        Human-readable name used in the error message.

    Returns
    -------
    ndarray, shape (3, 3)
        :math:`M^{-1}`.

    Raises
    ------
    SingularMatrixError
        If ``M`` is numerically singular (see :func:`_inv3_kernel`).
    """
    M = np.ascontiguousarray(M, dtype=np.float64)
    if M.shape != (3, 3):
        raise ValueError(f"{name} must have shape (3, 3), got {M.shape}")
    ok, inv = _inv3_kernel(M, SINGULAR_RTOL)
    if not ok:
        raise SingularMatrixError(f"{name} is singular", matrix_name=name)
    return inv


def invert_covariance(C: np.ndarray, name: str = "covariance") -> np.ndarray:
    r"""
    Weight matrix :math:`W = C^{-1}` of a symmetric covariance.

    The inverse is obtained from a Cholesky factorization
    (:func:`scipy.linalg.cho_factor` / :func:`scipy.linalg.cho_solve`); if the
    matrix is regular but not positive definite the general LU inverse is used.
    The result is symmetrized, :math:`W \leftarrow \tfrac12(W + W^\top)`.

    Parameters
    ----------
    C : array_like, shape (n, n)
        Symmetric covariance.
    name : str, optional
        Name used in the error message.

    Returns
    -------
    ndarray, shape (n, n)

    Raises
    ------
    SingularMatrixError
        If :func:`is_singular` flags ``C``.
    """
    C = np.ascontiguousarray(C, dtype=np.float64)
    if C.ndim != 2 or C.shape[0] != C.shape[1]:
        raise ValueError(f"{name} must be square, got shape {C.shape}")
    if is_singular(C):
        raise SingularMatrixError(f"{name} is singular", matrix_name=name)
    n = C.shape[0]
    try:
        factor = sla.cho_factor(C, lower=True, check_finite=False)
        W = sla.cho_solve(factor, np.eye(n), check_finite=False)
    except sla.LinAlgError:
        W = np.linalg.inv(C)
    return 0.5 * (W + W.T)


def correct_phi_theta_periodicity(phi: float, theta: float) -> Tuple[float, float]:
    r"""
    Normalize azimuth and polar angle, preserving the physical direction.

    Returns
    -------
    phi : float
        Azimuth in :math:`(-\pi, \pi]`.
    theta : float
        Polar angle in :math:`[0, \pi]`.

    See Also
    --------
    _phi_theta_kernel : Exact order of the reductions.
    """
    phi_c, theta_c = _phi_theta_kernel(float(phi), float(theta))
    return float(phi_c), float(theta_c)


def wrap_phi(phi: float) -> float:
    r"""Fold an angle (or angle difference) into :math:`(-\pi, \pi]`."""
    out = math.fmod(float(phi), TWO_PI)
    if out > PI:
        out -= TWO_PI
    elif out <= -PI:
        out += TWO_PI
    return out


def chi2_quadratic(r: np.ndarray, W: np.ndarray) -> float:
    r"""Quadratic form :math:`r^\top W r`."""
    r = np.asarray(r, dtype=np.float64)
    return float(r @ (np.asarray(W, dtype=np.float64) @ r))


class MathBackend:
    r"""
    Pluggable math backend for the Billoir fitter kernels.

    Lets callers swap the small dense kernels (e.g. for instrumented or
    alternative implementations) without changing the fitter:

    - ``invert3(M, name) -> M^{-1}`` for :math:`3\times 3` matrices
      (:math:`G_i`, :math:`V_{wgt}`, constraint covariance);
    - ``invert_covariance(C, name) -> W`` for the :math:`5\times 5`
      parameter covariance at the PCA;
    - ``correct_angles(phi, theta) -> (phi, theta)`` periodicity fix-up.

    All three must raise :class:`SingularMatrixError` (inverses) rather than
    return a degenerate result.
    """
    __slots__ = ("invert3", "invert_covariance", "correct_angles")

    def __init__(self,
                 invert3: Callable[[np.ndarray, str], np.ndarray] = invert3,
                 invert_covariance: Callable[[np.ndarray, str], np.ndarray] = invert_covariance,
                 correct_angles: Callable[[float, float], Tuple[float, float]] = correct_phi_theta_periodicity):
        self.invert3 = invert3
        self.invert_covariance = invert_covariance
        self.correct_angles = correct_angles
