import abc
import logging
from typing import Sequence, Tuple

import numpy as np

from vertex_reco.event_data import LinearizedTrack, PerigeeTrack
from vertex_reco.exceptions import LinearizationError


class TrackLinearizer(abc.ABC):
    r"""
    Abstract base class for track linearizers.

    A linearizer re-expresses a track's perigee parameters about a new
    reference point :math:`\mathbf{R}` and returns the first-order expansion of
    the track model

    .. math::

        \mathbf{q} = F(\mathbf{V}, \mathbf{p};\ \mathbf{R}),
        \qquad \mathbf{V}\in\mathbb{R}^3,\ \mathbf{p}=(\phi,\theta,q/p),

    i.e. the perigee parameters w.r.t. :math:`\mathbf{R}` of a track that
    passes through :math:`\mathbf{V}` with momentum :math:`\mathbf{p}`.
    Subclasses only implement :meth:`perigee_map`, which returns
    :math:`F` together with :math:`D=\partial F/\partial\mathbf{V}` and
    :math:`E=\partial F/\partial\mathbf{p}`.

    :meth:`linearize_track` then

    1. takes the track's own PCA point :math:`\mathbf{V}_0` and momentum
       :math:`\mathbf{p}_0`, maps them to :math:`\mathbf{q}' = F(\mathbf{V}_0,\mathbf{p}_0;\mathbf{R})`;
    2. transports the covariance, :math:`C' = J C J^\top` with

       .. math::

           J = D_0 \frac{\partial\mathbf{V}_0}{\partial\mathbf{q}}
             + E_0 \frac{\partial\mathbf{p}_0}{\partial\mathbf{q}};

    3. evaluates :math:`D, E` at the new PCA point.

    Notes
    -----
    The covariance transport neglects material effects and field
    inhomogeneities. Instances hold only read-only configuration and can be
    shared between threads.
    """

    __slots__ = ("log", "__dict__")

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    @abc.abstractmethod
    def perigee_map(self,
                    vertex: np.ndarray,
                    momentum: np.ndarray,
                    reference_point: np.ndarray
                    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        r"""
        Evaluate the track model and its Jacobians.

        Parameters
        ----------
        vertex : ndarray, shape (3,)
            Point :math:`\mathbf{V}` the track passes through.
        momentum : ndarray, shape (3,)
            :math:`(\phi, \theta, q/p)` at :math:`\mathbf{V}`.
        reference_point : ndarray, shape (3,)
            Perigee reference :math:`\mathbf{R}`.

        Returns
        -------
        params : ndarray, shape (5,)
        D : ndarray, shape (5, 3)
        E : ndarray, shape (5, 3)

        Raises
        ------
        LinearizationError
            If the model has no valid expansion at this configuration.
        """

    def perigee_parameters(self,
                           vertex: Sequence[float],
                           momentum: Sequence[float],
                           reference_point: Sequence[float] = (0.0, 0.0, 0.0)) -> np.ndarray:
        """Perigee parameters w.r.t. ``reference_point`` of a track through ``vertex``."""
        params, _, _ = self.perigee_map(
            np.asarray(vertex, dtype=np.float64),
            np.asarray(momentum, dtype=np.float64),
            np.asarray(reference_point, dtype=np.float64),
        )
        return params

    def linearize_track(self, params: PerigeeTrack, reference_point: Sequence[float]) -> LinearizedTrack:
        r"""
        Linearize ``params`` around ``reference_point``.

        Parameters
        ----------
        params : PerigeeTrack
            Measured track parameters (any reference point).
        reference_point : array_like, shape (3,)
            New perigee reference, i.e. the current linearization point.

        Returns
        -------
        LinearizedTrack

        Raises
        ------
        LinearizationError
            Non-finite input, degenerate geometry, or non-finite output.
        """
        R = np.asarray(reference_point, dtype=np.float64).reshape(3)
        q = params.parameters
        if not (np.all(np.isfinite(q)) and np.all(np.isfinite(R))
                and np.all(np.isfinite(params.reference_point))):
            raise LinearizationError("non-finite track parameters or reference point",
                                     track_id=params.track_id)

        d0, phi = q[0], q[2]
        sphi, cphi = np.sin(phi), np.cos(phi)
        v0 = params.position()
        p0 = q[2:5].copy()

        q_new, D0, E0 = self.perigee_map(v0, p0, R)

        # d(V0, p0)/dq at the track's own perigee
        dv_dq = np.zeros((3, 5))
        dv_dq[0, 0], dv_dq[1, 0] = -sphi, cphi
        dv_dq[2, 1] = 1.0
        dv_dq[0, 2], dv_dq[1, 2] = -d0 * cphi, -d0 * sphi
        dp_dq = np.zeros((3, 5))
        dp_dq[0, 2] = dp_dq[1, 3] = dp_dq[2, 4] = 1.0

        J = D0 @ dv_dq + E0 @ dp_dq
        cov = J @ params.covariance @ J.T
        cov = 0.5 * (cov + cov.T)

        d0n, z0n, phin = q_new[0], q_new[1], q_new[2]
        pca = R + np.array([-d0n * np.sin(phin), d0n * np.cos(phin), z0n])
        mom = q_new[2:5].copy()
        _, D, E = self.perigee_map(pca, mom, R)

        if not (np.all(np.isfinite(q_new)) and np.all(np.isfinite(cov))
                and np.all(np.isfinite(D)) and np.all(np.isfinite(E))):
            raise LinearizationError("linearization produced non-finite values",
                                     track_id=params.track_id)

        return LinearizedTrack(
            parameters_at_pca=q_new,
            covariance_at_pca=cov,
            linearization_point=R.copy(),
            position_jacobian=D,
            momentum_jacobian=E,
            position_at_pca=pca,
            momentum_at_pca=mom,
        )

    def __call__(self, params: PerigeeTrack, reference_point: Sequence[float]) -> LinearizedTrack:
        return self.linearize_track(params, reference_point)

    @staticmethod
    def _check_theta(theta: float, min_sin_theta: float) -> Tuple[float, float]:
        st, ct = np.sin(theta), np.cos(theta)
        if not np.isfinite(st) or abs(st) < min_sin_theta:
            raise LinearizationError(f"polar angle too close to the beam axis (theta={theta!r})")
        return st, ct
