from typing import Tuple

import numpy as np

from vertex_reco.linearizers.linearizer import TrackLinearizer


class StraightLineLinearizer(TrackLinearizer):
    r"""
    Field-free (straight line) track linearizer.

    For a track through :math:`\mathbf{V}` with direction
    :math:`(\phi,\theta)` and reference :math:`\mathbf{R}`, let
    :math:`\Delta = \mathbf{V}-\mathbf{R}` and
    :math:`L = \Delta_x\cos\phi + \Delta_y\sin\phi` (transverse path from the
    PCA to :math:`\mathbf{V}`). Then

    .. math::

        d_0 &= -\Delta_x\sin\phi + \Delta_y\cos\phi, \\
        z_0 &= \Delta_z - L\cot\theta,

    and :math:`\phi, \theta, q/p` are unchanged. The Jacobians are

    .. math::

        D = \begin{pmatrix}
              -\sin\phi & \cos\phi & 0 \\
              -\cos\phi\cot\theta & -\sin\phi\cot\theta & 1 \\
              0 & 0 & 0 \\ 0 & 0 & 0 \\ 0 & 0 & 0
            \end{pmatrix},
        \qquad
        E = \begin{pmatrix}
              -L & 0 & 0 \\
              -d_0\cot\theta & L/\sin^2\theta & 0 \\
              1 & 0 & 0 \\ 0 & 1 & 0 \\ 0 & 0 & 1
            \end{pmatrix}.

    Parameters
    ----------
    min_sin_theta : float, optional
        Tracks with :math:`|\sin\theta|` below this are rejected. Default ``1e-6``.
    """

    def __init__(self, min_sin_theta: float = 1e-6) -> None:
        super().__init__()
        self.min_sin_theta = float(min_sin_theta)

    def perigee_map(self,
                    vertex: np.ndarray,
                    momentum: np.ndarray,
                    reference_point: np.ndarray
                    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        phi, theta, qop = float(momentum[0]), float(momentum[1]), float(momentum[2])
        st, ct = self._check_theta(theta, self.min_sin_theta)
        cot = ct / st
        sphi, cphi = np.sin(phi), np.cos(phi)

        dx, dy, dz = np.asarray(vertex, dtype=np.float64) - np.asarray(reference_point, dtype=np.float64)
        d0 = -dx * sphi + dy * cphi
        L = dx * cphi + dy * sphi
        z0 = dz - L * cot

        params = np.array([d0, z0, phi, theta, qop], dtype=np.float64)

        D = np.zeros((5, 3))
        D[0, 0], D[0, 1] = -sphi, cphi
        D[1, 0], D[1, 1], D[1, 2] = -cphi * cot, -sphi * cot, 1.0

        E = np.zeros((5, 3))
        E[0, 0] = -L
        E[1, 0] = -d0 * cot
        E[1, 1] = L / (st * st)
        E[2, 0] = E[3, 1] = E[4, 2] = 1.0
        return params, D, E
