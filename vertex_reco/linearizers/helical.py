from typing import Tuple

import numpy as np

from vertex_reco.exceptions import LinearizationError
from vertex_reco.linearizers.linearizer import TrackLinearizer
from vertex_reco.linearizers.straight import StraightLineLinearizer
from vertex_reco.vertex_kernels import wrap_phi

# GeV / (T * m) per unit charge
C_LIGHT = 0.299792458


class HelicalTrackLinearizer(TrackLinearizer):
    r"""
    Analytic helix linearizer in a uniform solenoidal field :math:`B_z`.

    Units: meters, GeV, Tesla, :math:`q/p` in e/GeV. The signed radius of
    curvature is

    .. math::

        \rho = \frac{\sin\theta}{(q/p)\,c\,B_z}, \qquad c = 0.299792458,

    positive for clockwise motion seen from :math:`+z`. For a track through
    :math:`\mathbf{V}` with momentum :math:`(\phi,\theta,q/p)` and reference
    :math:`\mathbf{R}`, the helix centre relative to :math:`\mathbf{R}` is

    .. math::

        X = V_x - R_x + \rho\sin\phi, \qquad
        Y = V_y - R_y - \rho\cos\phi, \qquad
        S = \sqrt{X^2 + Y^2},

    and with :math:`h=\operatorname{sgn}\rho` the perigee parameters are

    .. math::

        d_0 &= \rho - h S, \\
        \phi' &= \operatorname{atan2}(hX,\ -hY), \\
        z_0 &= V_z - R_z + \rho\,(\phi - \phi')/\tan\theta,

    with :math:`\theta` and :math:`q/p` unchanged. Writing
    :math:`P = X\cos\phi + Y\sin\phi` and :math:`Q = X\sin\phi - Y\cos\phi`,
    the position Jacobian is

    .. math::

        D = \begin{pmatrix}
            -hX/S & -hY/S & 0 \\
            \rho Y/(S^2\tan\theta) & -\rho X/(S^2\tan\theta) & 1 \\
            -Y/S^2 & X/S^2 & 0 \\
            0 & 0 & 0 \\ 0 & 0 & 0
        \end{pmatrix}

    and the momentum Jacobian :math:`E` is built in :meth:`perigee_map`.
    A zero field, or :math:`|q/p|` below ``min_qop``, falls back to the
    straight-line model.

    Parameters
    ----------
    B_z : float, optional
        Field (Tesla). Default ``2.0``.
    min_sin_theta : float, optional
        Rejection threshold on :math:`|\sin\theta|`. Default ``1e-6``.
    min_qop : float, optional
        Below this :math:`|q/p|` the track is treated as straight. Default ``1e-12``.
    """

    def __init__(self, B_z: float = 2.0, min_sin_theta: float = 1e-6, min_qop: float = 1e-12) -> None:
        super().__init__()
        self.B_z = float(B_z)
        self.min_sin_theta = float(min_sin_theta)
        self.min_qop = float(min_qop)
        self._straight = StraightLineLinearizer(min_sin_theta=min_sin_theta)

    def radius_of_curvature(self, theta: float, qop: float) -> float:
        """Signed radius :math:`\\rho` (meters); ``inf`` for straight tracks."""
        if self.B_z == 0.0 or abs(qop) < self.min_qop:
            return float("inf")
        return float(np.sin(theta) / (qop * C_LIGHT * self.B_z))

    def perigee_map(self,
                    vertex: np.ndarray,
                    momentum: np.ndarray,
                    reference_point: np.ndarray
                    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        phi, theta, qop = float(momentum[0]), float(momentum[1]), float(momentum[2])
        if self.B_z == 0.0 or abs(qop) < self.min_qop:
            return self._straight.perigee_map(vertex, momentum, reference_point)

        st, ct = self._check_theta(theta, self.min_sin_theta)
        tan_t = st / ct if ct != 0.0 else np.inf
        sphi, cphi = np.sin(phi), np.cos(phi)
        rho = st / (qop * C_LIGHT * self.B_z)
        h = 1.0 if rho > 0 else -1.0

        V = np.asarray(vertex, dtype=np.float64)
        R = np.asarray(reference_point, dtype=np.float64)
        X = V[0] - R[0] + rho * sphi
        Y = V[1] - R[1] - rho * cphi
        S2 = X * X + Y * Y
        S = np.sqrt(S2)
        if not np.isfinite(S) or S < 1e-9 * abs(rho):
            raise LinearizationError("reference point lies on the helix axis")

        phi_pca = float(np.arctan2(h * X, -h * Y))
        dphi = wrap_phi(phi - phi_pca)
        d0 = rho - h * S
        z0 = V[2] - R[2] + rho * dphi / tan_t

        params = np.array([d0, z0, phi_pca, theta, qop], dtype=np.float64)

        S2tan = S2 * tan_t
        D = np.zeros((5, 3))
        D[0, 0] = -h * X / S
        D[0, 1] = -h * Y / S
        D[1, 0] = rho * Y / S2tan
        D[1, 1] = -rho * X / S2tan
        D[1, 2] = 1.0
        D[2, 0] = -Y / S2
        D[2, 1] = X / S2

        P = X * cphi + Y * sphi
        Q = X * sphi - Y * cphi
        red = 1.0 - h * Q / S
        rho_s2 = rho / S2

        E = np.zeros((5, 3))
        E[0, 0] = -h * rho * P / S
        E[0, 1] = red * rho / tan_t
        E[0, 2] = -red * rho / qop
        E[1, 0] = (1.0 - rho_s2 * Q) * rho / tan_t
        E[1, 1] = (-dphi + rho * P / (S2tan * tan_t)) * rho
        E[1, 2] = (-dphi - rho_s2 * P) * rho / (qop * tan_t)
        E[2, 0] = rho_s2 * Q
        E[2, 1] = -rho * P / S2tan
        E[2, 2] = rho_s2 * P / qop
        E[3, 1] = 1.0
        E[4, 2] = 1.0
        return params, D, E
