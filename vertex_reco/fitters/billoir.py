from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from vertex_reco.event_data import (
    LinearizedTrack,
    PerigeeTrack,
    TrackAtVertex,
    Vertex,
    VertexConstraint,
)
from vertex_reco.exceptions import ConfigError
from vertex_reco.vertex_kernels import MathBackend, chi2_quadratic

logger = logging.getLogger(__name__)

__all__ = ["BilloirTrack", "BilloirVertex", "FullBilloirVertexFitter"]


@dataclass(slots=True)
class BilloirTrack:
    r"""
    Per-track cache of one Billoir iteration.

    With residual :math:`\delta\mathbf{q}_i`, weight :math:`W_i = C_{q,i}^{-1}`,
    position Jacobian :math:`D_i` and momentum Jacobian :math:`E_i`:

    .. math::

        G_i &= E_i^\top W_i E_i, \qquad C_i^{-1} = G_i^{-1}, \\
        B_i &= D_i^\top W_i E_i, \qquad BC_i = B_i C_i^{-1}, \\
        \mathbf{U}_i &= E_i^\top W_i\,\delta\mathbf{q}_i.

    Attributes
    ----------
    original_track : object
        The caller's trajectory object, returned untouched in the refit.
    linearized : LinearizedTrack
    delta_q : (5,) ndarray
    weight, D, E, G, C_inv, B, BC, U : ndarray
    chi2 : float
        Contribution to the total :math:`\chi^2` of the current iteration.
    """
    original_track: Any
    linearized: LinearizedTrack
    delta_q: np.ndarray
    weight: np.ndarray
    D: np.ndarray
    E: np.ndarray
    G: np.ndarray
    C_inv: np.ndarray
    B: np.ndarray
    BC: np.ndarray
    U: np.ndarray
    chi2: float = 0.0

    @classmethod
    def build(cls,
              original_track: Any,
              linearized: LinearizedTrack,
              momentum: np.ndarray,
              backend: MathBackend) -> "BilloirTrack":
        r"""
        Fill the cache from a linearized track and the running momentum.

        The residual compares the impact parameters with zero (they are defined
        w.r.t. the current linearization point) and the angles and
        :math:`q/p` with the running momentum estimate
        :math:`(\phi_i, \theta_i, (q/p)_i)`:

        .. math::

            \delta\mathbf{q}_i = (d_0,\ z_0,\ \phi-\phi_i,\ \theta-\theta_i,\ q/p-(q/p)_i).

        Raises
        ------
        SingularMatrixError
            If the parameter covariance or :math:`G_i` is singular.
        """
        q = linearized.parameters_at_pca
        delta_q = np.array([
            q[0],
            q[1],
            q[2] - momentum[0],
            q[3] - momentum[1],
            q[4] - momentum[2],
        ], dtype=np.float64)

        D = np.asarray(linearized.position_jacobian, dtype=np.float64)
        E = np.asarray(linearized.momentum_jacobian, dtype=np.float64)
        W = backend.invert_covariance(linearized.covariance_at_pca, "track parameter covariance")

        DtW = D.T @ W
        EtW = E.T @ W
        G = EtW @ E
        C_inv = backend.invert3(G, "track momentum weight G")
        B = DtW @ E
        return cls(
            original_track=original_track,
            linearized=linearized,
            delta_q=delta_q,
            weight=W,
            D=D,
            E=E,
            G=G,
            C_inv=C_inv,
            B=B,
            BC=B @ C_inv,
            U=EtW @ delta_q,
        )


@dataclass(slots=True)
class BilloirVertex:
    r"""
    Global sums of one Billoir iteration.

    .. math::

        A = \sum_i D_i^\top W_i D_i, \quad
        \mathbf{T} = \sum_i D_i^\top W_i\,\delta\mathbf{q}_i, \quad
        BCB = \sum_i BC_i B_i^\top, \quad
        \mathbf{BCU} = \sum_i BC_i\,\mathbf{U}_i.

    Partial sums from disjoint track subsets can be combined with
    :meth:`merge`.
    """
    A: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    T: np.ndarray = field(default_factory=lambda: np.zeros(3))
    BCB: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    BCU: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def add(self, track: BilloirTrack) -> None:
        DtW = track.D.T @ track.weight
        self.A += DtW @ track.D
        self.T += DtW @ track.delta_q
        self.BCB += track.BC @ track.B.T
        self.BCU += track.BC @ track.U

    def merge(self, other: "BilloirVertex") -> "BilloirVertex":
        return BilloirVertex(
            A=self.A + other.A,
            T=self.T + other.T,
            BCB=self.BCB + other.BCB,
            BCU=self.BCU + other.BCU,
        )


def _identity(track: Any) -> PerigeeTrack:
    return track


class FullBilloirVertexFitter:
    r"""
    Common-vertex fit of a set of tracks with the full Billoir method.

    Each iteration linearizes every track about the current vertex estimate
    :math:`\mathbf{V}_0` and solves the joint weighted least-squares problem in
    the vertex displacement :math:`\delta\mathbf{V}` and the per-track momentum
    corrections :math:`\delta\mathbf{p}_i`. The momenta are eliminated block
    by block, leaving the :math:`3\times 3` normal equations

    .. math::

        \underbrace{\Bigl(A - \sum_i BC_i B_i^\top\Bigr)}_{V_{wgt}}\,\delta\mathbf{V}
        = \underbrace{\mathbf{T} - \sum_i BC_i\,\mathbf{U}_i}_{V_{del}},
        \qquad
        \delta\mathbf{p}_i = C_i^{-1}\bigl(\mathbf{U}_i - B_i^\top\delta\mathbf{V}\bigr).

    A vertex constraint :math:`(\mathbf{c}, \Sigma_c)` adds
    :math:`\Sigma_c^{-1}` to :math:`V_{wgt}` and
    :math:`\Sigma_c^{-1}(\mathbf{c}-\mathbf{V}_0)` to :math:`V_{del}`. The vertex
    covariance is :math:`V_{wgt}^{-1}` and the per-iteration score is

    .. math::

        \chi^2 = \sum_i \mathbf{r}_i^\top W_i\,\mathbf{r}_i
        \;+\; (\delta\mathbf{V}-(\mathbf{c}-\mathbf{V}_0))^\top\Sigma_c^{-1}(\cdots),
        \qquad
        \mathbf{r}_i = \delta\mathbf{q}_i - D_i\,\delta\mathbf{V} - E_i\,\delta\mathbf{p}_i.

    Iteration policy
    ----------------
    The loop runs exactly ``max_iterations`` times. A :class:`Vertex` is
    materialized only when an iteration's :math:`\chi^2` is strictly below the
    best so far; a worse iteration is discarded, but the running momenta and
    the linearization point still move on. Setting ``convergence_tolerance``
    stops the loop once :math:`\|\delta\mathbf{V}\|` falls below it.

    Parameters
    ----------
    max_iterations : int, optional
        Number of iterations (``>= 1``). Default ``5``.
    extract_parameters : callable, optional
        Maps a caller trajectory to a :class:`PerigeeTrack`. Defaults to the
        identity (inputs already are :class:`PerigeeTrack`).
    linearizer : TrackLinearizer or callable, optional
        Default collaborator used when :meth:`fit` is called without one.
    convergence_tolerance : float or None, keyword-only
        Off by default.
    backend : MathBackend or None, keyword-only
        Kernels for the small inverses and angle fix-ups.

    Notes
    -----
    The fitter keeps no state between calls: every mutable quantity lives in
    :meth:`fit`, so a single instance may be used from several threads.
    """

    __slots__ = ("max_iterations", "extract_parameters", "linearizer",
                 "convergence_tolerance", "_backend", "log")

    def __init__(self,
                 max_iterations: int = 5,
                 extract_parameters: Optional[Callable[[Any], PerigeeTrack]] = None,
                 linearizer: Any = None,
                 *,
                 convergence_tolerance: Optional[float] = None,
                 backend: Optional[MathBackend] = None) -> None:
        if int(max_iterations) < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {max_iterations!r}")
        if convergence_tolerance is not None and convergence_tolerance < 0:
            raise ConfigError("convergence_tolerance must be non-negative")
        self.max_iterations = int(max_iterations)
        self.extract_parameters = extract_parameters or _identity
        self.linearizer = linearizer
        self.convergence_tolerance = convergence_tolerance
        self._backend = backend or MathBackend()
        self.log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(cls, config, **kwargs) -> "FullBilloirVertexFitter":
        """Build from a :class:`~vertex_reco.config.BilloirFitterConfig`."""
        return cls(max_iterations=config.max_iterations,
                   convergence_tolerance=config.convergence_tolerance,
                   **kwargs)

    def _resolve_linearizer(self, linearizer: Any) -> Callable:
        lin = linearizer if linearizer is not None else self.linearizer
        if lin is None:
            raise ConfigError("no track linearizer given to the fitter")
        fn = getattr(lin, "linearize_track", lin)
        if not callable(fn):
            raise ConfigError(f"linearizer {lin!r} is not callable")
        return fn

    @staticmethod
    def degrees_of_freedom(n_tracks: int, constrained: bool) -> int:
        """``2n - 3`` for ``n >= 2`` tracks, else ``1``; ``+3`` with an active constraint."""
        ndf = 2 * n_tracks - 3 if n_tracks >= 2 else 1
        return ndf + 3 if constrained else ndf

    def fit(self,
            tracks: Sequence[Any],
            linearizer: Any = None,
            constraint: Optional[VertexConstraint] = None) -> Vertex:
        r"""
        Fit a common vertex to ``tracks``.

        Parameters
        ----------
        tracks : sequence
            Trajectories; each is passed through ``extract_parameters``.
        linearizer : TrackLinearizer or callable, optional
            Collaborator with ``linearize_track(params, point)`` (or a plain
            callable with that signature). Defaults to the instance's one.
        constraint : VertexConstraint, optional
            Prior on the vertex position. Its position is the starting point
            of the iteration; it enters the fit only if its covariance trace
            is nonzero.

        Returns
        -------
        Vertex
            Best (lowest :math:`\chi^2`) iteration. Iterations with a
            non-finite :math:`\chi^2` are discarded. For an empty ``tracks``,
            or when no iteration produced a finite :math:`\chi^2`, the default
            origin vertex.

        Raises
        ------
        SingularMatrixError
            A parameter covariance, :math:`G_i`, :math:`V_{wgt}` or the active
            constraint covariance is singular.
        LinearizationError
            Raised by the collaborator; not retried.
        """
        tracks = list(tracks)
        n_tracks = len(tracks)
        if n_tracks == 0:
            return Vertex()

        linearize = self._resolve_linearizer(linearizer)
        backend = self._backend

        use_constraint = constraint is not None and constraint.is_active
        ndf = self.degrees_of_freedom(n_tracks, use_constraint)
        c_weight = None
        if use_constraint:
            c_weight = backend.invert3(constraint.covariance, "vertex constraint covariance")

        lin_point = (constraint.position.copy() if constraint is not None
                     else np.zeros(3, dtype=np.float64))

        params = [self.extract_parameters(t) for t in tracks]
        momenta = np.array([[p.phi, p.theta, p.qop] for p in params], dtype=np.float64)

        best_chi2 = np.inf
        fitted = Vertex()

        for n_iter in range(1, self.max_iterations + 1):
            sums = BilloirVertex()
            cache: List[BilloirTrack] = []
            for trk, par, mom in zip(tracks, params, momenta):
                lin = linearize(par, lin_point)
                bt = BilloirTrack.build(trk, lin, mom, backend)
                sums.add(bt)
                cache.append(bt)

            v_del = sums.T - sums.BCU
            v_wgt = sums.A - sums.BCB
            offset = None
            if use_constraint:
                offset = constraint.position - lin_point
                v_del = v_del + c_weight @ offset
                v_wgt = v_wgt + c_weight

            cov = backend.invert3(v_wgt, "vertex weight matrix")
            delta_v = cov @ v_del

            new_chi2 = 0.0
            new_momenta = momenta.copy()
            refit_covs: List[np.ndarray] = []
            for i, bt in enumerate(cache):
                delta_p = bt.C_inv @ (bt.U - bt.B.T @ delta_v)
                new_momenta[i] += delta_p
                new_momenta[i, 0], new_momenta[i, 1] = backend.correct_angles(
                    new_momenta[i, 0], new_momenta[i, 1])

                refit_covs.append(self._refit_covariance(bt, cov))

                r = bt.delta_q - bt.D @ delta_v - bt.E @ delta_p
                bt.chi2 = chi2_quadratic(r, bt.weight)
                new_chi2 += bt.chi2

            if use_constraint:
                d = delta_v - offset
                new_chi2 += chi2_quadratic(d, c_weight)

            # A NaN/inf chi2 never beats the best one; the state is left as it was.
            if not np.isfinite(new_chi2):
                self.log.warning("iteration %d: non-finite chi2, iteration discarded", n_iter)
                continue

            momenta = new_momenta
            lin_point = lin_point + delta_v
            step = float(np.linalg.norm(delta_v))
            improved = new_chi2 < best_chi2
            self.log.debug("iteration %d: chi2=%.6g |dV|=%.3g improved=%s",
                           n_iter, new_chi2, step, improved)

            if improved:
                best_chi2 = new_chi2
                fitted = self._make_vertex(lin_point, cov, new_chi2, ndf,
                                           cache, params, momenta, refit_covs, n_iter)

            if self.convergence_tolerance is not None and step < self.convergence_tolerance:
                self.log.debug("converged after %d iterations", n_iter)
                break

        return fitted

    @staticmethod
    def _refit_covariance(bt: BilloirTrack, cov: np.ndarray) -> np.ndarray:
        r"""
        Covariance of the refitted perigee parameters at the vertex.

        The joint covariance of :math:`(\mathbf{V}, \mathbf{p})` is

        .. math::

            \begin{pmatrix} V_{VV} & V_{VP} \\ V_{VP}^\top & V_{PP}\end{pmatrix},
            \quad V_{VV} = \mathrm{cov},\
            V_{VP} = -\mathrm{cov}\,G\,C^{-1},\
            V_{PP} = C^{-1} + BC^\top\,\mathrm{cov}\,BC,

        projected onto :math:`(d_0, z_0, \phi, \theta, q/p)` with the
        :math:`5\times 6` map whose transverse block is taken from :math:`D`.
        """
        vp = -cov @ bt.G @ bt.C_inv
        pp = bt.C_inv + bt.BC.T @ cov @ bt.BC

        cov6 = np.zeros((6, 6))
        cov6[:3, :3] = cov
        cov6[:3, 3:] = vp
        cov6[3:, :3] = vp.T
        cov6[3:, 3:] = pp

        trans = np.zeros((5, 6))
        trans[0:2, 0:2] = bt.D[0:2, 0:2]
        trans[1, 2] = 1.0
        trans[2, 3] = trans[3, 4] = trans[4, 5] = 1.0
        return trans @ cov6 @ trans.T

    @staticmethod
    def _make_vertex(position: np.ndarray,
                     cov: np.ndarray,
                     chi2: float,
                     ndf: int,
                     cache: Sequence[BilloirTrack],
                     params: Sequence[PerigeeTrack],
                     momenta: np.ndarray,
                     refit_covs: Sequence[np.ndarray],
                     n_iter: int) -> Vertex:
        vertex_pos = position.copy()
        tracks_at_vertex = []
        for bt, par, mom, rcov in zip(cache, params, momenta, refit_covs):
            refitted = PerigeeTrack(
                parameters=np.array([0.0, 0.0, mom[0], mom[1], mom[2]]),
                covariance=rcov,
                reference_point=vertex_pos.copy(),
                track_id=par.track_id,
            )
            tracks_at_vertex.append(TrackAtVertex(
                chi2=float(bt.chi2),
                fitted_params=refitted,
                original_track=bt.original_track,
            ))
        return Vertex(
            position=vertex_pos,
            covariance=cov.copy(),
            chi2=float(chi2),
            ndf=ndf,
            tracks=tracks_at_vertex,
            n_iterations=n_iter,
        )
