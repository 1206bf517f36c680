import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vertex_reco.config import BilloirFitterConfig
from vertex_reco.event_data import (
    LinearizedTrack,
    PerigeeTrack,
    VertexConstraint,
    direction_vector,
    momentum_vector,
)
from vertex_reco.exceptions import ConfigError, SingularMatrixError
from vertex_reco.fitters import BilloirTrack, BilloirVertex, FullBilloirVertexFitter
from vertex_reco.linearizers import HelicalTrackLinearizer, StraightLineLinearizer
from vertex_reco.simulate import make_vertex_tracks
from vertex_reco.vertex_kernels import MathBackend


TRUE_VERTEX = np.array([0.1, -0.2, 1.5])

# D rows for the two mock tracks: A measures (x, z), B measures (y, z)
D_A = np.zeros((5, 3))
D_A[0, 0] = D_A[1, 2] = 1.0
D_B = np.zeros((5, 3))
D_B[0, 1] = D_B[1, 2] = 1.0
E_MOM = np.zeros((5, 3))
E_MOM[2, 0] = E_MOM[3, 1] = E_MOM[4, 2] = 1.0


def _mock_track(track_id, phi=0.2, theta=1.0, qop=0.5):
    return PerigeeTrack([0.0, 0.0, phi, theta, qop], np.eye(5), track_id=track_id)


class MockLinearizer:
    """Fixed Jacobians; z0 of track ``k`` is ``sign_k * z0_per_call[iteration]``."""

    def __init__(self, z0_per_call=(0.0,), angle_shift=(0.0, 0.0), E=E_MOM):
        self.z0_per_call = list(z0_per_call)
        self.angle_shift = angle_shift
        self.E = E
        self.points = []

    def linearize_track(self, params, reference_point):
        self.points.append(np.array(reference_point, dtype=float))
        it = (len(self.points) - 1) // 2
        s = self.z0_per_call[min(it, len(self.z0_per_call) - 1)]
        sign = 1.0 if params.track_id == 0 else -1.0
        q = params.parameters.copy()
        q[0] = 0.0
        q[1] = sign * s
        q[2] += self.angle_shift[0]
        q[3] += self.angle_shift[1]
        return LinearizedTrack(
            parameters_at_pca=q,
            covariance_at_pca=np.eye(5),
            linearization_point=np.array(reference_point, dtype=float),
            position_jacobian=D_A if params.track_id == 0 else D_B,
            momentum_jacobian=self.E,
            position_at_pca=np.array(reference_point, dtype=float),
            momentum_at_pca=q[2:5].copy(),
        )


def _simulated(B_z, n=5, seed=11, resolution=(2e-5, 5e-5, 1e-4, 1e-4, 0.01)):
    rng = np.random.default_rng(seed)
    return make_vertex_tracks(TRUE_VERTEX, n, rng, B_z=B_z, pt_range=(1.0, 10.0),
                              eta_range=(-1.5, 1.5), resolution=resolution)


def test_zero_tracks_give_default_vertex():
    fitter = FullBilloirVertexFitter()
    v = fitter.fit([], StraightLineLinearizer())
    assert np.array_equal(v.position, np.zeros(3))
    assert np.array_equal(v.covariance, np.zeros((3, 3)))
    assert v.tracks == []
    assert v.n_iterations == 0


@pytest.mark.parametrize("n,constrained,expected", [
    (1, False, 1),
    (1, True, 4),
    (2, False, 1),
    (5, False, 7),
    (5, True, 10),
])
def test_degrees_of_freedom(n, constrained, expected):
    assert FullBilloirVertexFitter.degrees_of_freedom(n, constrained) == expected


def test_ndf_of_fitted_vertex():
    tracks = _simulated(B_z=0.0)
    lin = StraightLineLinearizer()
    fitter = FullBilloirVertexFitter(max_iterations=3)
    assert fitter.fit(tracks, lin).ndf == 7

    beam = VertexConstraint.beam_spot(0.01, 1.0, center=TRUE_VERTEX)
    assert fitter.fit(tracks, lin, beam).ndf == 10

    inactive = VertexConstraint(position=TRUE_VERTEX)
    assert fitter.fit(tracks, lin, inactive).ndf == 7


def test_single_track_with_constraint():
    tracks = _simulated(B_z=2.0, n=1)
    beam = VertexConstraint.beam_spot(1e-3, 1e-2, center=TRUE_VERTEX)
    v = FullBilloirVertexFitter().fit(tracks, HelicalTrackLinearizer(B_z=2.0), beam)
    assert v.ndf == 4
    assert len(v.tracks) == 1


@pytest.mark.parametrize("B_z,lin", [
    (0.0, StraightLineLinearizer()),
    (2.0, HelicalTrackLinearizer(B_z=2.0)),
])
def test_recovers_noise_free_vertex(B_z, lin):
    tracks = _simulated(B_z)
    v = FullBilloirVertexFitter(max_iterations=10).fit(tracks, lin)
    assert np.allclose(v.position, TRUE_VERTEX, atol=1e-6)
    assert v.chi2 < 1e-6
    assert v.ndf == 7
    assert 1 <= v.n_iterations <= 10
    assert np.all(np.linalg.eigvalsh(v.covariance) > 0)

    # refitted tracks are anchored at the vertex and keep the input order
    for t_in, tav in zip(tracks, v.tracks):
        assert tav.original_track is t_in
        assert tav.fitted_params.track_id == t_in.track_id
        assert np.allclose(tav.fitted_params.reference_point, v.position)
        assert np.allclose(tav.fitted_params.parameters[:2], 0.0)
        assert tav.fitted_params.covariance.shape == (5, 5)


def test_convergence_tolerance_stops_early():
    tracks = _simulated(B_z=2.0)
    lin = HelicalTrackLinearizer(B_z=2.0)
    full = FullBilloirVertexFitter(max_iterations=20).fit(tracks, lin)
    early = FullBilloirVertexFitter(max_iterations=20, convergence_tolerance=1e-9).fit(tracks, lin)
    assert early.n_iterations < 20
    assert np.allclose(early.position, full.position, atol=1e-8)


def test_fit_is_deterministic():
    tracks = _simulated(B_z=2.0, seed=5)
    lin = HelicalTrackLinearizer(B_z=2.0)
    fitter = FullBilloirVertexFitter(max_iterations=4)
    a = fitter.fit(tracks, lin)
    b = fitter.fit(tracks, lin)
    assert np.array_equal(a.position, b.position)
    assert np.array_equal(a.covariance, b.covariance)
    assert a.chi2 == b.chi2
    for ta, tb in zip(a.tracks, b.tracks):
        assert np.array_equal(ta.fitted_params.parameters, tb.fitted_params.parameters)


def test_tight_constraint_pins_vertex():
    # target is far from where the tracks meet, so only the constraint can hold it
    tracks = _simulated(B_z=0.0, resolution=(1e-3, 1e-3, 1e-3, 1e-3, 0.01))
    target = np.zeros(3)
    constraint = VertexConstraint(position=target, covariance=np.eye(3) * 1e-14)
    v = FullBilloirVertexFitter(max_iterations=5).fit(tracks, StraightLineLinearizer(), constraint)
    assert np.allclose(v.position, target, atol=1e-5)
    assert not np.allclose(v.position, TRUE_VERTEX, atol=0.1)
    assert v.ndf == 10

    free = FullBilloirVertexFitter(max_iterations=10).fit(tracks, StraightLineLinearizer())
    assert np.allclose(free.position, TRUE_VERTEX, atol=1e-6)


def test_singular_active_constraint_raises():
    tracks = _simulated(B_z=0.0)
    constraint = VertexConstraint(covariance=np.diag([1.0, 0.0, 0.0]))
    with pytest.raises(SingularMatrixError):
        FullBilloirVertexFitter().fit(tracks, StraightLineLinearizer(), constraint)


def test_iteration_starts_at_constraint_position():
    lin = MockLinearizer()
    start = np.array([1.0, 2.0, 3.0])
    FullBilloirVertexFitter(max_iterations=1).fit(
        [_mock_track(0), _mock_track(1)], lin, VertexConstraint(position=start))
    assert np.array_equal(lin.points[0], start)

    lin = MockLinearizer()
    FullBilloirVertexFitter(max_iterations=1).fit([_mock_track(0), _mock_track(1)], lin)
    assert np.array_equal(lin.points[0], np.zeros(3))


def test_keeps_best_iteration():
    # z0 residuals +-s give chi2 = 2 s^2 per iteration: 2, 18, 8
    lin = MockLinearizer(z0_per_call=(1.0, 3.0, 2.0))
    v = FullBilloirVertexFitter(max_iterations=3).fit([_mock_track(0), _mock_track(1)], lin)
    assert v.chi2 == pytest.approx(2.0)
    assert v.n_iterations == 1
    assert np.allclose(v.covariance, np.diag([1.0, 1.0, 0.5]))
    assert [t.chi2 for t in v.tracks] == pytest.approx([1.0, 1.0])
    # the loop still ran the whole budget
    assert len(lin.points) == 6


def test_non_finite_iteration_is_discarded():
    # iteration 2 has an infinite z0 residual: chi2 2, nan, 8
    lin = MockLinearizer(z0_per_call=(1.0, np.inf, 2.0))
    v = FullBilloirVertexFitter(max_iterations=3).fit([_mock_track(0), _mock_track(1)], lin)
    assert v.chi2 == pytest.approx(2.0)
    assert v.n_iterations == 1
    assert np.all(np.isfinite(v.position))
    assert len(lin.points) == 6
    # the discarded iteration did not move the linearization point
    assert all(np.all(np.isfinite(p)) for p in lin.points)
    assert np.array_equal(lin.points[4], lin.points[2])


def test_no_finite_iteration_returns_default_vertex():
    lin = MockLinearizer(z0_per_call=(np.inf,))
    v = FullBilloirVertexFitter(max_iterations=3).fit([_mock_track(0), _mock_track(1)], lin)
    assert np.array_equal(v.position, np.zeros(3))
    assert np.array_equal(v.covariance, np.zeros((3, 3)))
    assert v.tracks == []
    assert v.n_iterations == 0
    assert len(lin.points) == 6


def test_angles_are_normalized_after_update():
    lin = MockLinearizer(angle_shift=(0.2, -0.2))
    tracks = [_mock_track(0, phi=3.1, theta=0.1), _mock_track(1, phi=3.1, theta=0.1)]
    v = FullBilloirVertexFitter(max_iterations=1).fit(tracks, lin)
    for tav in v.tracks:
        phi, theta = tav.fitted_params.phi, tav.fitted_params.theta
        assert -np.pi < phi <= np.pi
        assert 0.0 <= theta <= np.pi
        assert np.allclose(direction_vector(phi, theta), direction_vector(3.3, -0.1), atol=1e-12)
        assert np.allclose(tav.fitted_params.momentum(), momentum_vector(3.3, -0.1, 0.5), atol=1e-12)


def test_rank_deficient_momentum_jacobian_raises():
    E = E_MOM.copy()
    E[:, 2] = 0.0
    with pytest.raises(SingularMatrixError) as exc:
        FullBilloirVertexFitter().fit([_mock_track(0), _mock_track(1)], MockLinearizer(E=E))
    assert "G" in exc.value.matrix_name


def test_identical_tracks_raise():
    trk = PerigeeTrack([0.0, 0.0, 0.3, np.pi / 2, 0.5], np.diag([1e-8, 1e-8, 1e-6, 1e-6, 1e-4]))
    with pytest.raises(SingularMatrixError):
        FullBilloirVertexFitter().fit([trk, trk], StraightLineLinearizer())


def test_single_track_without_constraint_is_singular():
    trk = PerigeeTrack([0.0, 0.0, 0.3, np.pi / 2, 0.5], np.diag([1e-8, 1e-8, 1e-6, 1e-6, 1e-4]))
    fitter = FullBilloirVertexFitter()
    assert fitter.degrees_of_freedom(1, False) == 1
    with pytest.raises(SingularMatrixError) as exc:
        fitter.fit([trk], StraightLineLinearizer())
    assert "vertex" in exc.value.matrix_name


def test_missing_linearizer_is_config_error():
    with pytest.raises(ConfigError):
        FullBilloirVertexFitter().fit([_mock_track(0)])


def test_invalid_iteration_budget():
    with pytest.raises(ConfigError):
        FullBilloirVertexFitter(max_iterations=0)


def test_default_linearizer_and_plain_callable():
    tracks = [_mock_track(0), _mock_track(1)]
    a = FullBilloirVertexFitter(linearizer=MockLinearizer(z0_per_call=(0.5,))).fit(tracks)
    b = FullBilloirVertexFitter().fit(tracks, MockLinearizer(z0_per_call=(0.5,)).linearize_track)
    assert a.chi2 == pytest.approx(0.5)
    assert b.chi2 == pytest.approx(0.5)


def test_from_config():
    fitter = FullBilloirVertexFitter.from_config(BilloirFitterConfig(max_iterations=7, convergence_tolerance=1e-6))
    assert fitter.max_iterations == 7
    assert fitter.convergence_tolerance == 1e-6


def test_extract_parameters_adapter():
    class Wrapped:
        def __init__(self, params):
            self.params = params

    tracks = _simulated(B_z=0.0)
    wrapped = [Wrapped(t) for t in tracks]
    fitter = FullBilloirVertexFitter(max_iterations=6, extract_parameters=lambda w: w.params)
    v = fitter.fit(wrapped, StraightLineLinearizer())
    assert np.allclose(v.position, TRUE_VERTEX, atol=1e-6)
    assert v.tracks[0].original_track is wrapped[0]
    assert v.tracks[0].fitted_params.track_id == tracks[0].track_id


def test_custom_backend_is_used():
    calls = []

    def counting_invert3(M, name):
        calls.append(name)
        return MathBackend().invert3(M, name)

    fitter = FullBilloirVertexFitter(max_iterations=2, backend=MathBackend(invert3=counting_invert3))
    fitter.fit([_mock_track(0), _mock_track(1)], MockLinearizer())
    # two G inverses plus the vertex weight matrix per iteration
    assert len(calls) == 6


def test_billoir_vertex_merge_matches_sequential_sum():
    tracks = _simulated(B_z=2.0)
    lin = HelicalTrackLinearizer(B_z=2.0)
    backend = MathBackend()
    cache = []
    for t in tracks:
        lt = lin.linearize_track(t, np.zeros(3))
        cache.append(BilloirTrack.build(t, lt, np.array([t.phi, t.theta, t.qop]), backend))

    total = BilloirVertex()
    for bt in cache:
        total.add(bt)
    left, right = BilloirVertex(), BilloirVertex()
    for bt in cache[:2]:
        left.add(bt)
    for bt in cache[2:]:
        right.add(bt)
    merged = left.merge(right)
    for name in ("A", "T", "BCB", "BCU"):
        assert np.allclose(getattr(merged, name), getattr(total, name))
