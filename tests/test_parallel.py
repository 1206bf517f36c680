import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vertex_reco.event_data import PerigeeTrack
from vertex_reco.exceptions import SingularMatrixError
from vertex_reco.fitters import FullBilloirVertexFitter
from vertex_reco.linearizers import HelicalTrackLinearizer
from vertex_reco.parallel import VertexFitResult, fit_vertices
from vertex_reco.simulate import make_vertex_tracks

VERTICES = [
    np.array([0.0, 0.0, -0.05]),
    np.array([1e-4, -2e-4, 0.02]),
    np.array([-3e-4, 1e-4, 0.11]),
]


def _candidates():
    rng = np.random.default_rng(21)
    return [make_vertex_tracks(v, 6, rng, pt_range=(1.0, 5.0), eta_range=(-1.0, 1.0)) for v in VERTICES]


def _bad_candidate():
    trk = PerigeeTrack([0.0, 0.0, 0.3, np.pi / 2, 0.5], np.diag([1e-8, 1e-8, 1e-6, 1e-6, 1e-4]))
    return [trk, trk]


@pytest.mark.parametrize("workers", [1, 4])
def test_results_in_input_order(workers):
    fitter = FullBilloirVertexFitter(max_iterations=8)
    results = fit_vertices(_candidates(), fitter, HelicalTrackLinearizer(B_z=2.0), max_workers=workers)
    assert [r.index for r in results] == [0, 1, 2]
    for r, v in zip(results, VERTICES):
        assert isinstance(r, VertexFitResult)
        assert r.ok and r.error is None
        assert r.time_s >= 0.0
        assert np.allclose(r.vertex.position, v, atol=1e-6)


@pytest.mark.parametrize("workers", [1, 3])
def test_failed_candidate_is_recorded(workers):
    cands = _candidates()
    cands.insert(1, _bad_candidate())
    results = fit_vertices(cands, FullBilloirVertexFitter(), HelicalTrackLinearizer(B_z=2.0),
                           max_workers=workers)
    assert [r.ok for r in results] == [True, False, True, True]
    assert results[1].vertex is None
    assert results[1].error.startswith("SingularMatrixError")


@pytest.mark.parametrize("workers", [1, 3])
def test_raise_on_error(workers):
    cands = [_bad_candidate()] + _candidates()
    with pytest.raises(SingularMatrixError):
        fit_vertices(cands, FullBilloirVertexFitter(), HelicalTrackLinearizer(B_z=2.0),
                     max_workers=workers, raise_on_error=True)


def test_empty_candidate_list():
    assert fit_vertices([], FullBilloirVertexFitter(), HelicalTrackLinearizer()) == []
