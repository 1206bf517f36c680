import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vertex_reco.event_data import PerigeeTrack
from vertex_reco.grouping import group_tracks_by_z0, track_graph


def _tracks(z0s, ref_z=0.0):
    return [PerigeeTrack([0.0, z, 0.1, 1.0, 0.5], np.eye(5), reference_point=[0.0, 0.0, ref_z], track_id=i)
            for i, z in enumerate(z0s)]


def test_groups_by_longitudinal_distance():
    tracks = _tracks([0.0, 0.1, 0.001, 0.05, 0.1015])
    assert group_tracks_by_z0(tracks, 0.002) == [[0, 2], [1, 4], [3]]


def test_single_linkage_chains():
    tracks = _tracks([0.0, 0.0015, 0.003, 0.0045])
    assert group_tracks_by_z0(tracks, 0.002) == [[0, 1, 2, 3]]


def test_reference_point_is_taken_into_account():
    tracks = _tracks([0.0]) + _tracks([0.0], ref_z=0.5)
    assert group_tracks_by_z0(tracks, 0.002) == [[0], [1]]


def test_graph_edges_carry_distance():
    G = track_graph(_tracks([0.0, 0.001]), 0.002)
    assert G.number_of_nodes() == 2
    assert G.edges[0, 1]["dz"] == pytest.approx(0.001)


def test_empty_and_invalid():
    assert group_tracks_by_z0([], 0.01) == []
    with pytest.raises(ValueError):
        group_tracks_by_z0(_tracks([0.0]), 0.0)
