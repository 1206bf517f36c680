r"""
Vertex candidate finding by longitudinal proximity.

Tracks are the nodes of an undirected :class:`networkx.Graph`; two tracks are
joined when their longitudinal impact parameters (w.r.t. a common reference)
satisfy :math:`|z_{0,i} - z_{0,j}| < \Delta z_{max}`. The connected components
are the vertex candidates, i.e. the grouping is single-linkage clustering in
:math:`z_0`.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import networkx as nx
import numpy as np

from vertex_reco.event_data import PerigeeTrack

logger = logging.getLogger(__name__)

__all__ = ["track_graph", "group_tracks_by_z0"]


def track_graph(tracks: Sequence[PerigeeTrack], max_dz: float) -> nx.Graph:
    """
    Proximity graph of ``tracks`` (nodes are list indices).

    Sorting by :math:`z_0` limits the pair scan to neighbours within
    ``max_dz``.
    """
    if max_dz <= 0:
        raise ValueError(f"max_dz must be positive, got {max_dz!r}")
    G = nx.Graph()
    G.add_nodes_from(range(len(tracks)))
    if not tracks:
        return G

    z0 = np.array([t.reference_point[2] + t.z0 for t in tracks], dtype=np.float64)
    order = np.argsort(z0, kind="stable")
    zs = z0[order]
    for a in range(len(order)):
        b = a + 1
        while b < len(order) and zs[b] - zs[a] < max_dz:
            G.add_edge(int(order[a]), int(order[b]), dz=float(zs[b] - zs[a]))
            b += 1
    return G


def group_tracks_by_z0(tracks: Sequence[PerigeeTrack], max_dz: float) -> List[List[int]]:
    r"""
    Split ``tracks`` into vertex candidates.

    Parameters
    ----------
    tracks : sequence of PerigeeTrack
    max_dz : float
        Linking distance in :math:`z` (meters).

    Returns
    -------
    list[list[int]]
        Track indices per candidate, each sorted ascending; candidates ordered
        by their smallest member index.
    """
    G = track_graph(tracks, max_dz)
    groups = [sorted(c) for c in nx.connected_components(G)]
    groups.sort(key=lambda g: g[0])
    logger.debug("grouped %d tracks into %d candidates", len(tracks), len(groups))
    return groups
