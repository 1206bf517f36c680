from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from vertex_reco.event_data import Vertex

__all__ = ["vertex_residuals", "vertex_pulls", "match_truth", "summarize_fits"]

_AXES = ("x", "y", "z")


def vertex_residuals(vertex: Vertex, truth: Sequence[float]) -> np.ndarray:
    r"""Position residual :math:`\mathbf{V}_{fit} - \mathbf{V}_{true}` (meters)."""
    return np.asarray(vertex.position, dtype=np.float64) - np.asarray(truth, dtype=np.float64).reshape(3)


def vertex_pulls(vertex: Vertex, truth: Sequence[float]) -> np.ndarray:
    r"""
    Per-axis pulls

    .. math::

        \text{pull}_k = \frac{V_{fit,k} - V_{true,k}}{\sqrt{\mathrm{cov}_{kk}}}.

    Axes with a non-positive variance give ``nan``. For a well-calibrated fit
    each pull distribution is standard normal.
    """
    res = vertex_residuals(vertex, truth)
    var = np.diag(np.asarray(vertex.covariance, dtype=np.float64))
    out = np.full(3, np.nan)
    ok = var > 0.0
    out[ok] = res[ok] / np.sqrt(var[ok])
    return out


def match_truth(groups: Sequence[Sequence[int]],
                labels: np.ndarray,
                truth: pd.DataFrame) -> list:
    """
    Truth position of each candidate by majority vote over its tracks' labels.

    Returns a list of ``(3,)`` arrays (or ``None`` for an empty group).
    """
    by_id = truth.set_index("vertex_id")[list(_AXES)]
    out = []
    for g in groups:
        if len(g) == 0:
            out.append(None)
            continue
        ids, counts = np.unique(np.asarray(labels)[list(g)], return_counts=True)
        vid = ids[np.argmax(counts)]
        out.append(by_id.loc[vid].to_numpy(dtype=np.float64))
    return out


def summarize_fits(results: Sequence, truths: Optional[Sequence] = None) -> pd.DataFrame:
    r"""
    One row per candidate fit.

    Parameters
    ----------
    results : sequence of VertexFitResult
    truths : sequence, optional
        Truth positions aligned with ``results`` (entries may be ``None``).

    Returns
    -------
    pandas.DataFrame
        Columns ``candidate, ok, n_tracks, x, y, z, chi2, ndf, chi2_ndf, prob,
        n_iterations, time_s, error`` plus ``res_*`` / ``pull_*`` per axis when
        a truth position is known (``nan`` otherwise).
    """
    rows = []
    for k, r in enumerate(results):
        truth = truths[k] if truths is not None else None
        row = {"candidate": r.index, "ok": r.ok, "time_s": r.time_s, "error": r.error}
        v = r.vertex
        if v is not None:
            row.update({
                "n_tracks": len(v.tracks),
                "x": v.position[0], "y": v.position[1], "z": v.position[2],
                "chi2": v.chi2, "ndf": v.ndf,
                "chi2_ndf": v.chi2_per_ndf, "prob": v.fit_probability,
                "n_iterations": v.n_iterations,
            })
        if v is not None and truth is not None:
            res = vertex_residuals(v, truth)
            pulls = vertex_pulls(v, truth)
            for a, rv, pv in zip(_AXES, res, pulls):
                row[f"res_{a}"] = rv
                row[f"pull_{a}"] = pv
        rows.append(row)

    cols = ["candidate", "ok", "n_tracks", "x", "y", "z", "chi2", "ndf", "chi2_ndf",
            "prob", "n_iterations", "time_s", "error"]
    cols += [f"res_{a}" for a in _AXES] + [f"pull_{a}" for a in _AXES]
    df = pd.DataFrame(rows, columns=cols)
    df["ok"] = df["ok"].astype(bool)
    return df
