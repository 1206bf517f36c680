import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.patches import Ellipse

from vertex_reco.event_data import PerigeeTrack, Vertex

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Safe in headless mode where ``plt.show()`` may be patched to a no-op.
    """
    fig.tight_layout()
    if do_show:
        plt.show()
    plt.close(fig)


def covariance_ellipse(center: Sequence[float], cov2: np.ndarray, n_sigma: float = 1.0, **kwargs) -> Ellipse:
    r"""
    :class:`~matplotlib.patches.Ellipse` of a :math:`2\times 2` covariance.

    The axes are :math:`2 n_\sigma\sqrt{\lambda_{1,2}}` along the eigenvectors
    of ``cov2``.
    """
    vals, vecs = np.linalg.eigh(np.asarray(cov2, dtype=np.float64))
    vals = np.clip(vals, 0.0, None)
    angle = float(np.degrees(np.arctan2(vecs[1, 1], vecs[0, 1])))
    width, height = 2.0 * n_sigma * np.sqrt(vals[1]), 2.0 * n_sigma * np.sqrt(vals[0])
    return Ellipse(xy=tuple(center), width=width, height=height, angle=angle, **kwargs)


def plot_vertex_fit_xy(tracks: Sequence[PerigeeTrack],
                       vertex: Vertex,
                       truth: Optional[Sequence[float]] = None,
                       *,
                       half_length: Optional[float] = None,
                       show: bool = True):
    r"""
    Transverse view of the tracks around a fitted vertex.

    Each track is drawn as the tangent line through its PCA in the direction
    :math:`\phi`, the fitted vertex with its :math:`1\sigma` ellipse, and the
    truth position if given.

    Returns
    -------
    matplotlib.figure.Figure
        Closed after showing; still usable for ``savefig``.
    """
    fig, ax = plt.subplots(figsize=(7, 7))
    v = np.asarray(vertex.position, dtype=np.float64)
    sig = np.sqrt(np.clip(np.diag(vertex.covariance)[:2], 0.0, None))
    span = half_length or max(5.0 * float(sig.max(initial=0.0)), 1e-4)

    for t in tracks:
        p = t.position()
        d = np.array([np.cos(t.phi), np.sin(t.phi)])
        s = np.linspace(-span, span, 2) + float(np.dot(v[:2] - p[:2], d))
        ax.plot(p[0] + s * d[0], p[1] + s * d[1], lw=0.8, alpha=0.6)

    ax.add_patch(covariance_ellipse(v[:2], vertex.covariance[:2, :2],
                                    fill=False, color="crimson", lw=1.5, label=r"1$\sigma$"))
    ax.plot(v[0], v[1], "x", color="crimson", ms=10, label="fitted")
    if truth is not None:
        ax.plot(truth[0], truth[1], "o", mfc="none", color="black", ms=8, label="truth")

    ax.set_xlim(v[0] - span, v[0] + span)
    ax.set_ylim(v[1] - span, v[1] + span)
    ax.set_aspect("equal")
    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_title(f"Vertex fit: {len(tracks)} tracks, "
                 rf"$\chi^2$/ndf = {vertex.chi2:.2f}/{vertex.ndf}")
    ax.grid(True, alpha=0.25)
    ax.legend(loc="best")
    _show_and_close(fig, do_show=show)
    return fig


def plot_pulls(summary: pd.DataFrame, *, bins: int = 30, show: bool = True):
    """
    Histograms of the per-axis pulls from :func:`~vertex_reco.metrics.summarize_fits`,
    overlaid with a unit Gaussian.
    """
    fig, axes = plt.subplots(1, 3, figsize=(13, 4))
    grid = np.linspace(-5, 5, 200)
    gauss = np.exp(-0.5 * grid ** 2) / np.sqrt(2.0 * np.pi)
    for ax, a in zip(axes, ("x", "y", "z")):
        col = f"pull_{a}"
        vals = summary[col].to_numpy(dtype=float) if col in summary else np.empty(0)
        vals = vals[np.isfinite(vals)]
        if vals.size:
            ax.hist(vals, bins=bins, range=(-5, 5), density=True, alpha=0.7)
            ax.set_title(f"pull {a}: mean {vals.mean():.2f}, std {vals.std():.2f}")
        else:
            ax.set_title(f"pull {a}: no data")
        ax.plot(grid, gauss, "k--", lw=1)
        ax.set_xlabel(f"pull {a}")
    _show_and_close(fig, do_show=show)
    return fig
