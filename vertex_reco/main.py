#!/usr/bin/env python3
r"""
Synthetic vertexing runner (headless-safe).

Generates a synthetic event (:func:`vertex_reco.simulate.make_event`), groups
the tracks into vertex candidates by longitudinal impact parameter
(:func:`vertex_reco.grouping.group_tracks_by_z0`), fits every candidate with the
full Billoir fitter (optionally on a thread pool and with a beam-spot
constraint) and reports residuals and pulls against the truth.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   vertex-reco --seed 7 --n-vertices 20 --workers 8 --summary-csv fits.csv
   vertex-reco --config run.json --beam-constraint --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import orjson

from vertex_reco.config import RunConfig, build_run_config, deep_update, load_config
from vertex_reco.event_data import VertexConstraint
from vertex_reco.exceptions import VertexingError
from vertex_reco.fitters import FullBilloirVertexFitter
from vertex_reco.grouping import group_tracks_by_z0
from vertex_reco.metrics import match_truth, summarize_fits
from vertex_reco.parallel import fit_vertices
from vertex_reco.simulate import make_event

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser

    Notes
    -----
    Command-line values override the matching entries of ``--config``.
    """
    p = argparse.ArgumentParser(description="Fit vertices in a synthetic event with the Billoir method.")
    p.add_argument("--config", type=str, default=None,
                   help="Optional JSON config with 'fitter', 'linearizer', 'simulation' blocks.")
    p.add_argument("-s", "--seed", type=int, default=None,
                   help="Random seed for event generation (default: None).")
    p.add_argument("-n", "--n-vertices", type=int, default=None,
                   help="Number of simulated vertices.")
    p.add_argument("--bz", type=float, default=None,
                   help="Solenoid field in Tesla (0 for straight tracks).")
    p.add_argument("--model", type=str, choices=("helix", "straight"), default=None,
                   help="Track model used by the fit.")
    p.add_argument("--max-iterations", type=int, default=None,
                   help="Billoir iterations per fit.")
    p.add_argument("--tolerance", type=float, default=None,
                   help="Stop once |dV| falls below this (default: full budget).")
    p.add_argument("--max-dz", type=float, default=0.002,
                   help="z0 linking distance for candidate grouping in meters (default: 0.002).")
    p.add_argument("--beam-constraint", action="store_true", default=False,
                   help="Constrain fits to the simulated beam spot.")
    p.add_argument("--workers", type=int, default=8,
                   help="Thread pool size for candidate fits; 1 is sequential (default: 8).")
    p.add_argument("--summary-csv", type=str, default=None,
                   help="If set, write the per-candidate summary to this CSV.")
    p.add_argument("--report-json", type=str, default=None,
                   help="If set, write a JSON run report to this path.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show the pull histograms and the best-populated fit.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a headless-safe Matplotlib configuration when plotting is disabled.

    Must be called before importing :mod:`vertex_reco.plotting`.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt
    _plt.ioff()


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    over: Dict[str, Dict[str, Any]] = {"fitter": {}, "linearizer": {}, "simulation": {}}
    if args.max_iterations is not None:
        over["fitter"]["max_iterations"] = args.max_iterations
    if args.tolerance is not None:
        over["fitter"]["convergence_tolerance"] = args.tolerance
    if args.bz is not None:
        over["linearizer"]["B_z"] = args.bz
    if args.model is not None:
        over["linearizer"]["model"] = args.model
    if args.n_vertices is not None:
        over["simulation"]["n_vertices"] = args.n_vertices
    return over


def resolve_config(args: argparse.Namespace) -> RunConfig:
    """Merge ``--config`` (if any) with command-line overrides and validate."""
    raw: Dict[str, Any] = {}
    if args.config:
        logger.info("Reading config from %s", args.config)
        raw = load_config(Path(args.config))
    return build_run_config(deep_update(raw, _cli_overrides(args)))


def _report(cfg: RunConfig, args: argparse.Namespace, summary, timing: Dict[str, float]) -> Dict[str, Any]:
    ok = summary[summary["ok"]]
    return {
        "seed": args.seed,
        "fitter": {"max_iterations": cfg.fitter.max_iterations,
                   "convergence_tolerance": cfg.fitter.convergence_tolerance},
        "linearizer": {"model": cfg.linearizer.model, "B_z": cfg.linearizer.B_z},
        "beam_constraint": bool(args.beam_constraint),
        "n_candidates": int(len(summary)),
        "n_failed": int((~summary["ok"]).sum()),
        "mean_chi2_ndf": float(ok["chi2_ndf"].mean()) if len(ok) else None,
        "pull_std": {a: float(ok[f"pull_{a}"].std()) if len(ok) > 1 else None for a in ("x", "y", "z")},
        "timing_s": timing,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    r"""
    End-to-end pipeline: **simulate → group → fit → summarize**.

    Returns
    -------
    int
        Process exit code: ``0`` on success, ``2`` for configuration errors,
        ``1`` if any candidate fit failed.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    try:
        cfg = resolve_config(args)
    except VertexingError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    timing: Dict[str, float] = {}
    rng = np.random.default_rng(args.seed)

    t0 = time.perf_counter()
    truth, tracks, labels = make_event(cfg.simulation, rng, B_z=cfg.linearizer.B_z)
    timing["simulate"] = time.perf_counter() - t0
    logger.info("Simulated %d vertices, %d tracks", len(truth), len(tracks))

    t0 = time.perf_counter()
    groups = group_tracks_by_z0(tracks, args.max_dz) if tracks else []
    candidates: List[list] = [[tracks[i] for i in g] for g in groups]
    timing["group"] = time.perf_counter() - t0
    logger.info("Formed %d vertex candidates (max_dz=%.4g m)", len(candidates), args.max_dz)

    constraint = None
    if args.beam_constraint:
        constraint = VertexConstraint.beam_spot(cfg.simulation.beam_sigma_xy, cfg.simulation.beam_sigma_z)

    fitter = FullBilloirVertexFitter.from_config(cfg.fitter)
    linearizer = cfg.linearizer.build()

    t0 = time.perf_counter()
    results = fit_vertices(candidates, fitter, linearizer, constraint=constraint,
                           max_workers=args.workers)
    timing["fit"] = time.perf_counter() - t0

    summary = summarize_fits(results, match_truth(groups, labels, truth))
    ok = summary[summary["ok"]]
    if len(ok):
        logger.info("chi2/ndf mean %.3f | |res| mean x=%.3g y=%.3g z=%.3g m",
                    ok["chi2_ndf"].mean(),
                    ok["res_x"].abs().mean(), ok["res_y"].abs().mean(), ok["res_z"].abs().mean())
    n_failed = int((~summary["ok"]).sum())
    if n_failed:
        logger.warning("%d of %d candidate fits failed", n_failed, len(summary))

    if args.summary_csv:
        summary.to_csv(args.summary_csv, index=False)
        logger.info("Wrote summary to %s", args.summary_csv)
    if args.report_json:
        Path(args.report_json).write_bytes(
            orjson.dumps(_report(cfg, args, summary, timing), option=orjson.OPT_INDENT_2))
        logger.info("Wrote report to %s", args.report_json)

    if args.plot and len(ok):
        from vertex_reco import plotting

        plotting.plot_pulls(summary)
        best = int(ok["n_tracks"].astype(int).idxmax())
        res = results[best]
        plotting.plot_vertex_fit_xy(candidates[best], res.vertex,
                                    truth=match_truth([groups[best]], labels, truth)[0])

    logger.info("Timing: %s", ", ".join(f"{k}={v:.3f}s" for k, v in timing.items()))
    return 1 if n_failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
