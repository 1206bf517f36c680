import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import orjson
import pandas as pd

from vertex_reco.main import build_parser, main


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.workers == 8
    assert args.max_dz == pytest.approx(0.002)
    assert not args.plot


def test_main_writes_outputs(tmp_path):
    csv_path = tmp_path / "fits.csv"
    json_path = tmp_path / "report.json"
    rc = main([
        "--seed", "4", "-n", "3", "--workers", "2", "--max-iterations", "6",
        "--summary-csv", str(csv_path), "--report-json", str(json_path),
    ])
    assert rc == 0
    summary = pd.read_csv(csv_path)
    assert len(summary) >= 1
    assert summary["ok"].all()
    report = orjson.loads(json_path.read_bytes())
    assert report["seed"] == 4
    assert report["fitter"]["max_iterations"] == 6
    assert report["n_failed"] == 0
    assert set(report["timing_s"]) == {"simulate", "group", "fit"}


def test_main_with_beam_constraint_and_config(tmp_path):
    cfg = tmp_path / "run.json"
    cfg.write_text('{"linearizer": {"model": "straight", "B_z": 0.0}, "simulation": {"n_vertices": 2}}')
    json_path = tmp_path / "report.json"
    rc = main(["--config", str(cfg), "--seed", "1", "--beam-constraint", "--workers", "1",
               "--report-json", str(json_path)])
    assert rc == 0
    report = orjson.loads(json_path.read_bytes())
    assert report["beam_constraint"] is True
    assert report["linearizer"] == {"model": "straight", "B_z": 0.0}


def test_main_bad_config_returns_2(tmp_path):
    cfg = tmp_path / "run.json"
    cfg.write_text('{"fitter": {"bogus": 1}}')
    assert main(["--config", str(cfg)]) == 2
