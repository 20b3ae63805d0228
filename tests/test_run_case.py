from __future__ import annotations

import csv
import logging
import sys
from pathlib import Path

import numpy as np
import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mfpde.core.errors import ConfigError
from mfpde.driver import run_case as rc

CASES = ROOT / "cases"


@pytest.fixture(autouse=True)
def _detach_file_logs():
    root_logger = logging.getLogger()
    before = list(root_logger.handlers)
    yield
    for h in list(root_logger.handlers):
        if h not in before:
            root_logger.removeHandler(h)
            h.close()


def _case_copy(tmp_path: Path, name: str, **overrides) -> Path:
    raw = yaml.safe_load((CASES / f"{name}.yaml").read_text())
    raw["paths"] = {"output_root": str(tmp_path / "out")}
    for key, value in overrides.items():
        raw[key] = value
    path = tmp_path / f"{name}.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


def _single_run_dir(tmp_path: Path, case_id: str) -> Path:
    runs = sorted((tmp_path / "out" / case_id).iterdir())
    assert len(runs) == 1
    return runs[0]


def test_all_shipped_cases_load():
    for path in sorted(CASES.glob("*.yaml")):
        spec = rc.load_case(path)
        assert spec.case_id == path.stem
        assert spec.output_root == (ROOT / "out").resolve()


def test_poisson_case_end_to_end(tmp_path):
    path = _case_copy(tmp_path, "poisson_mms")
    assert rc.run_case(str(path), log_level="WARNING") == 0

    run_dir = _single_run_dir(tmp_path, "poisson_mms")
    assert (run_dir / "config.yaml").exists()
    assert (run_dir / "run.log").exists()
    with (run_dir / "increments.csv").open() as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 1
    assert int(rows[0]["newton_iterations"]) == 1

    snap = np.load(run_dir / "fields" / "increment_000001.npz")
    pts = snap["points"]
    np.testing.assert_allclose(snap["field_u"], 1.0 + pts[:, 0] + 2.0 * pts[:, 1], atol=1e-9)
    assert int(snap["increment"]) == 1


def test_transient_case_respects_max_increments_and_output_every(tmp_path):
    path = _case_copy(tmp_path, "nonlinear_diffusion")
    assert rc.run_case(str(path), max_increments=3, log_level=logging.WARNING) == 0

    run_dir = _single_run_dir(tmp_path, "nonlinear_diffusion")
    with (run_dir / "increments.csv").open() as f:
        rows = list(csv.DictReader(f))
    assert [int(r["increment"]) for r in rows] == [1, 2, 3]
    np.testing.assert_allclose([float(r["time"]) for r in rows], [0.05, 0.1, 0.15])
    snapshots = sorted(p.name for p in (run_dir / "fields").glob("*.npz"))
    assert snapshots == ["increment_000002.npz"]


def test_elasticity_case_runs(tmp_path):
    path = _case_copy(tmp_path, "elasticity_ramp")
    assert rc.main([str(path), "--max-increments", "2", "--log-level", "warning"]) == 0
    run_dir = _single_run_dir(tmp_path, "elasticity_ramp")
    snap = np.load(run_dir / "fields" / "increment_000002.npz")
    assert snap["field_displacement"].shape == (snap["points"].shape[0], 2)


def test_bad_kernel_name_returns_setup_failure(tmp_path):
    path = _case_copy(tmp_path, "poisson_mms", kernel={"name": "stokes"})
    assert rc.run_case(str(path), log_level="ERROR") == 2


def test_unknown_section_rejected(tmp_path):
    path = _case_copy(tmp_path, "poisson_mms", plots={"enabled": True})
    with pytest.raises(ConfigError, match=r"unknown sections \['plots'\]"):
        rc.load_case(path)


def test_missing_kernel_and_mesh(tmp_path):
    path = _case_copy(tmp_path, "poisson_mms", kernel={"params": {}})
    with pytest.raises(ConfigError, match="kernel.name: missing"):
        rc.load_case(path)
    path = _case_copy(tmp_path, "poisson_mms", mesh={})
    with pytest.raises(ConfigError, match="mesh: missing"):
        rc.load_case(path)


def test_build_mesh_types():
    mesh = rc.build_mesh({"type": "interval", "n": 5})
    assert mesh.n_cells == 5
    mesh = rc.build_mesh({"type": "Rectangle", "nx": 2, "ny": 3, "cell_type": "quadrilateral"})
    assert mesh.n_cells == 6
    with pytest.raises(ConfigError, match="mesh.type: invalid value 'sphere'"):
        rc.build_mesh({"type": "sphere"})
    with pytest.raises(ConfigError, match="invalid parameters for 'interval'"):
        rc.build_mesh({"type": "interval", "segments": 4})


def test_parse_args_defaults():
    args = rc._parse_args(["case.yaml"])
    assert args.cfg_path == "case.yaml"
    assert args.max_increments is None
    assert args.log_level == "INFO"
