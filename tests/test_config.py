from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mfpde.core.config import config_from_mapping, load_config
from mfpde.core.errors import ConfigError, SetupError


def _write_yaml(tmp_path: Path, data) -> Path:
    path = tmp_path / "solver.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults_are_valid():
    cfg = config_from_mapping(None)
    assert cfg.linear.backend == "native"
    assert cfg.nonlinear.jacobian_mode == "kernel"
    assert not cfg.history.enabled


def test_load_config_with_solver_key(tmp_path):
    path = _write_yaml(
        tmp_path,
        {"solver": {"time": {"total_increments": 7, "time_step": 0.5}, "linear": {"method": "BiCGStab"}}},
    )
    cfg = load_config(path)
    assert cfg.time.total_increments == 7
    assert cfg.time.time_step == 0.5
    assert cfg.linear.method == "bicgstab"


def test_load_config_bare_sections(tmp_path):
    path = _write_yaml(tmp_path, {"nonlinear": {"max_iterations": 3, "jacobian_mode": "FD"}})
    cfg = load_config(path)
    assert cfg.nonlinear.max_iterations == 3
    assert cfg.nonlinear.jacobian_mode == "fd"


def test_int_fields_accept_integral_floats_only():
    assert config_from_mapping({"nonlinear": {"max_iterations": 4.0}}).nonlinear.max_iterations == 4
    with pytest.raises(ConfigError, match="nonlinear.max_iterations: invalid value"):
        config_from_mapping({"nonlinear": {"max_iterations": 4.5}})


@pytest.mark.parametrize(
    "raw,message",
    [
        ({"linear": {"backend": "mumps"}}, r"linear\.backend: invalid value"),
        ({"linear": {"method": "gmres"}}, r"linear\.method: invalid value 'gmres' for native backend"),
        ({"linear": {"preconditioner": "ilu"}}, r"linear\.preconditioner"),
        ({"nonlinear": {"tolerance": 1e-8}}, r"nonlinear: unknown keys \['tolerance'\]"),
        ({"solvers": {}}, r"solver: unknown sections \['solvers'\]"),
        ({"history": {"enabled": "yes"}}, r"history\.enabled: invalid value"),
        ({"cutback": {"factor": 1.0}}, r"cutback\.factor"),
        ({"history": {"enabled": True}}, r"history\.n_variables"),
        ({"time": {"time_step": 0.0}}, r"time\.time_step"),
        ({"nonlinear": {"relaxation": 1.5}}, r"nonlinear\.relaxation"),
        ({"nonlinear": {"abs_tol": 0.0, "rel_tol": 0.0}}, r"at least one tolerance"),
        ({"nonlinear": {"jacobian_mode": "exact"}}, r"nonlinear\.jacobian_mode"),
        ({"discretization": {"quadrature_degree": 0}}, r"discretization\.quadrature_degree"),
        ({"time": None, "linear": []}, r"linear: expected a mapping"),
        ({"time": {"time_step": None}}, r"time\.time_step: value must not be null"),
    ],
)
def test_invalid_values_rejected(raw, message):
    with pytest.raises(ConfigError, match=message):
        config_from_mapping(raw)


def test_config_error_is_setup_and_value_error():
    with pytest.raises(SetupError):
        config_from_mapping({"linear": {"backend": "nope"}})
    with pytest.raises(ValueError):
        config_from_mapping({"linear": {"backend": "nope"}})


def test_scipy_backend_accepts_krylov_methods():
    cfg = config_from_mapping({"linear": {"backend": "scipy", "method": "lgmres"}})
    assert cfg.linear.method == "lgmres"
    with pytest.raises(ConfigError, match="for scipy backend"):
        config_from_mapping({"linear": {"backend": "scipy", "method": "jacobi"}})
