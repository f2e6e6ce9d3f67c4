import json

import pandas as pd
import pytest
import yaml

from convdiag.cli import main
from convdiag.config import ReportConfig, RunConfig
from convdiag.pipeline import run_analysis


def test_run_analysis_writes_artifacts(tmp_path, estimates_csv):
    config = RunConfig(
        input_path=estimates_csv,
        optimizer_order=["bobyqa", "Nelder_Mead", "nlminbwrap"],
        report=ReportConfig(make_plots=True, dpi=60),
    )
    run_dir = tmp_path / "run"
    payload = run_analysis(config, run_dir, argv=["convdiag", "run"])

    for name in (
        "flags.csv",
        "excluded_groups.csv",
        "aggregate.csv",
        "reltol_sweep.csv",
        "fits.csv",
        "heuristic_rates.csv",
        "tolerance_sweep.csv",
        "timing.csv",
        "summary.json",
        "EXEC_SUMMARY.md",
        "config_used.yaml",
        "logs.txt",
        "diagnostic_plots/bad_rate_vs_size.png",
        "diagnostic_plots/tolerance_roc.png",
    ):
        assert (run_dir / name).exists(), name

    assert payload["n_excluded_groups"] == 1
    assert payload["n_flagged"] == 24
    assert payload["overall_bad_rate"] == pytest.approx(4 / 24)
    assert payload["suggested_grad_tol"] == pytest.approx(10 ** (-4 / 3))
    saved = json.loads((run_dir / "summary.json").read_text())
    assert saved["optimizers"] == ["bobyqa", "Nelder_Mead", "nlminbwrap"]
    assert yaml.safe_load((run_dir / "config_used.yaml").read_text())["detector"]["reltol"] == 0.01
    assert "Run complete" in (run_dir / "logs.txt").read_text()


def test_run_analysis_deviation_mode_without_diagnostics(tmp_path, estimates):
    config = RunConfig(report=ReportConfig(make_plots=False))
    config.detector.cut = False
    payload = run_analysis(config, tmp_path / "run", estimates=estimates.drop(columns=["grad", "eig", "time"]))
    assert payload["suggested_grad_tol"] is None
    assert not (tmp_path / "run" / "tolerance_sweep.csv").exists()
    aggregate = pd.read_csv(tmp_path / "run" / "aggregate.csv")
    assert "ci_low" not in aggregate.columns


def test_run_analysis_requires_input(tmp_path):
    with pytest.raises(ValueError, match="input_path"):
        run_analysis(RunConfig(), tmp_path / "run")


def test_cli_detect(capsys):
    main(["detect", "--values", "1.0", "1.01", "0.99", "1.2"])
    out = capsys.readouterr().out
    assert out.count("False") == 3
    assert "True" in out


def test_cli_sweep(tmp_path, estimates_csv):
    out = tmp_path / "aggregate.csv"
    flags = tmp_path / "flags.csv"
    main(["sweep", "--input", str(estimates_csv), "--out", str(out), "--flags-out", str(flags)])
    table = pd.read_csv(out)
    assert len(table) == 6
    assert flags.exists()


def test_cli_heuristics(tmp_path, estimates_csv):
    main(["heuristics", "--input", str(estimates_csv), "--out-dir", str(tmp_path), "--grad-grid", "1e-3", "0.1"])
    sweep = pd.read_csv(tmp_path / "tolerance_sweep.csv")
    assert list(sweep["grad_tol"]) == [1e-3, 0.1]


def test_cli_run_and_report(tmp_path, estimates_csv):
    main(
        [
            "run",
            "--input",
            str(estimates_csv),
            "--out",
            str(tmp_path / "results"),
            "--default-config",
            str(tmp_path / "absent.yaml"),
            "--no-plots",
        ]
    )
    run_dirs = list((tmp_path / "results").glob("run_*"))
    assert len(run_dirs) == 1
    assert not (run_dirs[0] / "diagnostic_plots").exists()
    main(["report", "--run", str(run_dirs[0])])
    assert (run_dirs[0] / "diagnostic_plots" / "bad_rate_vs_size.png").exists()


def test_cli_run_uses_results_root_from_config(tmp_path, estimates_csv):
    default = tmp_path / "default.yaml"
    default.write_text(yaml.safe_dump({"results_root": str(tmp_path / "from_config"), "report": {"make_plots": False}}))
    main(["run", "--input", str(estimates_csv), "--default-config", str(default)])
    assert len(list((tmp_path / "from_config").glob("run_*"))) == 1
