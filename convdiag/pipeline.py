"""
End-to-end convergence-diagnostics run.

1. Load per-fit parameter estimates
2. Flag estimates against the leave-one-out consensus of the other optimizers
3. Aggregate flags by data-set size and optimizer, and sweep reltol
4. Compare consensus badness with gradient / eigenvalue warnings
5. Summarize timings
6. Write tables, plots and an executive summary
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import yaml

from convdiag.config import RunConfig
from convdiag.diagnostics.heuristics import (
    fit_level,
    grad_badness_correlation,
    heuristic_flags,
    heuristic_rates,
    suggest_tolerance,
    tolerance_sweep,
)
from convdiag.diagnostics.timing import timing_scaling, timing_summary
from convdiag.io.tables import read_estimates, write_table
from convdiag.report.plots import (
    plot_bad_rate,
    plot_grad_distribution,
    plot_reltol_sweep,
    plot_timing,
    plot_tolerance_roc,
)
from convdiag.report.summary import build_exec_summary
from convdiag.sweep.aggregate import aggregate_flags, flag_estimates, sweep_reltol
from convdiag.utils.stats import nullable_mean

logger = logging.getLogger(__name__)

_HANDLER_PREFIX = "convdiag-run"


def _merge(data: Dict[str, object], layer: Dict[str, object]) -> None:
    # sections (detector, heuristics, report) merge field by field
    for key, value in layer.items():
        current = data.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            data[key] = {**current, **value}
        else:
            data[key] = value


def load_run_config(
    default_path: Optional[Path],
    override_path: Optional[Path],
    cli_overrides: Dict[str, object],
) -> RunConfig:
    data: Dict[str, object] = {}
    if default_path and default_path.exists():
        _merge(data, yaml.safe_load(default_path.read_text()) or {})
    if override_path:
        _merge(data, yaml.safe_load(override_path.read_text()) or {})
    for key, value in cli_overrides.items():
        if value is None:
            continue
        section, _, field = key.partition(".")
        _merge(data, {section: {field: value}} if field else {key: value})
    return RunConfig(**data)


def setup_logging(run_dir: Path) -> Path:
    """Send package logs to ``logs.txt`` in the run directory and to the console."""
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / "logs.txt"
    package_logger = logging.getLogger("convdiag")
    package_logger.setLevel(logging.INFO)
    for handler in list(package_logger.handlers):
        if handler.get_name() and handler.get_name().startswith(_HANDLER_PREFIX):
            package_logger.removeHandler(handler)
            handler.close()
    formatter = logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    for name, handler in (
        ("file", logging.FileHandler(log_path, mode="w")),
        ("stream", logging.StreamHandler()),
    ):
        handler.set_name(f"{_HANDLER_PREFIX}-{name}")
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    return log_path


def log_progress(msg: str) -> None:
    logger.info(msg)


def _json_value(value: object) -> object:
    return None if value is pd.NA else value


def run_analysis(
    config: RunConfig,
    run_dir: Path,
    estimates: Optional[pd.DataFrame] = None,
    argv: Optional[List[str]] = None,
) -> Dict[str, object]:
    run_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(run_dir)

    if estimates is None:
        if config.input_path is None:
            raise ValueError("No input_path configured and no estimates supplied")
        log_progress(f"Loading estimates from {config.input_path}")
        estimates = read_estimates(config.input_path)
    log_progress(f"{len(estimates)} estimate rows")

    detector = config.detector
    flags = flag_estimates(estimates, detector.reltol, detector.cut, config.optimizer_order)
    aggregate = aggregate_flags(flags, config.report.confidence)
    write_table(flags.flagged, run_dir / "flags.csv")
    write_table(flags.excluded, run_dir / "excluded_groups.csv")
    write_table(aggregate, run_dir / "aggregate.csv")

    log_progress(f"Sweeping reltol over {detector.reltol_grid}")
    reltol_table = sweep_reltol(
        estimates,
        detector.reltol_grid,
        cut=detector.cut,
        optimizer_order=config.optimizer_order,
        confidence=config.report.confidence,
        jobs=config.jobs,
    )
    write_table(reltol_table, run_dir / "reltol_sweep.csv")

    cut_flags = flags if detector.cut else flag_estimates(estimates, detector.reltol, True, config.optimizer_order)
    fits = fit_level(estimates, cut_flags.flagged)

    heur = config.heuristics
    payload: Dict[str, object] = {
        "reltol": detector.reltol,
        "cut": detector.cut,
        "n_rows": int(len(estimates)),
        "n_flagged": int(len(flags.flagged)),
        "n_excluded_groups": int(len(flags.excluded)),
        "n_missing_flags": int(flags.flagged["bad"].isna().sum()),
        "overall_bad_rate": _json_value(nullable_mean(flags.flagged["bad"])),
        "optimizers": flags.optimizers,
        "grad_tol": heur.grad_tol,
        "eig_tol": heur.eig_tol,
        "max_fpr": heur.max_fpr,
        "suggested_grad_tol": None,
        "grad_badness_correlation": None,
    }

    tolerance = None
    if {"grad", "eig"} & set(fits.columns):
        log_progress("Evaluating gradient / eigenvalue warnings")
        fits = heuristic_flags(fits, heur.grad_tol, heur.eig_tol)
        write_table(heuristic_rates(fits, config.optimizer_order), run_dir / "heuristic_rates.csv")
    if "grad" in fits.columns:
        tolerance = tolerance_sweep(fits, heur.grad_tol_grid)
        write_table(tolerance, run_dir / "tolerance_sweep.csv")
        write_table(tolerance_sweep(fits, heur.grad_tol_grid, by="log_size"), run_dir / "tolerance_sweep_by_size.csv")
        payload["suggested_grad_tol"] = suggest_tolerance(tolerance, heur.max_fpr)
        payload["grad_badness_correlation"] = grad_badness_correlation(fits)
    write_table(fits, run_dir / "fits.csv")

    timing = None
    if "time" in fits.columns:
        log_progress("Summarizing timings")
        timing = timing_summary(fits, config.optimizer_order)
        write_table(timing, run_dir / "timing.csv")
        if not timing.empty:
            write_table(timing_scaling(timing, config.optimizer_order), run_dir / "timing_scaling.csv")

    if config.report.make_plots:
        log_progress("Writing diagnostic plots")
        plot_dir = run_dir / "diagnostic_plots"
        dpi = config.report.dpi
        plot_bad_rate(aggregate, plot_dir / "bad_rate_vs_size.png", dpi)
        plot_reltol_sweep(reltol_table, plot_dir / "reltol_sweep.png", dpi)
        if "grad" in fits.columns:
            plot_grad_distribution(fits, plot_dir / "grad_distribution.png", heur.grad_tol, dpi, config.optimizer_order)
        if tolerance is not None and not tolerance.empty:
            plot_tolerance_roc(tolerance, plot_dir / "tolerance_roc.png", dpi)
        if timing is not None and not timing.empty:
            plot_timing(timing, plot_dir / "timing.png", dpi, config.optimizer_order)

    if argv:
        payload["argv"] = list(argv)
    (run_dir / "summary.json").write_text(json.dumps(payload, indent=2))
    (run_dir / "config_used.yaml").write_text(yaml.safe_dump(config.model_dump(mode="json")))
    build_exec_summary(run_dir, payload, aggregate, tolerance, timing)
    log_progress(f"Run complete: {run_dir}")
    return payload
