from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pandas as pd
from rich.console import Console

from convdiag.detect.consensus import find_bad
from convdiag.diagnostics.heuristics import (
    EIG_TOL,
    GRAD_TOL,
    fit_level,
    heuristic_flags,
    heuristic_rates,
    suggest_tolerance,
    tolerance_sweep,
)
from convdiag.io.tables import read_estimates, write_table
from convdiag.pipeline import load_run_config, run_analysis
from convdiag.report.plots import plot_bad_rate, plot_reltol_sweep, plot_timing, plot_tolerance_roc
from convdiag.sweep.aggregate import flag_estimates, run_sweep

console = Console()


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def cmd_detect(args: argparse.Namespace) -> None:
    flags = find_bad(args.values, reltol=args.reltol, cut=not args.no_cut)
    for value, flag in zip(args.values, flags):
        console.print(f"{value:>12g}  {'NA' if flag is None else flag}")


def cmd_sweep(args: argparse.Namespace) -> None:
    estimates = read_estimates(Path(args.input))
    result = run_sweep(estimates, reltol=args.reltol, cut=not args.no_cut, optimizer_order=args.optimizers)
    out_path = write_table(result.aggregate, Path(args.out))
    if args.flags_out:
        write_table(result.flags.flagged, Path(args.flags_out))
    console.log(f"{len(result.flags.excluded)} groups excluded; aggregate written to {out_path}")
    console.print(result.aggregate.to_string(index=False))


def cmd_heuristics(args: argparse.Namespace) -> None:
    estimates = read_estimates(Path(args.input))
    flags = flag_estimates(estimates, reltol=args.reltol, cut=True, optimizer_order=args.optimizers)
    fits = heuristic_flags(fit_level(estimates, flags.flagged), args.grad_tol, args.eig_tol)
    out_dir = Path(args.out_dir)
    write_table(fits, out_dir / "fits.csv")
    write_table(heuristic_rates(fits, args.optimizers), out_dir / "heuristic_rates.csv")
    if "grad" in fits.columns:
        grid = args.grad_grid or [args.grad_tol]
        sweep = tolerance_sweep(fits, grid)
        write_table(sweep, out_dir / "tolerance_sweep.csv")
        console.log(f"Suggested gradient tolerance: {suggest_tolerance(sweep, args.max_fpr)}")


def cmd_report(args: argparse.Namespace) -> None:
    run_dir = Path(args.run)
    plot_dir = run_dir / "diagnostic_plots"
    plot_bad_rate(pd.read_csv(run_dir / "aggregate.csv"), plot_dir / "bad_rate_vs_size.png")
    if (run_dir / "reltol_sweep.csv").exists():
        plot_reltol_sweep(pd.read_csv(run_dir / "reltol_sweep.csv"), plot_dir / "reltol_sweep.png")
    if (run_dir / "tolerance_sweep.csv").exists():
        plot_tolerance_roc(pd.read_csv(run_dir / "tolerance_sweep.csv"), plot_dir / "tolerance_roc.png")
    if (run_dir / "timing.csv").exists():
        timing = pd.read_csv(run_dir / "timing.csv")
        if not timing.empty:
            plot_timing(timing, plot_dir / "timing.png")
    console.log(f"Plots written to {plot_dir}")


def cmd_run(args: argparse.Namespace) -> None:
    config = load_run_config(
        Path(args.default_config),
        Path(args.config) if args.config else None,
        {
            "input_path": args.input,
            "results_root": args.out,
            "optimizer_order": args.optimizers,
            "jobs": args.jobs,
            "detector.reltol": args.reltol,
            "detector.cut": False if args.no_cut else None,
            "report.make_plots": False if args.no_plots else None,
        },
    )
    run_dir = Path(config.results_root) / f"run_{_timestamp()}"
    console.log(f"Running convergence diagnostics into {run_dir}")
    payload = run_analysis(config, run_dir, argv=sys.argv)
    console.log(
        f"bad rate {payload['overall_bad_rate']}, suggested grad tol {payload['suggested_grad_tol']}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="convdiag")
    sub = parser.add_subparsers(dest="command", required=True)

    detect = sub.add_parser("detect", help="Flag estimates of one group against their consensus")
    detect.add_argument("--values", type=float, nargs="+", required=True)
    detect.add_argument("--reltol", type=float, default=0.01)
    detect.add_argument("--no-cut", action="store_true")
    detect.set_defaults(func=cmd_detect)

    sweep = sub.add_parser("sweep", help="Aggregate bad-fit rates by size and optimizer")
    sweep.add_argument("--input", required=True)
    sweep.add_argument("--out", required=True)
    sweep.add_argument("--flags-out")
    sweep.add_argument("--reltol", type=float, default=0.01)
    sweep.add_argument("--no-cut", action="store_true")
    sweep.add_argument("--optimizers", nargs="*")
    sweep.set_defaults(func=cmd_sweep)

    heuristics = sub.add_parser("heuristics", help="Gradient / eigenvalue warnings vs consensus")
    heuristics.add_argument("--input", required=True)
    heuristics.add_argument("--out-dir", required=True)
    heuristics.add_argument("--reltol", type=float, default=0.01)
    heuristics.add_argument("--grad-tol", type=float, default=GRAD_TOL)
    heuristics.add_argument("--eig-tol", type=float, default=EIG_TOL)
    heuristics.add_argument("--grad-grid", type=float, nargs="*")
    heuristics.add_argument("--max-fpr", type=float, default=0.05)
    heuristics.add_argument("--optimizers", nargs="*")
    heuristics.set_defaults(func=cmd_heuristics)

    report = sub.add_parser("report", help="Regenerate diagnostic plots from a run directory")
    report.add_argument("--run", required=True)
    report.set_defaults(func=cmd_report)

    run = sub.add_parser("run", help="Full diagnostics pipeline")
    run.add_argument("--input", required=True)
    run.add_argument("--out")
    run.add_argument("--config")
    run.add_argument("--default-config", default="default_config.yaml")
    run.add_argument("--reltol", type=float)
    run.add_argument("--no-cut", action="store_true")
    run.add_argument("--no-plots", action="store_true")
    run.add_argument("--optimizers", nargs="*")
    run.add_argument("--jobs", type=int)
    run.set_defaults(func=cmd_run)

    return parser


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
