from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from convdiag.io.tables import optimizer_levels


def _save(fig: plt.Figure, out_path: Path, dpi: int = 150) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)


def _floats(series: pd.Series) -> np.ndarray:
    return pd.to_numeric(series, errors="coerce").to_numpy(dtype=float, na_value=np.nan)


def plot_bad_rate(aggregate: pd.DataFrame, out_path: Path, dpi: int = 150) -> None:
    fig, ax = plt.subplots()
    for optimizer, group in aggregate.groupby("optimizer", sort=False):
        x = _floats(group["log_size"])
        y = _floats(group["bad_rate"])
        if {"ci_low", "ci_high"} <= set(group.columns):
            yerr = np.vstack([y - _floats(group["ci_low"]), _floats(group["ci_high"]) - y])
            ax.errorbar(x, y, yerr=yerr, fmt="o-", capsize=3, label=optimizer)
        else:
            ax.plot(x, y, "o-", label=optimizer)
    ax.set_xlabel("log data-set size")
    ax.set_ylabel("Bad-fit rate")
    ax.legend(fontsize="small")
    ax.grid(True, alpha=0.3)
    _save(fig, out_path, dpi)


def plot_reltol_sweep(sweep: pd.DataFrame, out_path: Path, dpi: int = 150) -> None:
    fig, ax = plt.subplots()
    for optimizer, group in sweep.groupby("optimizer", sort=False):
        rates = []
        reltols = []
        for reltol, cell in group.groupby("reltol", sort=True):
            n = _floats(cell["n"])
            rate = _floats(cell["bad_rate"])
            keep = np.isfinite(rate) & (n > 0)
            reltols.append(reltol)
            rates.append(np.sum(rate[keep] * n[keep]) / np.sum(n[keep]) if keep.any() else np.nan)
        ax.plot(reltols, rates, "o-", label=optimizer)
    ax.set_xscale("log")
    ax.set_xlabel("Relative tolerance")
    ax.set_ylabel("Pooled bad-fit rate")
    ax.legend(fontsize="small")
    ax.grid(True, alpha=0.3)
    _save(fig, out_path, dpi)


def plot_grad_distribution(
    fits: pd.DataFrame,
    out_path: Path,
    grad_tol: float,
    dpi: int = 150,
    optimizer_order: Optional[Sequence[str]] = None,
) -> None:
    fig, ax = plt.subplots()
    optimizers = optimizer_levels(fits, list(optimizer_order) if optimizer_order else None)
    width = 0.8 / max(len(optimizers), 1)
    for k, optimizer in enumerate(optimizers):
        group = fits[fits["optimizer"].astype(str) == optimizer]
        grad = np.abs(_floats(group["grad"]))
        keep = np.isfinite(grad) & (grad > 0)
        x = _floats(group["log_size"])[keep] + (k - (len(optimizers) - 1) / 2) * width * 0.25
        ax.scatter(x, np.log10(grad[keep]), s=12, alpha=0.6, label=optimizer)
    ax.axhline(np.log10(grad_tol), color="k", ls="--", alpha=0.5)
    ax.set_xlabel("log data-set size")
    ax.set_ylabel("log10 |gradient|")
    ax.legend(fontsize="small")
    ax.grid(True, alpha=0.3)
    _save(fig, out_path, dpi)


def plot_tolerance_roc(sweep: pd.DataFrame, out_path: Path, dpi: int = 150) -> None:
    fig, ax = plt.subplots()
    fpr = _floats(sweep["fpr"])
    tpr = _floats(sweep["tpr"])
    ax.plot(fpr, tpr, "o-")
    for tol, xi, yi in zip(sweep["grad_tol"], fpr, tpr):
        if np.isfinite(xi) and np.isfinite(yi):
            ax.annotate(f"{tol:.0e}", (xi, yi), fontsize=6, alpha=0.7)
    ax.plot([0, 1], [0, 1], color="k", ls="--", alpha=0.4)
    ax.set_xlabel("False positive rate")
    ax.set_ylabel("True positive rate")
    ax.grid(True, alpha=0.3)
    _save(fig, out_path, dpi)


def plot_timing(
    timing: pd.DataFrame, out_path: Path, dpi: int = 150, optimizer_order: Optional[Sequence[str]] = None
) -> None:
    fig, ax = plt.subplots()
    # without an explicit order, follow the row order of the summary table
    order = list(optimizer_order) if optimizer_order else list(dict.fromkeys(timing["optimizer"].astype(str)))
    for optimizer in optimizer_levels(timing, order):
        group = timing[timing["optimizer"].astype(str) == optimizer]
        ax.plot(_floats(group["log_size"]), _floats(group["median_time"]), "o-", label=optimizer)
    ax.set_yscale("log")
    ax.set_xlabel("log data-set size")
    ax.set_ylabel("Median fit time (s)")
    ax.legend(fontsize="small")
    ax.grid(True, alpha=0.3)
    _save(fig, out_path, dpi)
