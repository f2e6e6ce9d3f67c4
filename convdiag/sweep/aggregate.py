from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pandas as pd

from convdiag.detect.consensus import INSUFFICIENT_GROUP_SIZE, hold_out_all
from convdiag.io.tables import (
    GROUP_KEY,
    REQUIRED_COLUMNS,
    normalize_columns,
    optimizer_levels,
    require_columns,
    sort_by_optimizer,
)
from convdiag.utils.stats import clopper_pearson, nullable_mean

logger = logging.getLogger(__name__)

CELL_KEY = ["log_size", "optimizer"]


@dataclass
class FlagResult:
    flagged: pd.DataFrame
    excluded: pd.DataFrame
    optimizers: List[str]
    reltol: float
    cut: bool


@dataclass
class SweepResult:
    flags: FlagResult
    aggregate: pd.DataFrame


def _flag_group(group: pd.DataFrame, reltol: float, cut: bool) -> pd.DataFrame:
    held = hold_out_all(group["value"].tolist(), reltol)
    out = group.copy()
    out["consensus"] = pd.array([h.consensus for h in held], dtype="Float64")
    out["spread"] = pd.array([h.spread for h in held], dtype="Float64")
    out["bad"] = pd.array([h.flag(cut) for h in held], dtype="boolean" if cut else "Float64")
    out["reason"] = [h.reason for h in held]
    return out


def flag_estimates(
    df: pd.DataFrame,
    reltol: float = 0.01,
    cut: bool = True,
    optimizer_order: Optional[Sequence[str]] = None,
) -> FlagResult:
    if reltol <= 0:
        raise ValueError(f"reltol must be positive, got {reltol}")
    work = normalize_columns(df)
    require_columns(work, REQUIRED_COLUMNS)
    if work.empty:
        raise ValueError("No estimates to flag")
    work["optimizer"] = work["optimizer"].astype(str)

    levels = optimizer_levels(work, list(optimizer_order) if optimizer_order else None)
    rank = {name: k for k, name in enumerate(levels)}
    duplicated = work.duplicated(GROUP_KEY + ["optimizer"], keep=False)
    if duplicated.any():
        sample = work.loc[duplicated, GROUP_KEY + ["optimizer"]].head(3).to_dict("records")
        raise ValueError(f"Duplicate optimizer rows within estimate groups, e.g. {sample}")
    work["_rank"] = work["optimizer"].map(rank)

    parts: List[pd.DataFrame] = []
    excluded: List[Dict[str, object]] = []
    for key, group in work.groupby(GROUP_KEY, sort=True, dropna=False):
        if len(group) < 2:
            excluded.append(
                {
                    **dict(zip(GROUP_KEY, key)),
                    "optimizers": ";".join(group["optimizer"]),
                    "n_estimates": len(group),
                    "reason": INSUFFICIENT_GROUP_SIZE,
                }
            )
            continue
        parts.append(_flag_group(group.sort_values("_rank"), reltol, cut))

    if excluded:
        logger.warning("Skipped %d estimate groups with fewer than 2 optimizers", len(excluded))
    if parts:
        flagged = pd.concat(parts, ignore_index=True).drop(columns="_rank")
    else:
        flagged = work.iloc[0:0].drop(columns="_rank")
        for col in ("consensus", "spread"):
            flagged[col] = pd.array([], dtype="Float64")
        flagged["bad"] = pd.array([], dtype="boolean" if cut else "Float64")
        flagged["reason"] = pd.Series([], dtype=object)
    excluded_df = pd.DataFrame(excluded, columns=GROUP_KEY + ["optimizers", "n_estimates", "reason"])
    logger.info(
        "Flagged %d estimates in %d groups (reltol=%g, cut=%s)",
        len(flagged),
        len(parts),
        reltol,
        cut,
    )
    return FlagResult(flagged=flagged, excluded=excluded_df, optimizers=levels, reltol=reltol, cut=cut)


def aggregate_flags(result: FlagResult, confidence: float = 0.95) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for (log_size, optimizer), group in result.flagged.groupby(CELL_KEY, sort=False, dropna=False):
        flags = group["bad"].dropna()
        n = int(flags.size)
        row: Dict[str, object] = {
            "log_size": log_size,
            "optimizer": optimizer,
            "bad_rate": nullable_mean(flags),
            "n": n,
            "n_missing": int(group["bad"].isna().sum()),
        }
        if result.cut:
            n_bad = int(flags.to_numpy(dtype=bool).sum())
            low, high = clopper_pearson(n_bad, n, confidence)
            row.update(n_bad=n_bad, ci_low=low if n else pd.NA, ci_high=high if n else pd.NA)
        rows.append(row)

    columns = ["log_size", "optimizer", "bad_rate", "n", "n_missing"]
    if result.cut:
        columns += ["n_bad", "ci_low", "ci_high"]
    out = pd.DataFrame(rows, columns=columns)
    for col in ("bad_rate", "ci_low", "ci_high"):
        if col in out.columns:
            out[col] = out[col].astype("Float64")
    return sort_by_optimizer(out, result.optimizers)


def run_sweep(
    df: pd.DataFrame,
    reltol: float = 0.01,
    cut: bool = True,
    optimizer_order: Optional[Sequence[str]] = None,
    confidence: float = 0.95,
) -> SweepResult:
    flags = flag_estimates(df, reltol=reltol, cut=cut, optimizer_order=optimizer_order)
    return SweepResult(flags=flags, aggregate=aggregate_flags(flags, confidence))


def sweep_reltol(
    df: pd.DataFrame,
    reltols: Sequence[float],
    cut: bool = True,
    optimizer_order: Optional[Sequence[str]] = None,
    confidence: float = 0.95,
    jobs: int = 1,
) -> pd.DataFrame:
    def _run_one(reltol: float) -> pd.DataFrame:
        table = run_sweep(df, reltol, cut, optimizer_order, confidence).aggregate
        table.insert(0, "reltol", reltol)
        return table

    with ThreadPoolExecutor(max_workers=max(1, jobs)) as executor:
        tables = list(executor.map(_run_one, sorted(reltols)))
    if not tables:
        return pd.DataFrame(columns=["reltol", "log_size", "optimizer", "bad_rate", "n"])
    return pd.concat(tables, ignore_index=True)
