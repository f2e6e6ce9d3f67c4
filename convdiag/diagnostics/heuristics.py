"""
Gradient and Hessian based convergence warnings, compared against consensus badness.

A fit warns when its scaled gradient exceeds ``grad_tol`` or when the smallest
Hessian eigenvalue falls below ``eig_tol``. The tolerance sweep treats the
consensus ``any_bad`` flag as ground truth and reports how well a given gradient
tolerance separates bad fits from good ones.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from convdiag.io.tables import FIT_KEY, normalize_columns, require_columns, sort_by_optimizer
from convdiag.utils.stats import nullable_mean, nullable_ratio

logger = logging.getLogger(__name__)

DIAGNOSTICS = ("grad", "eig", "time")

# scaled gradient above which a fit warns
GRAD_TOL = 2e-3
# smallest Hessian eigenvalue below which the Hessian is not positive definite
EIG_TOL = 1e-6


def _any_flag(flags: pd.Series):
    usable = flags.dropna()
    if usable.empty:
        return pd.NA
    return bool(usable.to_numpy(dtype=bool).any())


def fit_level(estimates: pd.DataFrame, flagged: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Collapse parameter rows to one row per fit.

    ``any_bad`` is true when any cut-mode flag of the fit is true, and missing
    when every flag of the fit is missing or the fit was never flagged.
    """
    work = normalize_columns(estimates)
    require_columns(work, FIT_KEY)
    diag_cols = [c for c in DIAGNOSTICS if c in work.columns]
    if diag_cols:
        fits = work.groupby(FIT_KEY, sort=True, dropna=False)[diag_cols].first().reset_index()
    else:
        fits = work[FIT_KEY].drop_duplicates().sort_values(FIT_KEY).reset_index(drop=True)

    if flagged is not None and not flagged.empty:
        if str(flagged["bad"].dtype) != "boolean":
            raise ValueError("Fit-level badness needs cut-mode (boolean) flags")
        any_bad = (
            flagged.groupby(FIT_KEY, sort=False, dropna=False)["bad"]
            .agg(_any_flag)
            .rename("any_bad")
            .reset_index()
        )
        fits = fits.merge(any_bad, on=FIT_KEY, how="left")
    else:
        fits["any_bad"] = pd.NA
    fits["any_bad"] = fits["any_bad"].astype("boolean")
    return fits


def _warn(condition: pd.Series, missing: pd.Series) -> pd.Series:
    return condition.astype("boolean").mask(missing)


def heuristic_flags(fits: pd.DataFrame, grad_tol: float = GRAD_TOL, eig_tol: float = EIG_TOL) -> pd.DataFrame:
    present = [c for c in ("grad", "eig") if c in fits.columns]
    if not present:
        raise ValueError("Missing columns ['eig', 'grad'] in fit table; need at least one")
    out = fits.copy()
    warns = []
    if "grad" in out.columns:
        out["grad_warn"] = _warn(out["grad"].abs() > grad_tol, out["grad"].isna())
        warns.append("grad_warn")
    if "eig" in out.columns:
        out["eig_warn"] = _warn(out["eig"] < eig_tol, out["eig"].isna())
        warns.append("eig_warn")
    any_warn = out[warns[0]]
    for col in warns[1:]:
        any_warn = any_warn | out[col]
    out["any_warn"] = any_warn
    return out


def heuristic_rates(flagged_fits: pd.DataFrame, optimizer_order: Optional[Sequence[str]] = None) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for (log_size, optimizer), group in flagged_fits.groupby(["log_size", "optimizer"], sort=True):
        row: Dict[str, object] = {"log_size": log_size, "optimizer": optimizer, "n_fits": len(group)}
        for col in ("grad_warn", "eig_warn", "any_warn", "any_bad"):
            if col in group.columns:
                row[f"{col}_rate"] = nullable_mean(group[col])
        if "grad" in group.columns:
            grad = group["grad"].abs()
            log_grad = np.log10(grad.where(grad > 0)).dropna()
            row["median_log10_grad"] = float(log_grad.median()) if not log_grad.empty else pd.NA
        if "eig" in group.columns:
            eig = group["eig"].dropna()
            row["median_eig"] = float(eig.median()) if not eig.empty else pd.NA
        rows.append(row)
    out = pd.DataFrame(rows)
    if out.empty:
        return out
    for col in out.columns:
        if col.endswith("_rate") or col.startswith("median_"):
            out[col] = out[col].astype("Float64")
    return sort_by_optimizer(out, optimizer_order)


def _confusion(grad: np.ndarray, truth: np.ndarray, tol: float) -> Dict[str, object]:
    warn = grad > tol
    tp = int(np.sum(warn & truth))
    fp = int(np.sum(warn & ~truth))
    fn = int(np.sum(~warn & truth))
    tn = int(np.sum(~warn & ~truth))
    return {
        "grad_tol": float(tol),
        "tp": tp,
        "fp": fp,
        "fn": fn,
        "tn": tn,
        "tpr": nullable_ratio(tp, tp + fn),
        "fpr": nullable_ratio(fp, fp + tn),
        "precision": nullable_ratio(tp, tp + fp),
        "warn_rate": nullable_ratio(tp + fp, grad.size),
    }


def tolerance_sweep(fits: pd.DataFrame, grad_tols: Sequence[float], by: Optional[str] = None) -> pd.DataFrame:
    require_columns(fits, ["grad", "any_bad"], "fit table")
    usable = fits[fits["grad"].notna() & fits["any_bad"].notna()]
    if usable.empty:
        logger.warning("No fits with both a gradient and a consensus flag; tolerance sweep is empty")
    groups = usable.groupby(by, sort=True) if by else [(None, usable)]

    rows: List[Dict[str, object]] = []
    for key, group in groups:
        grad = group["grad"].abs().to_numpy(dtype=float)
        truth = group["any_bad"].to_numpy(dtype=bool)
        for tol in sorted(grad_tols):
            row = _confusion(grad, truth, tol)
            if by:
                row = {by: key, **row}
            rows.append(row)

    columns = ([by] if by else []) + ["grad_tol", "tp", "fp", "fn", "tn", "tpr", "fpr", "precision", "warn_rate"]
    out = pd.DataFrame(rows, columns=columns)
    for col in ("tpr", "fpr", "precision", "warn_rate"):
        out[col] = out[col].astype("Float64")
    return out


def suggest_tolerance(sweep: pd.DataFrame, max_fpr: float = 0.05) -> Optional[float]:
    usable = sweep[sweep["tpr"].notna() & sweep["fpr"].notna()]
    usable = usable[usable["fpr"].to_numpy(dtype=float) <= max_fpr]
    if usable.empty:
        return None
    best = usable.sort_values(["tpr", "grad_tol"], ascending=[False, False]).iloc[0]
    return float(best["grad_tol"])


def grad_badness_correlation(fits: pd.DataFrame) -> Optional[Dict[str, float]]:
    usable = fits[fits["grad"].notna() & fits["any_bad"].notna()]
    if len(usable) < 3:
        return None
    grad = usable["grad"].abs().to_numpy(dtype=float)
    bad = usable["any_bad"].to_numpy(dtype=float)
    if np.ptp(grad) == 0 or np.ptp(bad) == 0:
        return None
    rho, pvalue = stats.spearmanr(grad, bad)
    return {"rho": float(rho), "pvalue": float(pvalue), "n": int(len(usable))}
