from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from convdiag.io.tables import require_columns, sort_by_optimizer

logger = logging.getLogger(__name__)

TIMING_COLUMNS = ["log_size", "optimizer", "median_time", "mean_time", "n", "relative_time"]


def timing_summary(fits: pd.DataFrame, optimizer_order: Optional[Sequence[str]] = None) -> pd.DataFrame:
    require_columns(fits, ["log_size", "optimizer", "time"], "fit table")
    usable = fits[fits["time"].notna() & (fits["time"] > 0)]
    if usable.empty:
        logger.warning("No positive timings; timing summary is empty")
        return pd.DataFrame(columns=TIMING_COLUMNS)
    out = (
        usable.groupby(["log_size", "optimizer"], sort=True)["time"]
        .agg(median_time="median", mean_time="mean", n="count")
        .reset_index()
    )
    fastest = out.groupby("log_size")["median_time"].transform("min")
    out["relative_time"] = out["median_time"] / fastest
    return sort_by_optimizer(out[TIMING_COLUMNS], optimizer_order)


def timing_scaling(summary: pd.DataFrame, optimizer_order: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Slope of log10 median time against log data-set size, per optimizer."""
    rows: List[Dict[str, object]] = []
    for optimizer, group in summary.groupby("optimizer", sort=True):
        sizes = group["log_size"].to_numpy(dtype=float)
        if np.unique(sizes).size < 2:
            rows.append({"optimizer": optimizer, "slope": pd.NA, "n_sizes": int(np.unique(sizes).size)})
            continue
        slope, _ = np.polyfit(sizes, np.log10(group["median_time"].to_numpy(dtype=float)), 1)
        rows.append({"optimizer": optimizer, "slope": float(slope), "n_sizes": int(np.unique(sizes).size)})
    out = pd.DataFrame(rows, columns=["optimizer", "slope", "n_sizes"])
    out["slope"] = out["slope"].astype("Float64")
    if out.empty:
        return out
    return sort_by_optimizer(out, optimizer_order, keys=())
