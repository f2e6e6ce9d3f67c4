from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence

import pandas as pd

GROUP_KEY = ["log_size", "replicate", "param"]
FIT_KEY = ["dataset", "optimizer", "log_size", "replicate"]
REQUIRED_COLUMNS = {"optimizer", "log_size", "replicate", "param", "value"}
DIAGNOSTIC_COLUMNS = {"grad", "eig", "time"}

COLUMN_ALIASES = {
    "optimiser": "optimizer",
    "opt": "optimizer",
    "nt": "log_size",
    "lsize": "log_size",
    "log_n": "log_size",
    "rep": "replicate",
    "parameter": "param",
    "term": "param",
    "estimate": "value",
    "mingrad": "grad",
    "max_grad": "grad",
    "min_eig": "eig",
    "elapsed": "time",
}


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    out = df.rename(columns={c: c.strip().lower() for c in df.columns})
    renames = {k: v for k, v in COLUMN_ALIASES.items() if k in out.columns and v not in out.columns}
    out = out.rename(columns=renames)
    if "dataset" not in out.columns and {"log_size", "replicate"} <= set(out.columns):
        out["dataset"] = out["log_size"].astype(str) + "_" + out["replicate"].astype(str)
    return out


def require_columns(df: pd.DataFrame, columns: Iterable[str], source: str = "input table") -> None:
    missing = set(columns) - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns {sorted(missing)} in {source}")


def read_estimates(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    df = normalize_columns(pd.read_csv(path))
    require_columns(df, REQUIRED_COLUMNS, str(path))
    if df.empty:
        raise ValueError(f"No rows in {path}")
    df["optimizer"] = df["optimizer"].astype(str)
    df["param"] = df["param"].astype(str)
    df["value"] = pd.to_numeric(df["value"], errors="coerce")
    for col in DIAGNOSTIC_COLUMNS & set(df.columns):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def optimizer_levels(df: pd.DataFrame, order: List[str] | None = None) -> List[str]:
    present = sorted(df["optimizer"].dropna().astype(str).unique())
    if not order:
        return present
    unknown = [name for name in present if name not in order]
    return [name for name in order if name in present] + unknown


def sort_by_optimizer(
    df: pd.DataFrame, order: Sequence[str] | None = None, keys: Sequence[str] = ("log_size",)
) -> pd.DataFrame:
    """Sort rows by ``keys`` and then by position in the optimizer order."""
    levels = optimizer_levels(df, list(order) if order else None)
    rank = {name: k for k, name in enumerate(levels)}
    out = df.assign(_rank=df["optimizer"].astype(str).map(rank))
    out = out.sort_values([*keys, "_rank"], kind="mergesort").drop(columns="_rank")
    return out.reset_index(drop=True)


def write_table(df: pd.DataFrame, out_path: Path) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)
    return out_path
