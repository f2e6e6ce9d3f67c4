from __future__ import annotations

import math
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats


def approx_equal(target: float, current: float, tolerance: float) -> bool:
    """Mean relative difference test, scaled by ``|target|`` unless it is below ``tolerance``."""
    diff = abs(target - current)
    scale = abs(target)
    if math.isfinite(scale) and scale > tolerance:
        diff = diff / scale
    return diff <= tolerance


def within_tolerance(spread: float, tolerance: float) -> bool:
    # spread equal to tolerance up to rounding counts as agreement
    return spread < tolerance or math.isclose(spread, tolerance, rel_tol=1e-9)


def relative_spread(values: np.ndarray, reference: float) -> Optional[float]:
    if values.size < 2 or reference == 0:
        return None
    spread = float(np.std(values / reference, ddof=1))
    return spread if math.isfinite(spread) else None


def clopper_pearson(k: int, n: int, confidence: float = 0.95) -> Tuple[float, float]:
    if n <= 0:
        return math.nan, math.nan
    alpha = 1.0 - confidence
    low = 0.0 if k == 0 else float(stats.beta.ppf(alpha / 2, k, n - k + 1))
    high = 1.0 if k == n else float(stats.beta.ppf(1 - alpha / 2, k + 1, n - k))
    return low, high


def nullable_mean(values: pd.Series):
    usable = values.dropna()
    if usable.empty:
        return pd.NA
    return float(usable.to_numpy(dtype=float).mean())


def nullable_ratio(numerator: int, denominator: int):
    return numerator / denominator if denominator else pd.NA
