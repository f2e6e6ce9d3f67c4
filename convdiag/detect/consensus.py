"""
Consensus-deviation detection across optimizers.

Every optimizer fitting the same data set should land on the same parameter
estimates. For one estimate group (the estimates of a single parameter, one per
optimizer) each member is compared against the leave-one-out mean of the other
members. A member is "bad" when the others agree tightly among themselves but
the held-out member does not match them.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from convdiag.utils.stats import approx_equal, relative_spread, within_tolerance

OK = ""
NON_FINITE = "non_finite"
DEGENERATE_CONSENSUS = "degenerate_consensus"
UNDEFINED_SPREAD = "undefined_spread"
LOW_AGREEMENT = "low_agreement"
INSUFFICIENT_GROUP_SIZE = "insufficient_group_size"

Flag = Union[Optional[bool], Optional[float]]


@dataclass
class HeldOut:
    index: int
    value: float
    consensus: Optional[float]
    spread: Optional[float]
    deviation: Optional[float]
    bad: Optional[bool]
    reason: str

    def flag(self, cut: bool) -> Flag:
        if cut:
            return self.bad
        return self.deviation if self.reason == OK else None


def _as_array(x: Sequence[float]) -> np.ndarray:
    return np.array([np.nan if v is None or pd.isna(v) else float(v) for v in x], dtype=float)


def _check_inputs(values: np.ndarray, reltol: float) -> None:
    if values.size < 2:
        raise ValueError(f"Need at least 2 estimates for consensus, got {values.size}")
    if not (math.isfinite(reltol) and reltol > 0):
        raise ValueError(f"reltol must be positive, got {reltol}")


def _hold_out(values: np.ndarray, i: int, reltol: float) -> HeldOut:
    value = float(values[i])
    if not math.isfinite(value):
        return HeldOut(i, value, None, None, None, None, NON_FINITE)
    # failed fits drop out of the comparison set
    others = np.delete(values, i)
    others = others[np.isfinite(others)]
    if others.size == 0:
        return HeldOut(i, value, None, None, None, None, INSUFFICIENT_GROUP_SIZE)

    consensus = float(np.mean(others))
    if consensus == 0:
        return HeldOut(i, value, consensus, None, None, None, DEGENERATE_CONSENSUS)

    deviation = abs(1.0 - value / consensus)
    spread = relative_spread(others, consensus)
    if spread is None:
        return HeldOut(i, value, consensus, None, deviation, None, UNDEFINED_SPREAD)
    if not within_tolerance(spread, reltol):
        # the others disagree among themselves: nobody is singled out
        return HeldOut(i, value, consensus, spread, deviation, False, LOW_AGREEMENT)

    bad = not approx_equal(value, consensus, reltol)
    return HeldOut(i, value, consensus, spread, deviation, bad, OK)


def hold_out_all(x: Sequence[float], reltol: float = 0.01) -> List[HeldOut]:
    values = _as_array(x)
    _check_inputs(values, reltol)
    return [_hold_out(values, i, reltol) for i in range(values.size)]


def find_bad(x: Sequence[float], reltol: float = 0.01, cut: bool = True) -> List[Flag]:
    """Flag estimates that disagree with the consensus of the others.

    Parameters
    ----------
    x:
        Estimates of one parameter, one per optimizer. ``None`` or NaN marks a
        failed fit.
    reltol:
        Relative tolerance used both for the agreement of the other estimates
        (sample standard deviation of ``x[j] / m``) and for matching the held-out
        estimate against their mean ``m``.
    cut:
        When true return ``True``/``False`` per estimate. Otherwise return the
        relative deviation ``abs(1 - x[i] / m)``, or ``None`` when the other
        estimates do not agree within ``reltol``.

    Non-finite estimates are left out of every leave-one-out set and are
    ``None`` themselves. Positions whose consensus is zero, or whose finite
    leave-one-out set has fewer than two members, are ``None`` in both modes.
    """
    return [held.flag(cut) for held in hold_out_all(x, reltol)]


def classify_group(x: Sequence[float], reltol: float = 0.01) -> pd.DataFrame:
    held = hold_out_all(x, reltol)
    return pd.DataFrame(
        {
            "index": [h.index for h in held],
            "value": [h.value for h in held],
            "consensus": pd.array([h.consensus for h in held], dtype="Float64"),
            "spread": pd.array([h.spread for h in held], dtype="Float64"),
            "deviation": pd.array([h.deviation for h in held], dtype="Float64"),
            "bad": pd.array([h.bad for h in held], dtype="boolean"),
            "reason": [h.reason for h in held],
        }
    )
