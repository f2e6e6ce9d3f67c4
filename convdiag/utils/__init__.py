from convdiag.utils.stats import (
    approx_equal,
    clopper_pearson,
    nullable_mean,
    nullable_ratio,
    relative_spread,
    within_tolerance,
)

__all__ = [
    "approx_equal",
    "clopper_pearson",
    "nullable_mean",
    "nullable_ratio",
    "relative_spread",
    "within_tolerance",
]
