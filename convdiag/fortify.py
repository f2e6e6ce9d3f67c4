from __future__ import annotations

from typing import Optional, Protocol

import numpy as np
import pandas as pd


class FittedModel(Protocol):
    sigma: float

    def fitted(self) -> np.ndarray:
        ...

    def residuals(self) -> np.ndarray:
        ...


def fortify(model: FittedModel, data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Add ``.fitted``, ``.resid`` and ``.scresid`` columns to a model's data.

    ``data`` defaults to ``model.data``. Scaled residuals are the residuals
    divided by the residual standard deviation ``model.sigma``.
    """
    if data is None:
        data = getattr(model, "data", None)
    if data is None:
        raise ValueError("No data supplied and model has no data attribute")
    fitted = np.asarray(model.fitted(), dtype=float)
    resid = np.asarray(model.residuals(), dtype=float)
    if fitted.shape != (len(data),) or resid.shape != (len(data),):
        raise ValueError(
            f"Model has {fitted.size} fitted values and {resid.size} residuals for {len(data)} data rows"
        )
    out = data.copy()
    out[".fitted"] = fitted
    out[".resid"] = resid
    out[".scresid"] = resid / float(model.sigma)
    return out
