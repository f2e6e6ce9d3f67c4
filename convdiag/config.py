from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field, field_validator


def _default_grad_grid() -> List[float]:
    return [float(v) for v in np.logspace(-5, -1, 13)]


class DetectorConfig(BaseModel):
    reltol: float = Field(0.01, description="Relative tolerance for consensus agreement.")
    cut: bool = Field(True, description="Return boolean flags instead of relative deviations.")
    reltol_grid: List[float] = Field(
        default_factory=lambda: [0.001, 0.005, 0.01, 0.05],
        description="Relative tolerances visited by the reltol sweep.",
    )

    @field_validator("reltol")
    @classmethod
    def _positive_reltol(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("reltol must be positive")
        return value

    @field_validator("reltol_grid")
    @classmethod
    def _positive_grid(cls, value: List[float]) -> List[float]:
        if any(v <= 0 for v in value):
            raise ValueError("reltol_grid entries must be positive")
        return sorted(value)


class HeuristicConfig(BaseModel):
    grad_tol: float = Field(2e-3, description="Gradient magnitude above which a fit warns.")
    eig_tol: float = Field(1e-6, description="Minimum Hessian eigenvalue below which a fit warns.")
    grad_tol_grid: List[float] = Field(
        default_factory=_default_grad_grid,
        description="Gradient tolerances visited by the tolerance sweep.",
    )
    max_fpr: float = Field(0.05, description="False positive rate ceiling for the suggested tolerance.")


class ReportConfig(BaseModel):
    make_plots: bool = Field(True, description="Write diagnostic plots.")
    dpi: int = Field(150, description="Resolution of saved figures.")
    confidence: float = Field(0.95, description="Confidence level of bad-rate intervals.")


class RunConfig(BaseModel):
    input_path: Optional[Path] = None
    results_root: Path = Path("results")
    optimizer_order: Optional[List[str]] = Field(
        None, description="Optimizer ordering within estimate groups; sorted names if unset."
    )
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    heuristics: HeuristicConfig = Field(default_factory=HeuristicConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    jobs: int = Field(1, description="Worker threads for the reltol sweep.")
    extra: Dict[str, str] = Field(default_factory=dict)
