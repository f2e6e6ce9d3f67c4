from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pandas as pd


def _fmt(value: object, fmt: str = ".3g") -> str:
    if value is None or value is pd.NA:
        return "n/a"
    return format(value, fmt)


def build_exec_summary(
    run_dir: Path,
    payload: Dict[str, object],
    aggregate: pd.DataFrame,
    tolerance: Optional[pd.DataFrame] = None,
    timing: Optional[pd.DataFrame] = None,
) -> Path:
    lines = [
        "# EXEC_SUMMARY",
        "",
        "## Consensus detection",
        f"- reltol = {_fmt(payload['reltol'])}, cut = {payload['cut']}",
        f"- estimates flagged = {payload['n_flagged']}",
        f"- groups excluded (fewer than 2 optimizers) = {payload['n_excluded_groups']}",
        f"- missing flags = {payload['n_missing_flags']}",
        f"- overall bad rate = {_fmt(payload.get('overall_bad_rate'))}",
        "",
        "## Convergence heuristics",
        f"- gradient tolerance = {_fmt(payload.get('grad_tol'))}",
        f"- suggested gradient tolerance (FPR <= {_fmt(payload.get('max_fpr'))}) = "
        f"{_fmt(payload.get('suggested_grad_tol'))}",
    ]
    correlation = payload.get("grad_badness_correlation")
    if correlation:
        lines.append(
            f"- Spearman rho(|grad|, bad) = {correlation['rho']:.3f} "
            f"(p = {correlation['pvalue']:.2g}, n = {correlation['n']})"
        )
    lines.extend(["", "## Bad-fit rate by size and optimizer", ""])
    lines.append(aggregate.to_string(index=False))
    if tolerance is not None and not tolerance.empty:
        lines.extend(["", "## Gradient tolerance sweep", ""])
        lines.append(tolerance.to_string(index=False))
    if timing is not None and not timing.empty:
        lines.extend(["", "## Timing (head)", ""])
        lines.append(timing.head(10).to_string(index=False))
    lines.extend(
        [
            "",
            "## Artifacts",
            f"- Flags: {run_dir / 'flags.csv'}",
            f"- Aggregate: {run_dir / 'aggregate.csv'}",
            f"- Plots: {run_dir / 'diagnostic_plots'}",
        ]
    )
    out_path = run_dir / "EXEC_SUMMARY.md"
    out_path.write_text("\n".join(lines))
    return out_path
