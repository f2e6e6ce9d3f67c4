import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pytest

OPTIMIZERS = ["bobyqa", "Nelder_Mead", "nlminbwrap"]
BASE = {"beta": 2.0, "theta": 0.5}
SPEED = {"bobyqa": 1.0, "Nelder_Mead": 2.0, "nlminbwrap": 0.5}


def make_estimates() -> pd.DataFrame:
    """Three optimizers; nlminbwrap is 20% off at log_size 3 and warns on gradient there."""
    rows = []
    for log_size in (2, 3):
        for replicate in (0, 1):
            for optimizer in OPTIMIZERS:
                off = optimizer == "nlminbwrap" and log_size == 3
                grad = 0.05 if off else 1e-6
                eig = -1e-3 if (optimizer == "Nelder_Mead" and log_size == 3 and replicate == 1) else 1.0
                for param, base in BASE.items():
                    rows.append(
                        {
                            "dataset": f"sim_{log_size}_{replicate}",
                            "optimizer": optimizer,
                            "log_size": log_size,
                            "replicate": replicate,
                            "param": param,
                            "value": base * 1.2 if off else base,
                            "grad": grad,
                            "eig": eig,
                            "time": SPEED[optimizer] * 10 ** (log_size - 2),
                        }
                    )
    rows.append(
        {
            "dataset": "sim_2_0",
            "optimizer": "bobyqa",
            "log_size": 2,
            "replicate": 0,
            "param": "sigma",
            "value": 1.0,
            "grad": 1e-6,
            "eig": 1.0,
            "time": 1.0,
        }
    )
    return pd.DataFrame(rows)


@pytest.fixture
def estimates() -> pd.DataFrame:
    return make_estimates()


@pytest.fixture
def estimates_csv(tmp_path, estimates):
    path = tmp_path / "allfits.csv"
    estimates.to_csv(path, index=False)
    return path
