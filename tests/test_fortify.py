import numpy as np
import pandas as pd
import pytest

from convdiag.fortify import fortify


class _Fit:
    def __init__(self, data, sigma=2.0):
        self.data = data
        self.sigma = sigma

    def fitted(self):
        return np.array([1.0, 2.0, 3.0])

    def residuals(self):
        return np.array([0.5, -1.0, 0.0])


def test_fortify_adds_diagnostic_columns():
    data = pd.DataFrame({"y": [1.5, 1.0, 3.0], "g": ["a", "b", "a"]})
    out = fortify(_Fit(data))
    assert list(out.columns) == ["y", "g", ".fitted", ".resid", ".scresid"]
    assert np.allclose(out[".scresid"], [0.25, -0.5, 0.0])
    assert list(data.columns) == ["y", "g"]


def test_fortify_with_explicit_data():
    other = pd.DataFrame({"y": [0.0, 0.0, 0.0]})
    out = fortify(_Fit(None), data=other)
    assert np.allclose(out[".fitted"], [1.0, 2.0, 3.0])


def test_fortify_length_mismatch():
    with pytest.raises(ValueError, match="data rows"):
        fortify(_Fit(pd.DataFrame({"y": [1.0, 2.0]})))


def test_fortify_needs_data():
    with pytest.raises(ValueError, match="No data"):
        fortify(_Fit(None))
