import math

import numpy as np
import pytest

from convdiag.detect.consensus import (
    DEGENERATE_CONSENSUS,
    INSUFFICIENT_GROUP_SIZE,
    LOW_AGREEMENT,
    NON_FINITE,
    OK,
    UNDEFINED_SPREAD,
    classify_group,
    find_bad,
)


def test_identical_values_are_never_bad():
    for value in (3.7, -0.25, 1e6):
        assert find_bad([value] * 5, reltol=0.01, cut=True) == [False] * 5


def test_single_outlier_is_flagged():
    flags = find_bad([10.0, 10.001, 9.999, 12.0], reltol=0.01, cut=True)
    assert flags == [False, False, False, True]


def test_worked_example():
    flags = find_bad([1.00, 1.01, 0.99, 1.20], reltol=0.01, cut=True)
    assert flags == [False, False, False, True]


def test_relative_deviation_mode():
    devs = find_bad([10.0, 10.001, 9.999, 12.0], reltol=0.01, cut=False)
    # others disagree whenever 12.0 is among them
    assert devs[:3] == [None, None, None]
    assert devs[3] == pytest.approx(0.2)


def test_threshold_of_deviations_differs_from_cut():
    """Matching uses the held-out value as scale, deviation uses the consensus."""
    x = [1.0, 1.0, 1.0, 1.0101]
    cut = find_bad(x, reltol=0.01, cut=True)
    devs = find_bad(x, reltol=0.01, cut=False)
    thresholded = [d is not None and d > 0.01 for d in devs]
    assert cut == [False, False, False, False]
    assert thresholded == [False, False, False, True]


def test_low_agreement_is_false_when_cut_and_missing_otherwise():
    x = [1.0, 2.0, 3.0, 4.0]
    assert find_bad(x, cut=True) == [False] * 4
    assert find_bad(x, cut=False) == [None] * 4
    assert list(classify_group(x)["reason"]) == [LOW_AGREEMENT] * 4


def test_zero_consensus_is_missing_in_both_modes():
    x = [1.0, -1.0, 5.0]
    assert find_bad(x, cut=True)[2] is None
    assert find_bad(x, cut=False)[2] is None
    table = classify_group(x)
    assert table.loc[2, "reason"] == DEGENERATE_CONSENSUS
    assert table["bad"].isna().iloc[2]


def test_pair_has_undefined_spread():
    assert find_bad([1.0, 1.0], cut=True) == [None, None]
    assert find_bad([1.0, 1.5], cut=False) == [None, None]
    assert list(classify_group([1.0, 1.0])["reason"]) == [UNDEFINED_SPREAD] * 2


def test_failed_fit_is_left_out_of_consensus():
    flags = find_bad([1.0, 1.0, 1.0, 1.0, 1.3, np.nan], cut=True)
    assert flags == [False, False, False, False, True, None]
    devs = find_bad([1.0, 1.0, 1.0, 1.0, 1.3, None], cut=False)
    assert devs[4] == pytest.approx(0.3)
    assert devs[5] is None

    table = classify_group([1.0, None, 1.0, 1.0])
    assert list(table["reason"]) == [OK, NON_FINITE, OK, OK]
    assert list(table["bad"].fillna(True)) == [False, True, False, False]


def test_failed_fits_shrink_group_below_comparable_size():
    assert find_bad([1.0, None, 1.0, np.nan], cut=True) == [None] * 4
    assert list(classify_group([1.0, None, 1.0, np.nan])["reason"]) == [
        UNDEFINED_SPREAD,
        NON_FINITE,
        UNDEFINED_SPREAD,
        NON_FINITE,
    ]
    assert list(classify_group([2.0, np.nan, np.nan])["reason"]) == [
        INSUFFICIENT_GROUP_SIZE,
        NON_FINITE,
        NON_FINITE,
    ]


def test_too_few_estimates_raises():
    with pytest.raises(ValueError, match="at least 2"):
        find_bad([1.0])


def test_nonpositive_reltol_raises():
    with pytest.raises(ValueError, match="reltol"):
        find_bad([1.0, 1.0, 1.0], reltol=0.0)


def test_classify_group_columns():
    table = classify_group([1.00, 1.01, 0.99, 1.20])
    assert list(table.columns) == ["index", "value", "consensus", "spread", "deviation", "bad", "reason"]
    assert table.loc[3, "reason"] == OK
    assert float(table.loc[3, "consensus"]) == pytest.approx(1.0)
    assert math.isclose(float(table.loc[3, "spread"]), 0.01, rel_tol=1e-6)
    assert str(table["bad"].dtype) == "boolean"


def test_detector_does_not_mutate_input():
    x = np.array([1.0, 1.0, 1.3])
    find_bad(x)
    assert np.array_equal(x, [1.0, 1.0, 1.3])
