from __future__ import annotations

import logging

import numpy as np
import pytest

from adaptive_seasonality.estimation.spline import PeriodicSpline

PERIOD = 86400.0


def _sin_spline(n: int = 24, kind: str = "cubic") -> PeriodicSpline:
    knots = np.linspace(0.0, PERIOD, n, endpoint=False)
    return PeriodicSpline(PERIOD, knots, np.sin(2.0 * np.pi * knots / PERIOD), kind=kind)


def test_cubic_reproduces_smooth_periodic_function() -> None:
    s = _sin_spline()
    phases = np.linspace(0.0, PERIOD, 1000, endpoint=False)
    np.testing.assert_allclose(s(phases), np.sin(2.0 * np.pi * phases / PERIOD), atol=1e-3)


def test_evaluation_wraps_the_period() -> None:
    s = _sin_spline()
    assert s(0.0) == pytest.approx(s(PERIOD))
    assert s(1234.5) == pytest.approx(s(1234.5 + 3.0 * PERIOD))
    assert s(-100.0) == pytest.approx(s(PERIOD - 100.0))
    assert isinstance(s(10.0), float)


def test_cubic_mean_over_period() -> None:
    assert _sin_spline().mean() == pytest.approx(0.0, abs=1e-9)
    s = PeriodicSpline(PERIOD, [0.0, 100.0, 5000.0], [2.0, 2.0, 2.0])
    assert s.mean() == pytest.approx(2.0)


def test_linear_interpolation_wraps() -> None:
    s = PeriodicSpline(1.0, [0.0, 0.5], [0.0, 1.0], kind="linear")
    assert s(0.25) == pytest.approx(0.5)
    assert s(0.75) == pytest.approx(0.5)
    assert s(0.999) == pytest.approx(0.002)
    assert s.mean() == pytest.approx(0.5)


def test_single_knot_is_constant() -> None:
    s = PeriodicSpline(1.0, [0.3], [4.0])
    np.testing.assert_allclose(s(np.array([0.0, 0.3, 0.9])), 4.0)
    assert s.mean() == 4.0


def test_cubic_with_two_knots_is_linear() -> None:
    s = PeriodicSpline(1.0, [0.0, 0.5], [0.0, 1.0], kind="cubic")
    assert s(0.25) == pytest.approx(0.5)
    np.testing.assert_array_equal(s.coefficients, [0.0, 1.0])


def test_coincident_knots_are_merged() -> None:
    s = PeriodicSpline(1.0, [0.5, 0.1, 0.1], [0.0, 1.0, 3.0], kind="linear")
    np.testing.assert_array_equal(s.knots, [0.1, 0.5])
    np.testing.assert_array_equal(s.values, [2.0, 0.0])


def test_knot_at_end_of_period_merges_with_first() -> None:
    s = PeriodicSpline(1.0, [0.0, 1.0 - 1e-12], [1.0, 3.0])
    assert s.knots.size == 1
    assert s(0.4) == pytest.approx(2.0)


def test_non_finite_values_fall_back_to_linear(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        s = PeriodicSpline(1.0, [0.0, 0.3, 0.6], [1.0, np.inf, 2.0])
    assert "falling back to linear" in caplog.text
    assert s.coefficients.shape == (3,)


@pytest.mark.parametrize(
    "knots, values, kind",
    [
        ([], [], "cubic"),
        ([0.0, 0.5], [1.0], "cubic"),
        ([0.0, 0.5], [1.0, 2.0], "quadratic"),
    ],
)
def test_invalid_arguments_raise(knots, values, kind) -> None:
    with pytest.raises(ValueError):
        PeriodicSpline(1.0, knots, values, kind=kind)


def test_shifted_adds_constant() -> None:
    s = _sin_spline()
    t = s.shifted(2.5)
    phases = np.linspace(0.0, PERIOD, 50)
    np.testing.assert_allclose(t(phases), s(phases) + 2.5, atol=1e-12)


def test_round_trip_dict() -> None:
    s = _sin_spline(12)
    r = PeriodicSpline.from_dict(PERIOD, s.to_dict())
    phases = np.linspace(0.0, PERIOD, 50)
    np.testing.assert_array_equal(r(phases), s(phases))
    assert r.kind == "cubic"
