"""End-to-end tests for SeasonalComponent.

Synthetic signals are built from ``10 + 5 sin(2 pi phase / P)`` plus Gaussian
noise. History is summarised into windows for ``initialize`` and the rest is
streamed through ``add``.
"""

from __future__ import annotations

import logging
import math
from typing import Tuple

import numpy as np
import pytest

from adaptive_seasonality import PeriodicTime, SeasonalComponent, SeasonalProfile
from adaptive_seasonality.ingest import summarize_into_windows
from adaptive_seasonality.models.seasonal_time import DAY

LEVEL = 10.0
AMPLITUDE = 5.0
NOISE = 0.1


def _signal(t: np.ndarray, period: float, rng: np.random.Generator, trend: float = 0.0) -> np.ndarray:
    return LEVEL + AMPLITUDE * np.sin(2.0 * np.pi * t / period) + trend * t / period + rng.normal(0.0, NOISE, size=t.size)


def _samples(start: float, end: float, n: int, period: float, rng: np.random.Generator, trend: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    t = np.sort(rng.uniform(start, end, size=n))
    return t, _signal(t, period, rng, trend)


def _make_component(period: float = 1.0, max_size: int = 12, seed: int = 0, **kwargs) -> SeasonalComponent:
    """Component initialized from one period of hourly-style windows."""
    c = SeasonalComponent(PeriodicTime(period), max_size, seed=seed, **kwargs)
    rng = np.random.default_rng(seed)
    t, y = _samples(0.0, period, 1000, period, rng)
    assert c.initialize(0.0, period, summarize_into_windows(t, y, period / 24.0, start=0.0))
    return c


def _train(c: SeasonalComponent, periods: int, per_period: int = 300, seed: int = 1, trend: float = 0.0) -> float:
    """Stream ``periods`` periods of data after the initialization period; return the end time."""
    rng = np.random.default_rng(seed)
    p = c.period
    end = p
    for k in range(1, periods + 1):
        t, y = _samples(k * p, (k + 1) * p, per_period, p, rng, trend)
        for ti, yi in zip(t, y):
            c.add(float(ti), float(yi))
        end = (k + 1) * p
        c.propagate_forwards_by_time(p)
        c.interpolate(end)
    return end


# -----------------------------------------------------------------------
# Construction
# -----------------------------------------------------------------------


class TestConstruction:
    def test_starts_uninitialized(self) -> None:
        c = SeasonalComponent(PeriodicTime(DAY), 24)
        assert not c.initialized
        assert c.size == 0
        assert c.period == DAY
        assert c.value_spline is None

    @pytest.mark.parametrize(
        "kwargs",
        [dict(max_size=0), dict(max_size=4, decay_rate=-0.1), dict(max_size=4, minimum_bucket_length=-1.0)],
    )
    def test_invalid_configuration_raises(self, kwargs) -> None:
        with pytest.raises(ValueError):
            SeasonalComponent(PeriodicTime(DAY), **kwargs)

    def test_time_provider_is_required(self) -> None:
        with pytest.raises(TypeError):
            SeasonalComponent(object(), 24)

    def test_from_profile(self) -> None:
        profile = SeasonalProfile(max_size=6, decay_rate=0.5, minimum_bucket_length=0.01, seed=3)
        c = SeasonalComponent.from_profile(PeriodicTime(1.0), profile)
        assert c.profile == profile
        assert c.decay_rate == 0.5
        assert c.bucketing.max_size == 6

    def test_decay_rate_setter(self) -> None:
        c = SeasonalComponent(PeriodicTime(1.0), 4)
        c.decay_rate = 0.2
        assert c.bucketing.decay_rate == 0.2
        assert c.profile.decay_rate == 0.2
        with pytest.raises(ValueError):
            c.decay_rate = -1.0


# -----------------------------------------------------------------------
# Uninitialized / insufficient data
# -----------------------------------------------------------------------


class TestUninitialized:
    def test_queries_return_neutral_values(self) -> None:
        c = SeasonalComponent(PeriodicTime(DAY), 24)
        assert c.value(100.0, 95.0) == (0.0, 0.0)
        assert c.variance(100.0, 95.0) == (0.0, 0.0)
        assert c.mean_value() == 0.0
        assert c.mean_variance() == 0.0
        assert c.heteroscedasticity() == 1.0
        assert c.covariances(100.0) is None
        assert c.variance_due_to_parameter_drift(100.0) == 0.0
        assert not c.sufficient_history_to_predict(100.0)
        assert c.difference_from_mean(100.0, DAY) == 0.0
        assert c.slope() == 0.0

    def test_add_is_ignored(self) -> None:
        c = SeasonalComponent(PeriodicTime(DAY), 24)
        before = c.checksum()
        c.add(100.0, 5.0)
        c.interpolate(200.0)
        c.propagate_forwards_by_time(1000.0, mean_revert=True)
        assert c.checksum() == before
        assert not c.initialized

    def test_initialize_without_data_fails(self) -> None:
        c = SeasonalComponent(PeriodicTime(DAY), 24)
        assert not c.initialize(0.0, DAY, [])
        assert not c.initialized

    def test_sparse_history_is_insufficient(self) -> None:
        c = SeasonalComponent(PeriodicTime(1.0), 4)
        windows = summarize_into_windows([0.1, 0.6], [1.0, 2.0], 0.25, start=0.0)
        assert c.initialize(0.0, 1.0, windows)
        assert c.covariances(0.1) is None
        assert not c.sufficient_history_to_predict(0.1)
        assert c.variance_due_to_parameter_drift(5.0) == 0.0


# -----------------------------------------------------------------------
# Learning
# -----------------------------------------------------------------------


def test_daily_sinusoid_scenario() -> None:
    rng = np.random.default_rng(42)
    c = SeasonalComponent(PeriodicTime(DAY), 24, decay_rate=0.001)
    t, y = _samples(0.0, DAY, 2000, DAY, rng)
    assert c.initialize(0.0, DAY, summarize_into_windows(t, y, 3600.0, start=0.0))
    assert c.size == 24

    t, y = _samples(DAY, 2.0 * DAY, 10000, DAY, rng)
    for ti, yi in zip(t, y):
        c.add(float(ti), float(yi))
    c.interpolate(2.0 * DAY)

    assert c.mean_value() == pytest.approx(LEVEL, abs=0.5)
    mean, _ = c.value(2.0 * DAY + 21600.0, 50.0)
    assert mean == pytest.approx(LEVEL + AMPLITUDE, abs=1.0)


def test_recovers_sinusoid_over_many_periods() -> None:
    c = _make_component(decay_rate=0.05)
    end = _train(c, 20)

    phases = np.linspace(0.0, 1.0, 48, endpoint=False)
    estimated = np.array([c.value(end + p, 0.0)[0] for p in phases])
    truth = LEVEL + AMPLITUDE * np.sin(2.0 * np.pi * phases)
    # wide buckets over the flat peaks and troughs smooth the extremes a little
    np.testing.assert_allclose(estimated, truth, atol=0.5)
    assert np.mean(np.abs(estimated - truth)) < 0.2
    assert c.mean_value() == pytest.approx(LEVEL, abs=0.1)
    assert c.mean_variance() > 0.0


def _train_noise_free(signal, max_size: int, periods: int, per_period: int = 300) -> Tuple[SeasonalComponent, float]:
    """Initialize on one period of ``signal(t)`` and stream ``periods`` more with refine on."""
    c = SeasonalComponent(PeriodicTime(1.0), max_size)
    rng = np.random.default_rng(3)
    t = np.sort(rng.uniform(0.0, 1.0, size=1000))
    assert c.initialize(0.0, 1.0, summarize_into_windows(t, signal(t), 1.0 / 48.0, start=0.0))
    for k in range(1, periods + 1):
        t = np.sort(rng.uniform(k, k + 1.0, size=per_period))
        for ti, yi in zip(t, signal(t)):
            c.add(float(ti), float(yi))
        c.interpolate(k + 1.0)
    return c, periods + 1.0


def test_recovers_noise_free_sinusoid_with_refine() -> None:
    c, end = _train_noise_free(lambda t: np.sin(2.0 * np.pi * t), 24, 5)
    phases = np.linspace(0.0, 1.0, 96, endpoint=False)
    estimated = np.array([c.value(end + p, 50.0)[0] for p in phases])
    np.testing.assert_allclose(estimated, np.sin(2.0 * np.pi * phases), atol=0.05)


def test_difference_from_mean_of_half_period_signal() -> None:
    c, end = _train_noise_free(lambda t: 3.0 + np.sin(4.0 * np.pi * t), 48, 3, per_period=600)
    assert c.difference_from_mean(end + 0.125, 0.5) == pytest.approx(1.0, abs=0.05)
    assert c.difference_from_mean(end + 0.125, 0.25) == pytest.approx(0.0, abs=0.05)


def test_value_interval_widens_with_confidence() -> None:
    c = _make_component()
    end = _train(c, 5)
    m0, h0 = c.value(end + 0.3, 0.0)
    m1, h1 = c.value(end + 0.3, 80.0)
    m2, h2 = c.value(end + 0.3, 99.0)
    assert h0 == 0.0
    assert 0.0 < h1 < h2
    assert m0 == m1 == m2


def test_variance_interval() -> None:
    c = _make_component()
    end = _train(c, 5)
    v, half = c.variance(end + 0.3, 95.0)
    assert v > 0.0
    assert half > 0.0
    assert c.variance(end + 0.3, 0.0) == (v, 0.0)


def test_queries_serve_last_interpolation() -> None:
    c = _make_component()
    end = _train(c, 3)
    before = c.value(end + 0.25, 50.0)[0]
    for t in np.linspace(end, end + 1.0, 50, endpoint=False):
        c.add(float(t), 100.0)
    assert c.value(end + 0.25, 50.0)[0] == before
    c.interpolate(end + 1.0)
    assert c.value(end + 0.25, 50.0)[0] > before


def test_difference_from_mean() -> None:
    c = _make_component()
    end = _train(c, 5)
    # only strictly shorter periods that divide the component period count
    assert c.difference_from_mean(end + 0.25, 1.0) == 0.0
    assert c.difference_from_mean(end + 0.25, 2.0) == 0.0
    # averaging over two half-period repeats cancels the sinusoid
    assert c.difference_from_mean(end + 0.25, 0.5) == pytest.approx(0.0, abs=0.5)
    assert c.difference_from_mean(end + 0.25, 0.3) == 0.0


def test_shift_level_moves_values() -> None:
    c = _make_component()
    end = _train(c, 3)
    before = c.value(end + 0.1, 0.0)[0]
    c.shift_level(2.0)
    assert c.value(end + 0.1, 0.0)[0] == pytest.approx(before + 2.0)
    c.interpolate(end)
    assert c.value(end + 0.1, 0.0)[0] == pytest.approx(before + 2.0, abs=1e-6)


def test_trend_is_learned() -> None:
    c = _make_component(decay_rate=0.02)
    _train(c, 15, trend=0.5)
    assert c.slope() == pytest.approx(0.5, abs=0.1)


def test_non_finite_samples_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    c = _make_component()
    before = c.checksum()
    with caplog.at_level(logging.ERROR):
        c.add(1.5, math.nan)
        c.add(math.inf, 1.0)
    assert c.checksum() == before
    assert "non-finite" in caplog.text


def test_non_positive_weight_is_ignored() -> None:
    c = _make_component()
    before = c.checksum()
    c.add(1.5, 3.0, weight=0.0)
    assert c.checksum() == before


# -----------------------------------------------------------------------
# Forgetting and drift
# -----------------------------------------------------------------------


def test_forgetting_restores_uniform_uninformative_state() -> None:
    c = _make_component(decay_rate=1.0)
    _train(c, 5)
    c.propagate_forwards_by_time(1e6, mean_revert=True)
    assert c.heteroscedasticity() == pytest.approx(1.0)
    widths = c.bucketing.widths
    np.testing.assert_allclose(widths, widths[0])


def test_drift_variance_is_non_decreasing() -> None:
    c = _make_component(decay_rate=0.05)
    end = _train(c, 10, trend=0.2)
    cov = c.covariances(end + 0.4)
    assert cov is not None
    assert cov[1, 1] > 0.0

    times = end + 0.4 + np.arange(0.0, 30.0, 1.0)
    drift = np.array([c.variance_due_to_parameter_drift(float(t)) for t in times])
    assert np.all(drift >= 0.0)
    assert np.all(np.diff(drift) >= -1e-15)
    assert drift[-1] > drift[0]


def test_covariances_are_symmetric_psd() -> None:
    c = _make_component()
    end = _train(c, 5)
    cov = c.covariances(end + 0.7)
    assert cov.shape == (2, 2)
    np.testing.assert_allclose(cov, cov.T)
    assert np.all(np.linalg.eigvalsh(cov) >= -1e-12)
    assert c.sufficient_history_to_predict(end + 0.7)


# -----------------------------------------------------------------------
# Jitter
# -----------------------------------------------------------------------


class TestJitter:
    def test_same_seed_is_reproducible(self) -> None:
        a = _make_component(minimum_bucket_length=0.02, seed=5)
        b = _make_component(minimum_bucket_length=0.02, seed=5)
        _train(a, 3)
        _train(b, 3)
        assert a.checksum() == b.checksum()

    def test_different_seed_changes_state(self) -> None:
        a = _make_component(minimum_bucket_length=0.02, seed=5)
        b = _make_component(minimum_bucket_length=0.02, seed=6)
        b_state = b.persist()
        b_state["bucketing"] = a.persist()["bucketing"]
        b_state["splines"] = a.persist()["splines"]
        assert b.restore(b_state)
        # identical buckets, different jitter streams
        _train(a, 2)
        _train(b, 2)
        assert a.checksum() != b.checksum()

    def test_jittered_estimate_is_accurate(self) -> None:
        c = _make_component(minimum_bucket_length=0.02, decay_rate=0.05)
        end = _train(c, 15)
        phases = np.linspace(0.0, 1.0, 24, endpoint=False)
        estimated = np.array([c.value(end + p, 0.0)[0] for p in phases])
        np.testing.assert_allclose(estimated, LEVEL + AMPLITUDE * np.sin(2.0 * np.pi * phases), atol=0.5)
        assert np.min(c.bucketing.widths) >= 0.02 - 1e-9


def test_memory_usage_grows_with_state() -> None:
    empty = SeasonalComponent(PeriodicTime(1.0), 12)
    c = _make_component()
    assert c.memory_usage() > empty.memory_usage() > 0


def test_clear() -> None:
    c = _make_component()
    c.clear()
    assert not c.initialized
    assert c.value(0.3, 50.0) == (0.0, 0.0)
