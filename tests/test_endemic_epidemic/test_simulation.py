"""
Tests for simulation from endemic-epidemic models
"""

import numpy as np
import pytest

from endemic_epidemic.simulation import simulate, simulate_series


class TestSimulateSeries:

    def test_keeps_initial_values(self, template_series, simulated_series):
        assert np.array_equal(simulated_series.observed[0], template_series.observed[0])
        assert simulated_series.units == template_series.units
        assert np.array_equal(simulated_series.neighbourhood, template_series.neighbourhood)

    def test_reproducible(self, template_series, true_control, true_coefficients):
        first = simulate_series(template_series, true_control, true_coefficients, seed=1)
        second = simulate_series(template_series, true_control, true_coefficients, seed=1)
        assert np.array_equal(first.observed, second.observed)

    def test_missing_coefficient(self, template_series, true_control, true_coefficients):
        coefficients = dict(true_coefficients)
        del coefficients["ar.intercept"]
        with pytest.raises(ValueError):
            simulate_series(template_series, true_control, coefficients)

    def test_level_near_stationary_mean(self, simulated_series):
        """Endemic means of 8 to 32 with epidemic share 0.5 give means of roughly 16 to 64"""
        means = simulated_series.observed[12:].mean(axis=0)
        assert np.all(means > 5)
        assert np.all(means < 120)


class TestSimulateFit:

    def test_shape(self, true_fit):
        paths = simulate(true_fit, n_sim=3, seed=0, times=np.arange(50, 60))
        assert paths.shape == (3, 10, len(true_fit.units))
        assert np.all(paths >= 0)
        assert np.all(paths == np.round(paths))

    def test_non_contiguous_times(self, true_fit):
        with pytest.raises(ValueError):
            simulate(true_fit, times=[10, 12])

    def test_start_before_lags(self, true_fit):
        with pytest.raises(ValueError):
            simulate(true_fit, times=[0, 1])
