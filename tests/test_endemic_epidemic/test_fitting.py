"""
Tests for endemic-epidemic model fitting
"""

import numpy as np
import pytest

from endemic_epidemic.fitting import HHH4Model, compare_models, fit_hhh4, profile_par_lag
from endemic_epidemic.models import (
    ComponentSpec,
    Family,
    LagKind,
    LagStructure,
    ModelControl,
    NeighbourWeights
)


@pytest.fixture(scope="module")
def endemic_control():
    return ModelControl(end=ComponentSpec(seasons=1, offset=True), subset=(1, 119))


@pytest.fixture(scope="module")
def endemic_fit(simulated_series, endemic_control):
    return fit_hhh4(simulated_series, endemic_control)


@pytest.fixture(scope="module")
def full_fit(simulated_series, true_control):
    return fit_hhh4(simulated_series, true_control.replace(subset=(1, 119)))


class TestParameterLayout:
    """Test parameter naming and counting"""

    def test_names_of_full_model(self, simulated_series, true_control):
        """Every component contributes its terms in a fixed order"""
        model = HHH4Model(simulated_series, true_control)
        assert model.names == [
            "end.intercept",
            "end.sin(2*pi*1*t/12)",
            "end.cos(2*pi*1*t/12)",
            "ar.intercept",
            "ne.intercept",
            "neweights.log_d",
            "overdisp.log_size"
        ]

    def test_unit_specific_intercepts(self, simulated_series):
        """Unit-specific intercepts add one parameter per unit"""
        control = ModelControl(
            end=ComponentSpec(unit_specific=True),
            ar=ComponentSpec(unit_specific=True),
            family=Family.NEGBINM
        )
        model = HHH4Model(simulated_series, control)
        n_units = simulated_series.n_units
        assert model.n_params == 3 * n_units
        assert "ar.intercept.south" in model.names
        assert "overdisp.log_size.west" in model.names

    def test_window_before_lags_rejected(self, simulated_series):
        """The fitting window cannot start before the maximum lag"""
        control = ModelControl(
            ar=ComponentSpec(),
            lag=LagStructure(kind=LagKind.GEOMETRIC, max_lag=3),
            subset=(1, 50)
        )
        with pytest.raises(ValueError):
            HHH4Model(simulated_series, control)

    def test_neighbourhood_requires_matrix(self, small_series):
        """The neighbourhood component needs a neighbourhood matrix"""
        with pytest.raises(ValueError):
            HHH4Model(small_series, ModelControl(ne=ComponentSpec()))

    def test_unknown_covariate(self, simulated_series):
        """Covariates must be attached to the series"""
        with pytest.raises(ValueError):
            HHH4Model(simulated_series, ModelControl(end=ComponentSpec(covariates=("temperature",))))


class TestMeanStructure:
    """Test the decomposition of the conditional mean"""

    def test_components_add_up(self, true_fit):
        components = true_fit.components
        total = components["endemic"] + components["epi_own"] + components["epi_neighbours"]
        np.testing.assert_allclose(total, components["mean"])

    def test_transition_matrices_reproduce_mean(self, true_fit):
        """mu_t = endemic_t + sum_q A_q Y_{t-q}"""
        model, theta = true_fit.model, true_fit.theta
        t = 30
        a = model.transition_matrices(theta, t)
        expected = model.endemic_mean(theta, [t])[0] + a[0] @ true_fit.sts.observed[t - 1]
        np.testing.assert_allclose(model.mean_components(theta, [t])["mean"][0], expected)

    def test_powerlaw_decay(self, true_fit):
        assert true_fit.decay == pytest.approx(2.0)


class TestFitting:
    """Test maximum likelihood estimation"""

    def test_endemic_fit_converges(self, endemic_fit):
        assert endemic_fit.converged
        assert np.isfinite(endemic_fit.loglik)

    def test_loglik_matches_model(self, full_fit):
        assert full_fit.loglik == pytest.approx(full_fit.model.loglik(full_fit.theta))

    def test_aic_formula(self, full_fit):
        assert full_fit.aic == pytest.approx(-2 * full_fit.loglik + 2 * len(full_fit.coefficients))
        assert full_fit.df == 7

    def test_epidemic_components_improve_fit(self, endemic_fit, full_fit):
        """Adding the true epidemic components increases the likelihood"""
        assert full_fit.loglik > endemic_fit.loglik
        assert full_fit.aic < endemic_fit.aic

    def test_estimates_near_truth(self, full_fit):
        assert full_fit.coefficients["ar.intercept"] == pytest.approx(np.log(0.4), abs=0.6)
        assert full_fit.overdispersion[0] > 2.0

    def test_summary_table(self, full_fit):
        summary = full_fit.summary()
        assert list(summary.index) == list(full_fit.coefficients.index)
        assert (summary["ci_lower"] <= summary["ci_upper"]).all()

    def test_update_removes_component(self, full_fit):
        """update() refits with changed control fields"""
        reduced = full_fit.update(ne=None)
        assert "ne.intercept" not in reduced.coefficients.index
        assert len(reduced.coefficients) == 5
        assert np.array_equal(reduced.window, full_fit.window)

    def test_fixed_decay(self, simulated_series, true_control):
        """A fixed power-law decay is not estimated"""
        control = true_control.replace(ne_weights=NeighbourWeights(decay=1.5, estimate_decay=False))
        model = HHH4Model(simulated_series, control)
        assert "neweights.log_d" not in model.names
        assert model.decay(model.start_values()) == 1.5


class TestModelComparison:
    """Test AIC comparison tables"""

    def test_sorted_by_aic(self, endemic_fit, full_fit):
        table = compare_models({"endemic": endemic_fit, "full": full_fit})
        assert table["model"].iloc[0] == "full"
        assert table["delta_aic"].iloc[0] == 0.0
        assert (table["delta_aic"] >= 0).all()

    def test_different_windows_rejected(self, simulated_series, endemic_fit, endemic_control):
        other = fit_hhh4(simulated_series, endemic_control.replace(subset=(10, 119)))
        with pytest.raises(ValueError):
            compare_models({"a": endemic_fit, "b": other})

    def test_empty(self):
        with pytest.raises(ValueError):
            compare_models({})


class TestLagProfile:
    """Test profiling of the lag weighting parameter"""

    def test_profile_counts_extra_parameter(self, simulated_series):
        control = ModelControl(
            end=ComponentSpec(seasons=1, offset=True),
            ar=ComponentSpec(),
            lag=LagStructure(kind=LagKind.GEOMETRIC, max_lag=3),
            subset=(3, 119)
        )
        profile = profile_par_lag(simulated_series, control, grid=[-1.0, 2.0])
        assert len(profile.loglik) == 2
        assert profile.best_par_lag == profile.grid[int(np.argmax(profile.loglik))]
        assert profile.best_fit.n_profiled == 1
        assert profile.best_fit.df == len(profile.best_fit.coefficients) + 1
        assert profile.best_fit.loglik == pytest.approx(profile.loglik.max())
        assert list(profile.to_frame().columns) == ["par_lag", "loglik"]

    def test_single_lag_cannot_be_profiled(self, simulated_series, true_control):
        with pytest.raises(ValueError):
            profile_par_lag(simulated_series, true_control)
