"""
Tests for Data Models
Validates the count time series container and model specifications
"""

import numpy as np
import pandas as pd
import pytest

from endemic_epidemic.models import (
    ComponentSpec,
    CountTimeSeries,
    Family,
    LagKind,
    LagStructure,
    ModelControl,
    NeighbourWeights
)


class TestCountTimeSeries:
    """Test CountTimeSeries validation and helpers"""

    def test_basic_properties(self, template_series):
        assert template_series.n_time == 120
        assert template_series.n_units == 4
        assert template_series.observed.dtype == np.int64

    def test_counts_are_read_only(self, template_series):
        with pytest.raises(ValueError):
            template_series.observed[0, 0] = 1

    def test_univariate_input(self):
        sts = CountTimeSeries(observed=[1, 2, 3], units=["a"])
        assert sts.observed.shape == (3, 1)

    @pytest.mark.parametrize("counts", [
        [[1, -1]],
        [[1.5, 2]],
        [[np.nan, 2]]
    ])
    def test_invalid_counts(self, counts):
        with pytest.raises(ValueError):
            CountTimeSeries(observed=counts, units=["a", "b"])

    def test_unit_count_mismatch(self):
        with pytest.raises(ValueError):
            CountTimeSeries(observed=np.zeros((5, 2)), units=["a"])

    def test_duplicate_units(self):
        with pytest.raises(ValueError):
            CountTimeSeries(observed=np.zeros((5, 2)), units=["a", "a"])

    def test_asymmetric_neighbourhood(self):
        with pytest.raises(ValueError):
            CountTimeSeries(
                observed=np.zeros((5, 2)),
                units=["a", "b"],
                neighbourhood=np.array([[0, 1], [2, 0]])
            )

    def test_non_positive_population(self):
        with pytest.raises(ValueError):
            CountTimeSeries(observed=np.zeros((5, 2)), units=["a", "b"], population=[10, 0])

    def test_population_fraction(self, template_series):
        fraction = template_series.population_fraction()
        assert fraction.sum() == pytest.approx(1.0)
        assert fraction[1] == pytest.approx(0.4)

    def test_uniform_fraction_without_population(self, small_series):
        assert small_series.population_fraction() == pytest.approx([1.0])

    def test_monthly_periods(self, template_series):
        periods = template_series.periods
        assert periods[0] == pd.Period("2010-01", freq="M")
        assert periods[-1] == pd.Period("2019-12", freq="M")

    def test_subset_shifts_start(self, template_series):
        sub = template_series.subset(units=["south", "east"], times=slice(13, None))
        assert sub.start == (2011, 2)
        assert sub.units == ["south", "east"]
        assert sub.n_time == 107
        assert sub.neighbourhood[0, 1] == 1
        assert sub.population[0] == pytest.approx(150000.0)

    def test_weekly_subset_across_53_week_year(self):
        """2020 has 53 ISO weeks, so ten weeks after week 50 is week 7 of 2021"""
        sts = CountTimeSeries(observed=np.zeros((30, 1)), units=["a"], freq=52, start=(2020, 50))
        sub = sts.subset(times=slice(10, None))
        assert sub.start == (2021, 7)
        assert sub.periods[0] == sts.periods[10]
        assert sub.periods[0].start_time == pd.Timestamp("2021-02-15")

    def test_subset_unknown_unit(self, template_series):
        with pytest.raises(ValueError):
            template_series.subset(units=["nowhere"])

    def test_subset_must_be_contiguous(self, template_series):
        with pytest.raises(ValueError):
            template_series.subset(times=[0, 2, 3])

    def test_to_frame(self, template_series):
        frame = template_series.to_frame()
        assert frame.shape == (120, 4)
        assert list(frame.columns) == template_series.units

    def test_save_and_load(self, template_series, tmp_path):
        path = tmp_path / "series.pkl"
        template_series.save(path)
        loaded = CountTimeSeries.load(path)
        assert np.array_equal(loaded.observed, template_series.observed)
        assert loaded.units == template_series.units

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CountTimeSeries.load(tmp_path / "missing.pkl")


class TestModelControl:
    """Test model specifications"""

    def test_defaults(self):
        control = ModelControl()
        assert control.family == Family.NEGBIN1
        assert control.max_lag == 1
        assert control.ar is None

    def test_family_from_string(self):
        assert ModelControl(family="NegBinM").family == Family.NEGBINM

    def test_offset_only_in_endemic(self):
        with pytest.raises(ValueError):
            ModelControl(ar=ComponentSpec(offset=True))

    def test_empty_window(self):
        with pytest.raises(ValueError):
            ModelControl(subset=(10, 5))

    def test_single_lag_has_one_lag(self):
        with pytest.raises(ValueError):
            LagStructure(kind=LagKind.SINGLE, max_lag=3)

    def test_unknown_neighbour_weights(self):
        with pytest.raises(ValueError):
            NeighbourWeights(kind="gravity")

    def test_from_dict(self):
        control = ModelControl.from_dict({
            "end": {"seasons": 2, "offset": True},
            "ar": {"unit_specific": True},
            "ne": {},
            "ne_weights": {"kind": "first_order"},
            "lag": {"kind": "geometric", "max_lag": 4},
            "family": "poisson",
            "subset": [4, 100]
        })
        assert control.end.seasons == 2
        assert control.ar.unit_specific
        assert control.ne_weights.kind == "first_order"
        assert control.lag.kind == LagKind.GEOMETRIC
        assert control.max_lag == 4
        assert control.family == Family.POISSON
        assert control.subset == (4, 100)

    def test_describe(self):
        control = ModelControl(end=ComponentSpec(seasons=1), ar=ComponentSpec(unit_specific=True))
        text = control.describe()
        assert "sin/cos(S=1)" in text
        assert "unit-specific" in text
        assert "negbin1" in text
