"""
Tests for plots of fits, residuals and maps
"""

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pytest
from shapely.geometry import box

from endemic_epidemic.models import CountTimeSeries
from endemic_epidemic.plotting import plot_map, plot_pit_histogram, plot_residuals


@pytest.fixture
def mapped_series():
    gdf = gpd.GeoDataFrame(
        {"unit": ["AT", "CH", "DE"]},
        geometry=[box(1, 0, 2, 1), box(0, 0, 1, 1), box(0, 1, 2, 2)]
    )
    return CountTimeSeries(
        observed=np.array([[3, 1, 20], [5, 0, 18]]),
        units=["AT", "CH", "DE"],
        map=gdf.set_index("unit", drop=False)
    )


class TestPlotMap:
    """Test choropleth maps of unit-level values"""

    def test_saves_figure(self, mapped_series, tmp_path):
        save_path = tmp_path / "plots" / "incidence.png"
        plot_map(mapped_series, np.array([1.0, 0.5, 3.0]), title="Incidence", save_path=save_path)
        assert save_path.exists()
        assert save_path.stat().st_size > 0

    def test_values_by_unit_name(self, mapped_series):
        """Named values are matched to units, not taken in order"""
        fig = plot_map(mapped_series, {"DE": 3.0, "AT": 1.0, "CH": 0.5}, title="Intercepts")
        assert fig.axes[0].get_title() == "Intercepts"
        plt.close(fig)

    def test_series_without_map(self, small_series):
        with pytest.raises(ValueError):
            plot_map(small_series, np.array([1.0]))


class TestOtherPlots:
    """Test residual and calibration plots"""

    def test_residual_heat_map(self, tmp_path):
        save_path = tmp_path / "residuals.png"
        plot_residuals(np.linspace(-2, 2, 12).reshape(6, 2), units=["a", "b"], save_path=save_path)
        assert save_path.exists()

    def test_pit_histogram(self, tmp_path):
        save_path = tmp_path / "pit.png"
        plot_pit_histogram(np.full(5, 0.2), save_path=save_path)
        assert save_path.exists()
