"""
Tests for the modelling pipeline
"""

import json

import pytest

from endemic_epidemic.models import ComponentSpec, LagKind, LagStructure, ModelControl
from endemic_epidemic.pipeline import HHH4Pipeline, align_windows, default_model_sequence


@pytest.fixture(scope="module")
def report_and_dir(simulated_series, tmp_path_factory):
    output_dir = tmp_path_factory.mktemp("report")
    window = (1, simulated_series.n_time - 1)
    sequence = {
        "endemic": ModelControl(end=ComponentSpec(seasons=1, offset=True), subset=window),
        "endemic_ar": ModelControl(
            end=ComponentSpec(seasons=1, offset=True), ar=ComponentSpec(), subset=window
        )
    }
    pipeline = HHH4Pipeline(
        output_dir=output_dir,
        generate_plots=True,
        osa_periods=3,
        osa_refit="final",
        predictive_horizon=4
    )
    return pipeline.run_on_series(simulated_series, model_sequence=sequence), output_dir


class TestDefaultModelSequence:

    def test_sequence_with_neighbourhood(self, simulated_series):
        sequence = default_model_sequence(simulated_series, seasons=1, max_lag=3)
        assert list(sequence) == [
            "endemic", "endemic_ar", "unit_specific", "neighbourhood", "geometric_lags"
        ]
        assert {control.subset for control in sequence.values()} == {(3, 119)}
        assert sequence["endemic"].end.offset
        assert sequence["geometric_lags"].lag.kind == LagKind.GEOMETRIC
        assert sequence["geometric_lags"].ne is not None

    def test_sequence_without_neighbourhood(self, small_series):
        sequence = default_model_sequence(small_series, seasons=0, max_lag=1)
        assert list(sequence) == ["endemic", "endemic_ar", "unit_specific"]
        assert not sequence["endemic"].end.offset


class TestAlignWindows:
    """User-supplied sequences without explicit windows share one fitting window"""

    def test_missing_windows_start_at_largest_lag(self):
        sequence = {
            "single": ModelControl(end=ComponentSpec(), ar=ComponentSpec()),
            "geometric": ModelControl(
                end=ComponentSpec(), ar=ComponentSpec(),
                lag=LagStructure(kind=LagKind.GEOMETRIC, max_lag=2)
            )
        }
        aligned = align_windows(sequence, n_time=120)
        assert list(aligned) == ["single", "geometric"]
        assert aligned["single"].subset == (2, 119)
        assert aligned["geometric"].subset == (2, 119)

    def test_explicit_window_kept(self):
        sequence = {
            "fixed": ModelControl(end=ComponentSpec(), subset=(5, 100)),
            "open": ModelControl(end=ComponentSpec())
        }
        aligned = align_windows(sequence, n_time=120)
        assert aligned["fixed"].subset == (5, 100)
        assert aligned["open"].subset == (1, 119)


class TestHHH4Pipeline:

    def test_best_model_selected(self, report_and_dir):
        report, _ = report_and_dir
        assert report.best_model == report.comparison["model"].iloc[0]
        assert report.best_model == "endemic_ar"

    def test_forecast_evaluation(self, report_and_dir):
        report, _ = report_and_dir
        assert set(report.forecast_scores) == {"logs", "rps", "dss", "ses", "path_dss"}
        assert 0.0 <= report.calibration["p_value"] <= 1.0
        assert report.metadata["osa_times"] == [117, 118, 119]
        assert sum(report.metadata["pit"]) == pytest.approx(1.0)

    def test_stationary_mean_reported(self, report_and_dir):
        report, _ = report_and_dir
        assert set(report.stationary_mean) == set(report.units)

    def test_report_files(self, report_and_dir):
        report, output_dir = report_and_dir
        with open(output_dir / f"{report.report_id}.json") as f:
            saved = json.load(f)
        assert saved["best_model"] == report.best_model
        assert len(saved["model_comparison"]) == 2

        summary = (output_dir / f"{report.report_id}_summary.md").read_text()
        assert "# Endemic-Epidemic Modelling Report" in summary
        assert "endemic_ar" in summary

    def test_plots_written(self, report_and_dir):
        report, _ = report_and_dir
        assert report.plots
        for path in report.plots:
            assert path.endswith(".png")
        assert any("pearson_residuals" in path for path in report.plots)
