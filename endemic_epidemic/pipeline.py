"""
Main Endemic-Epidemic Modelling Pipeline
Orchestrates data import, iterative model building, residual diagnostics,
forecast evaluation and moment computation
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
import argparse
import json

import numpy as np
from loguru import logger

from .config import HHH4Config, configure_logging
from .data_ingestion import MultiSourceIngester
from .fitting import HHH4Fit, compare_models, fit_hhh4, profile_par_lag
from .models import (
    ComponentSpec,
    CountTimeSeries,
    Family,
    LagKind,
    LagStructure,
    ModelControl,
    NeighbourWeights,
    PipelineReport
)
from .prediction import (
    calibration_test,
    mean_scores,
    one_step_ahead,
    pit_histogram,
    predictive_dss,
    predictive_moments,
    stationary_moments
)
from .residuals import pearson_residuals, residual_summary
from . import plotting


def default_model_sequence(
    sts: CountTimeSeries,
    seasons: Optional[int] = None,
    max_lag: Optional[int] = None,
    family: Optional[Family] = None
) -> Dict[str, ModelControl]:
    """
    Model-building sequence: endemic seasonality, then autoregression,
    unit-specific levels, power-law neighbourhood coupling and finally
    geometrically weighted higher-order lags

    All models share the fitting window starting at max_lag so that their
    AICs are comparable.
    """
    seasons = HHH4Config.SEASONAL_HARMONICS if seasons is None else seasons
    max_lag = max_lag or HHH4Config.MAX_LAG
    family = family or Family(HHH4Config.FAMILY.lower())
    offset = sts.population is not None
    subset = (max_lag, sts.n_time - 1)

    endemic = ModelControl(
        end=ComponentSpec(seasons=seasons, offset=offset),
        family=family,
        subset=subset,
        maxiter=HHH4Config.OPTIMIZER_MAXITER,
        tol=HHH4Config.OPTIMIZER_TOL
    )
    sequence = {"endemic": endemic}
    sequence["endemic_ar"] = endemic.replace(ar=ComponentSpec())
    sequence["unit_specific"] = endemic.replace(
        end=ComponentSpec(unit_specific=True, seasons=seasons, offset=offset),
        ar=ComponentSpec(unit_specific=True)
    )

    if sts.neighbourhood is not None and sts.n_units > 1:
        sequence["neighbourhood"] = sequence["unit_specific"].replace(
            ne=ComponentSpec(),
            ne_weights=NeighbourWeights(kind="powerlaw", max_order=HHH4Config.POWERLAW_MAX_ORDER)
        )
    last = list(sequence.values())[-1]
    if max_lag > 1:
        sequence["geometric_lags"] = last.replace(
            lag=LagStructure(kind=LagKind.GEOMETRIC, max_lag=max_lag)
        )
    return sequence


def align_windows(sequence: Dict[str, ModelControl], n_time: int) -> Dict[str, ModelControl]:
    """
    Give every control without an explicit subset the common window
    (largest max_lag in the sequence, n_time - 1) so AICs stay comparable
    """
    first = max(control.max_lag for control in sequence.values())
    window = (first, n_time - 1)
    return {
        name: control if control.subset is not None else control.replace(subset=window)
        for name, control in sequence.items()
    }


class HHH4Pipeline:
    """
    End-to-end endemic-epidemic modelling pipeline

    Workflow:
    1. Ingest case counts, population, map geometry and covariates
    2. Fit a sequence of increasingly rich models and compare them by AIC
    3. Inspect Pearson residuals of the selected model
    4. Evaluate one-step-ahead forecasts with proper scoring rules
    5. Compute predictive and stationary moments, plots and reports
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        generate_plots: Optional[bool] = None,
        osa_periods: Optional[int] = None,
        osa_refit: Optional[str] = None,
        predictive_horizon: Optional[int] = None,
        par_lag_grid: Optional[np.ndarray] = None
    ):
        """
        Initialize pipeline

        Args:
            output_dir: Directory for reports and plots
            generate_plots: Write figures (defaults to HHH4Config.GENERATE_PLOTS)
            osa_periods: Number of one-step-ahead predictions
            osa_refit: "rolling", "first" or "final"
            predictive_horizon: Steps ahead for predictive moments
            par_lag_grid: Grid for the lag-parameter profile likelihood
        """
        self.ingester = MultiSourceIngester()
        self.output_dir = Path(output_dir) if output_dir else HHH4Config.OUTPUT_DIR
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.generate_plots = HHH4Config.GENERATE_PLOTS if generate_plots is None else generate_plots
        self.osa_periods = osa_periods or HHH4Config.OSA_PERIODS
        self.osa_refit = osa_refit or HHH4Config.OSA_REFIT
        self.predictive_horizon = predictive_horizon or HHH4Config.PREDICTIVE_HORIZON
        self.par_lag_grid = par_lag_grid

        self.fits: Dict[str, HHH4Fit] = {}

    def run(
        self,
        counts_path: Optional[Path] = None,
        population_path: Optional[Path] = None,
        adjacency_path: Optional[Path] = None,
        map_cache_path: Optional[Path] = None,
        geojson_url: Optional[str] = None,
        covariate_sources: Optional[Dict[str, Tuple[Union[str, Path], str]]] = None,
        series_cache_path: Optional[Path] = None,
        model_sequence: Optional[Dict[str, ModelControl]] = None
    ) -> PipelineReport:
        """
        Run the complete pipeline from raw files

        Args:
            counts_path: Case count CSV (gzip allowed)
            population_path: Population CSV
            adjacency_path: Adjacency CSV
            map_cache_path: Cached map geometry
            geojson_url: Remote GeoJSON boundaries
            covariate_sources: name -> (path or URL, value column)
            series_cache_path: Where to save the assembled series
            model_sequence: Named controls (defaults to default_model_sequence)

        Returns:
            PipelineReport
        """
        counts_path = counts_path or HHH4Config.COUNTS_PATH
        if counts_path is None:
            raise ValueError("No case count file given")
        if covariate_sources is None and HHH4Config.TEMPERATURE_URL:
            covariate_sources = {"temperature": (HHH4Config.TEMPERATURE_URL, "temperature")}

        logger.info("[Step 1/5] Ingesting data...")
        sts = self.ingester.ingest_all(
            counts_path=counts_path,
            population_path=population_path or HHH4Config.POPULATION_PATH,
            adjacency_path=adjacency_path or HHH4Config.ADJACENCY_PATH,
            map_cache_path=map_cache_path or HHH4Config.MAP_CACHE_PATH,
            geojson_url=geojson_url,
            covariate_sources=covariate_sources
        )

        series_cache_path = series_cache_path or HHH4Config.SERIES_CACHE_PATH
        if series_cache_path is not None:
            sts.save(series_cache_path)
            logger.info(f"  Series saved to: {series_cache_path}")

        return self.run_on_series(sts, model_sequence=model_sequence)

    def run_on_series(
        self,
        sts: CountTimeSeries,
        model_sequence: Optional[Dict[str, ModelControl]] = None
    ) -> PipelineReport:
        """Run model building and evaluation on an assembled series"""
        logger.info("=" * 80)
        logger.info("ENDEMIC-EPIDEMIC MODELLING PIPELINE")
        logger.info("=" * 80)
        logger.info(f"  {sts.n_time} time points x {sts.n_units} units")

        # Step 2: Model building
        logger.info("\n[Step 2/5] Fitting model sequence...")
        if model_sequence:
            sequence = align_windows(model_sequence, sts.n_time)
        else:
            sequence = default_model_sequence(sts)
        self.fits = {}
        plots: List[str] = []
        for name, control in sequence.items():
            if control.lag.kind != LagKind.SINGLE:
                profile = profile_par_lag(sts, control, grid=self.par_lag_grid)
                self.fits[name] = profile.best_fit
                if self.generate_plots:
                    plots.append(self._save_plot(plotting.plot_lag_profile, f"lag_profile_{name}.png", profile))
            else:
                self.fits[name] = fit_hhh4(sts, control)
            logger.info(f"    - {name}: AIC={self.fits[name].aic:.2f}")

        comparison = compare_models(self.fits)
        best_name = comparison["model"].iloc[0]
        best = self.fits[best_name]
        logger.info(f"  Selected model: {best_name}")

        # Step 3: Residual diagnostics
        logger.info("\n[Step 3/5] Computing Pearson residuals...")
        residuals = pearson_residuals(best)
        res_summary = residual_summary(residuals, best.units)
        logger.info(f"  Residual variance: {res_summary['variance']:.3f}")

        # Step 4: One-step-ahead forecasts
        logger.info("\n[Step 4/5] Evaluating one-step-ahead forecasts...")
        first = max(int(best.window[0]), sts.n_time - 1 - self.osa_periods)
        osa = one_step_ahead(best, first=first, last=sts.n_time - 2, refit=self.osa_refit)
        forecast_scores = mean_scores(osa)
        calibration = calibration_test(osa)
        pit = pit_histogram(osa)
        for score, value in forecast_scores.items():
            logger.info(f"    - {score}: {value:.4f}")

        # Step 5: Moments
        logger.info("\n[Step 5/5] Computing predictive and stationary moments...")
        horizon = min(self.predictive_horizon, sts.n_time - 1 - int(best.window[0]))
        t_condition = sts.n_time - 1 - horizon
        moments = predictive_moments(best, t_condition=t_condition, lgt=horizon)
        path_dss = float(predictive_dss(moments, sts).mean())
        forecast_scores["path_dss"] = path_dss

        stationary_mean: Dict[str, float] = {}
        stationary = None
        try:
            stationary = stationary_moments(best)
            stationary_mean = {
                unit: float(stationary.mean[:, k].mean()) for k, unit in enumerate(best.units)
            }
        except ValueError as e:
            logger.warning(f"  Stationary moments unavailable: {str(e)}")

        if self.generate_plots:
            plots.append(self._save_plot(plotting.plot_fitted_components, "fitted_components.png", best))
            plots.append(self._save_plot(plotting.plot_residuals, "pearson_residuals.png",
                                         residuals, best.units, best.window))
            plots.append(self._save_plot(plotting.plot_pit_histogram, "pit_histogram.png", pit))
            plots.append(self._save_plot(plotting.plot_predictive_moments, "predictive_moments.png",
                                         moments, sts))
            top_unit = best.units[int(np.argmax(sts.observed.sum(axis=0)))]
            plots.append(self._save_plot(plotting.plot_one_step_ahead, "one_step_ahead.png", osa, top_unit))
            if stationary is not None:
                plots.append(self._save_plot(plotting.plot_stationary_moments,
                                             "stationary_moments.png", stationary))
            if sts.map is not None:
                incidence = sts.observed.sum(axis=0) / (sts.population if sts.population is not None else 1.0)
                plots.append(self._save_plot(plotting.plot_map, "incidence_map.png",
                                             sts, incidence, "Cumulative incidence"))

        report = PipelineReport(
            report_id=f"hhh4_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
            generation_time=datetime.now(),
            n_time=sts.n_time,
            units=list(sts.units),
            comparison=comparison,
            best_model=best_name,
            coefficients={k: float(v) for k, v in best.coefficients.items()},
            residual_summary=res_summary,
            forecast_scores=forecast_scores,
            calibration=calibration,
            stationary_mean=stationary_mean,
            plots=plots,
            metadata={
                "osa_refit": osa.refit,
                "osa_times": [int(t) for t in osa.times],
                "pit": [float(p) for p in pit],
                "predictive_t_condition": t_condition,
                "decay": best.decay,
                "lag_weights": [float(u) for u in best.lag_weights]
            }
        )
        self._save_report(report)

        logger.info("\n" + "=" * 80)
        logger.info("PIPELINE COMPLETE")
        logger.info("=" * 80)
        return report

    def _save_plot(self, plot_function, filename: str, *args) -> str:
        path = self.output_dir / filename
        plot_function(*args, save_path=path)
        return str(path)

    def _save_report(self, report: PipelineReport):
        """Save report to files"""
        formats = [f.strip() for f in HHH4Config.REPORT_FORMAT.split(",")]

        if "json" in formats:
            json_path = self.output_dir / f"{report.report_id}.json"
            with open(json_path, 'w') as f:
                json.dump(self._report_to_dict(report), f, indent=2, default=str)
            logger.info(f"  Report saved to: {json_path}")

        if "markdown" in formats:
            md_path = self.output_dir / f"{report.report_id}_summary.md"
            with open(md_path, 'w') as f:
                f.write(self._generate_markdown_summary(report))
            logger.info(f"  Summary saved to: {md_path}")

    def _report_to_dict(self, report: PipelineReport) -> dict:
        """Convert report to dictionary for JSON serialization"""
        return {
            'report_id': report.report_id,
            'generation_time': report.generation_time.isoformat(),
            'n_time': report.n_time,
            'units': report.units,
            'model_comparison': report.comparison.to_dict(orient='records'),
            'best_model': report.best_model,
            'coefficients': report.coefficients,
            'residual_summary': report.residual_summary,
            'forecast_scores': report.forecast_scores,
            'calibration': report.calibration,
            'stationary_mean': report.stationary_mean,
            'plots': report.plots,
            'metadata': report.metadata
        }

    def _generate_markdown_summary(self, report: PipelineReport) -> str:
        """Generate markdown summary"""
        md = f"""# Endemic-Epidemic Modelling Report

**Report ID**: {report.report_id}
**Generated**: {report.generation_time.strftime('%Y-%m-%d %H:%M:%S')}
**Data**: {report.n_time} time points, {len(report.units)} units

## Model Comparison

| Model | df | log-likelihood | AIC | delta AIC |
|---|---|---|---|---|
"""
        for row in report.comparison.itertuples():
            md += f"| {row.model} | {row.df} | {row.loglik:.2f} | {row.aic:.2f} | {row.delta_aic:.2f} |\n"

        md += f"\n**Selected model**: {report.best_model}\n\n## Forecast Evaluation\n\n"
        for score, value in report.forecast_scores.items():
            md += f"- **{score}**: {value:.4f}\n"
        md += (
            f"\nCalibration test: z = {report.calibration['statistic']:.3f}, "
            f"p = {report.calibration['p_value']:.3f}\n"
        )

        md += "\n## Pearson Residuals\n\n"
        md += f"- **Mean**: {report.residual_summary['mean']:.3f}\n"
        md += f"- **Variance**: {report.residual_summary['variance']:.3f}\n"
        md += f"- **Share |r| > 2**: {report.residual_summary['share_abs_gt_2']:.2%}\n"

        if report.stationary_mean:
            md += "\n## Stationary Mean (average over the period)\n\n"
            for unit, value in report.stationary_mean.items():
                md += f"- {unit}: {value:.2f}\n"

        return md


def main():
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="Endemic-epidemic (hhh4) modelling of multivariate count time series"
    )
    parser.add_argument("--counts", type=Path, help="Case count CSV (gzip allowed)")
    parser.add_argument("--population", type=Path, help="Population CSV")
    parser.add_argument("--adjacency", type=Path, help="Adjacency matrix CSV")
    parser.add_argument("--map-cache", type=Path, help="Cached map geometry")
    parser.add_argument("--geojson-url", help="Remote GeoJSON boundaries")
    parser.add_argument("--series", type=Path, help="Load a saved count time series instead of raw files")
    parser.add_argument("--models", type=Path, help="YAML file describing the model sequence")
    parser.add_argument("--output-dir", type=Path, help="Output directory")
    parser.add_argument("--no-plots", action="store_true", help="Skip figures")
    args = parser.parse_args()

    HHH4Config.ensure_directories()
    configure_logging(log_file=HHH4Config.LOG_FILE)
    if not HHH4Config.validate():
        raise SystemExit(1)

    model_sequence = None
    if args.models:
        spec = HHH4Config.load_from_yaml(args.models)
        model_sequence = {
            name: ModelControl.from_dict(control)
            for name, control in spec.get("models", {}).items()
        }

    pipeline = HHH4Pipeline(
        output_dir=args.output_dir,
        generate_plots=False if args.no_plots else None
    )
    if args.series:
        report = pipeline.run_on_series(CountTimeSeries.load(args.series), model_sequence=model_sequence)
    else:
        report = pipeline.run(
            counts_path=args.counts,
            population_path=args.population,
            adjacency_path=args.adjacency,
            map_cache_path=args.map_cache,
            geojson_url=args.geojson_url,
            model_sequence=model_sequence
        )
    print(pipeline._generate_markdown_summary(report))


if __name__ == "__main__":
    main()
