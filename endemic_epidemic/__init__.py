"""
Endemic-Epidemic Modelling of Infectious Disease Counts
Multivariate hhh4-type count time series models with autoregressive and
spatial neighbourhood components, Pearson residuals and forecast evaluation
"""

from .models import (
    Family,
    LagKind,
    CountTimeSeries,
    ComponentSpec,
    NeighbourWeights,
    LagStructure,
    ModelControl,
    OneStepAheadResult,
    PredictiveMoments,
    StationaryMoments,
    LagProfile,
    PipelineReport
)

from .neighbourhood import (
    adjacency_from_geometry,
    neighbourhood_order,
    first_order_weights,
    powerlaw_weights
)

from .lag_weights import (
    geometric_lag,
    poisson_lag,
    lag_weights
)

from .fitting import (
    HHH4Model,
    HHH4Fit,
    fit_hhh4,
    profile_par_lag,
    compare_models
)

from .residuals import (
    pearson_residuals,
    pearson_residuals_from_values,
    residual_summary
)

from .prediction import (
    one_step_ahead,
    scores,
    mean_scores,
    pit_histogram,
    calibration_test,
    predictive_moments,
    predictive_dss,
    stationary_moments,
    forecast_quantiles
)

from .simulation import (
    simulate,
    simulate_model,
    simulate_series
)

from .data_ingestion import (
    CaseCountIngester,
    PopulationIngester,
    CovariateIngester,
    AdjacencyIngester,
    MapIngester,
    MultiSourceIngester,
    build_count_time_series
)

from .pipeline import HHH4Pipeline, align_windows, default_model_sequence

__version__ = "1.0.0"

__all__ = [
    # Models
    "Family",
    "LagKind",
    "CountTimeSeries",
    "ComponentSpec",
    "NeighbourWeights",
    "LagStructure",
    "ModelControl",
    "OneStepAheadResult",
    "PredictiveMoments",
    "StationaryMoments",
    "LagProfile",
    "PipelineReport",

    # Neighbourhood
    "adjacency_from_geometry",
    "neighbourhood_order",
    "first_order_weights",
    "powerlaw_weights",

    # Lags
    "geometric_lag",
    "poisson_lag",
    "lag_weights",

    # Fitting
    "HHH4Model",
    "HHH4Fit",
    "fit_hhh4",
    "profile_par_lag",
    "compare_models",

    # Residuals
    "pearson_residuals",
    "pearson_residuals_from_values",
    "residual_summary",

    # Prediction
    "one_step_ahead",
    "scores",
    "mean_scores",
    "pit_histogram",
    "calibration_test",
    "predictive_moments",
    "predictive_dss",
    "stationary_moments",
    "forecast_quantiles",

    # Simulation
    "simulate",
    "simulate_model",
    "simulate_series",

    # Data Ingestion
    "CaseCountIngester",
    "PopulationIngester",
    "CovariateIngester",
    "AdjacencyIngester",
    "MapIngester",
    "MultiSourceIngester",
    "build_count_time_series",

    # Pipeline
    "HHH4Pipeline",
    "align_windows",
    "default_model_sequence"
]
