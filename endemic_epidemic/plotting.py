"""
Plotting for fitted endemic-epidemic models and their forecasts
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .config import HHH4Config
from .fitting import HHH4Fit
from .models import (
    CountTimeSeries,
    LagProfile,
    OneStepAheadResult,
    PredictiveMoments,
    StationaryMoments
)
from .prediction import forecast_quantiles

plt.rcParams['figure.figsize'] = (12, 6)
plt.rcParams['font.size'] = 10

COMPONENT_COLOURS = {
    "endemic": "#9ecae1",
    "epi_own": "#fdae6b",
    "epi_neighbours": "#a1d99b"
}
COMPONENT_LABELS = {
    "endemic": "endemic",
    "epi_own": "autoregressive",
    "epi_neighbours": "neighbourhood"
}


def _finish(fig, save_path: Optional[Union[str, Path]]):
    plt.tight_layout()
    if save_path is not None:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=HHH4Config.PLOT_DPI, bbox_inches='tight')
        plt.close(fig)
    return fig


def _unit_columns(units: List[str], selected: Optional[Sequence[str]]) -> List[int]:
    if selected is None:
        return list(range(len(units)))
    return [units.index(u) for u in selected]


def plot_fitted_components(
    fit: HHH4Fit,
    units: Optional[Sequence[str]] = None,
    save_path: Optional[Union[str, Path]] = None
):
    """Stacked endemic / autoregressive / neighbourhood means with observed counts"""
    columns = _unit_columns(fit.units, units)
    components = fit.components
    times = fit.window

    n_cols = min(3, len(columns))
    n_rows = int(np.ceil(len(columns) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(5 * n_cols, 3.5 * n_rows), squeeze=False)

    for ax, k in zip(axes.ravel(), columns):
        stacks = [components[name][:, k] for name in COMPONENT_COLOURS]
        ax.stackplot(
            times, *stacks,
            colors=list(COMPONENT_COLOURS.values()),
            labels=[COMPONENT_LABELS[name] for name in COMPONENT_COLOURS]
        )
        ax.plot(times, fit.observed[:, k], 'k.', markersize=4, label='observed')
        ax.set_title(fit.units[k])
        ax.set_xlabel('time index')
        ax.set_ylabel('cases')
    for ax in axes.ravel()[len(columns):]:
        ax.set_visible(False)
    axes.ravel()[0].legend(loc='upper left', fontsize=8)

    return _finish(fig, save_path)


def plot_residuals(
    residuals: np.ndarray,
    units: List[str],
    times: Optional[np.ndarray] = None,
    save_path: Optional[Union[str, Path]] = None
):
    """Heat map of Pearson residuals (time x unit)"""
    times = np.arange(residuals.shape[0]) if times is None else times
    limit = np.nanmax(np.abs(residuals[np.isfinite(residuals)])) if np.isfinite(residuals).any() else 1.0

    fig, ax = plt.subplots(figsize=(12, max(3, 0.3 * len(units))))
    image = ax.imshow(
        residuals.T, aspect='auto', cmap='RdBu_r', vmin=-limit, vmax=limit,
        extent=(times[0] - 0.5, times[-1] + 0.5, len(units) - 0.5, -0.5)
    )
    ax.set_yticks(range(len(units)))
    ax.set_yticklabels(units)
    ax.set_xlabel('time index')
    ax.set_title('Pearson residuals')
    fig.colorbar(image, ax=ax)

    return _finish(fig, save_path)


def plot_one_step_ahead(
    result: OneStepAheadResult,
    unit: str,
    save_path: Optional[Union[str, Path]] = None
):
    """Fan chart of one-step-ahead predictive distributions for one unit"""
    k = result.units.index(unit)
    quantiles = forecast_quantiles(result)

    fig, ax = plt.subplots(figsize=(12, 5))
    ax.fill_between(result.times, quantiles[0.025][:, k], quantiles[0.975][:, k],
                    color='steelblue', alpha=0.25, label='95% interval')
    ax.fill_between(result.times, quantiles[0.25][:, k], quantiles[0.75][:, k],
                    color='steelblue', alpha=0.45, label='50% interval')
    ax.plot(result.times, result.mean[:, k], color='steelblue', linewidth=2, label='predictive mean')
    ax.plot(result.times, result.observed[:, k], 'ko', markersize=4, label='observed')
    ax.set_xlabel('time index')
    ax.set_ylabel('cases')
    ax.set_title(f'One-step-ahead forecasts: {unit} ({result.refit})')
    ax.legend(loc='upper left')

    return _finish(fig, save_path)


def plot_pit_histogram(
    mass: np.ndarray,
    save_path: Optional[Union[str, Path]] = None
):
    """PIT histogram on the density scale; a flat histogram at 1 means calibration"""
    n_bins = len(mass)
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.bar(np.arange(n_bins) / n_bins, mass * n_bins, width=1.0 / n_bins,
           align='edge', color='lightgray', edgecolor='black')
    ax.axhline(1.0, color='red', linestyle='--')
    ax.set_xlabel('PIT')
    ax.set_ylabel('density')
    ax.set_title('Non-randomised PIT histogram')

    return _finish(fig, save_path)


def plot_predictive_moments(
    moments: PredictiveMoments,
    sts: Optional[CountTimeSeries] = None,
    units: Optional[Sequence[str]] = None,
    save_path: Optional[Union[str, Path]] = None
):
    """Predictive mean +/- 2 standard deviations, with observed counts if available"""
    columns = _unit_columns(moments.units, units)
    fig, axes = plt.subplots(len(columns), 1, figsize=(10, 2.8 * len(columns)), squeeze=False)

    for ax, k in zip(axes[:, 0], columns):
        mean = moments.mean[:, k]
        sd = moments.sd[:, k]
        ax.fill_between(moments.times, np.maximum(mean - 2 * sd, 0), mean + 2 * sd,
                        color='darkorange', alpha=0.3, label='mean +/- 2 sd')
        ax.plot(moments.times, mean, color='darkorange', label='predictive mean')
        if sts is not None:
            visible = moments.times[moments.times < sts.n_time]
            ax.plot(visible, sts.observed[visible, k], 'ko', markersize=4, label='observed')
        ax.set_title(moments.units[k])
    axes[0, 0].legend(loc='upper left', fontsize=8)

    return _finish(fig, save_path)


def plot_stationary_moments(
    moments: StationaryMoments,
    units: Optional[Sequence[str]] = None,
    save_path: Optional[Union[str, Path]] = None
):
    """Stationary mean +/- 2 sd by phase of the period"""
    columns = _unit_columns(moments.units, units)
    fig, ax = plt.subplots(figsize=(10, 5))
    for k in columns:
        line, = ax.plot(moments.phases, moments.mean[:, k], marker='o', label=moments.units[k])
        ax.fill_between(moments.phases,
                        np.maximum(moments.mean[:, k] - 2 * moments.sd[:, k], 0),
                        moments.mean[:, k] + 2 * moments.sd[:, k],
                        color=line.get_color(), alpha=0.15)
    ax.set_xlabel('phase')
    ax.set_ylabel('cases')
    ax.set_title('Stationary moments')
    ax.legend(fontsize=8)

    return _finish(fig, save_path)


def plot_lag_profile(profile: LagProfile, save_path: Optional[Union[str, Path]] = None):
    """Profile log-likelihood of the lag parameter"""
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(profile.grid, profile.loglik, 'o-')
    ax.axvline(profile.best_par_lag, color='red', linestyle='--')
    ax.set_xlabel('par_lag')
    ax.set_ylabel('log-likelihood')
    ax.set_title(f'Profile likelihood ({profile.kind.value} lags)')

    return _finish(fig, save_path)


def plot_map(
    sts: CountTimeSeries,
    values: Union[np.ndarray, pd.Series, Dict[str, float]],
    title: str = "",
    save_path: Optional[Union[str, Path]] = None
):
    """Choropleth of unit-level values (e.g. incidence or estimated intercepts)"""
    if sts.map is None:
        raise ValueError("Series has no map attached")
    if isinstance(values, dict):
        values = pd.Series(values)
    if isinstance(values, pd.Series):
        values = values.reindex(sts.units).to_numpy(dtype=float)
    gdf = sts.map.loc[sts.units].copy()
    gdf['value'] = np.asarray(values, dtype=float)

    fig, ax = plt.subplots(figsize=(8, 8))
    gdf.plot(column='value', ax=ax, legend=True, cmap='YlOrRd', edgecolor='black', linewidth=0.3)
    ax.set_axis_off()
    ax.set_title(title)

    return _finish(fig, save_path)
