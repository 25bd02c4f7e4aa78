"""
Simulation from endemic-epidemic models
"""

from dataclasses import replace
from typing import Dict, Optional, Sequence

import numpy as np

from .fitting import HHH4Fit, HHH4Model
from .models import CountTimeSeries, ModelControl


def simulate_model(
    model: HHH4Model,
    theta: np.ndarray,
    n_sim: int = 1,
    seed: Optional[int] = None,
    times: Optional[Sequence[int]] = None
) -> np.ndarray:
    """
    Simulate counts forward in time, conditioning on the observed counts
    before the first simulated time point

    Args:
        model: Model providing the mean structure
        theta: Parameter vector
        n_sim: Number of simulated paths
        seed: Random seed
        times: Contiguous time indices to simulate (defaults to the fitting window)

    Returns:
        Array of shape (n_sim, len(times), K)
    """
    times = model.window if times is None else np.asarray(times, dtype=int)
    n_lags = len(model.lag_weights)
    if times[0] < n_lags:
        raise ValueError(f"Simulation must start at t >= {n_lags}")
    if len(times) > 1 and np.any(np.diff(times) != 1):
        raise ValueError("Simulated time points must be contiguous")

    rng = np.random.default_rng(seed)
    size = model.size(theta)
    n_units = len(model.units)
    endemic = model.endemic_mean(theta, times)
    transitions = [model.transition_matrices(theta, t) for t in times]

    history = model.sts.observed[times[0] - n_lags:times[0]].astype(float)
    paths = np.zeros((n_sim, len(times), n_units))
    for sim in range(n_sim):
        past = [row for row in history]
        for i in range(len(times)):
            mean = endemic[i].copy()
            for q, a_q in enumerate(transitions[i], start=1):
                mean += a_q @ past[-q]
            if np.all(np.isinf(size)):
                draw = rng.poisson(mean)
            else:
                draw = rng.negative_binomial(size, size / (size + mean))
            paths[sim, i] = draw
            past.append(draw.astype(float))
    return paths


def simulate(
    fit: HHH4Fit,
    n_sim: int = 1,
    seed: Optional[int] = None,
    times: Optional[Sequence[int]] = None
) -> np.ndarray:
    """Simulate from a fitted model (see simulate_model)"""
    return simulate_model(fit.model, fit.theta, n_sim=n_sim, seed=seed, times=times)


def simulate_series(
    template: CountTimeSeries,
    control: ModelControl,
    coefficients: Dict[str, float],
    seed: Optional[int] = None
) -> CountTimeSeries:
    """
    Series with counts simulated from given parameters

    The first max_lag rows of the template are kept as initial values; all
    later rows are simulated.

    Args:
        template: Series providing units, neighbourhood, population, covariates
            and initial counts
        control: Model specification (its subset is ignored)
        coefficients: Parameter values by name; missing names raise
        seed: Random seed

    Returns:
        New CountTimeSeries
    """
    model = HHH4Model(template, control.replace(subset=None))
    missing = [name for name in model.names if name not in coefficients]
    if missing:
        raise ValueError(f"Missing coefficients: {missing}")
    theta = np.array([coefficients[name] for name in model.names], dtype=float)

    times = np.arange(control.max_lag, template.n_time)
    counts = np.array(template.observed, dtype=np.int64)
    counts[times] = simulate_model(model, theta, n_sim=1, seed=seed, times=times)[0]
    return replace(template, observed=counts)
