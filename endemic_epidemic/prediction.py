"""
Forecasting and Forecast Evaluation
One-step-ahead predictions, proper scoring rules, PIT histograms, calibration
tests, and exact multi-step predictive and stationary moments
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from loguru import logger

from .config import HHH4Config
from .distributions import (
    negbin_cdf,
    negbin_excess_kurtosis,
    negbin_logpmf,
    negbin_ppf,
    negbin_variance
)
from .fitting import HHH4Fit, fit_hhh4
from .models import (
    CountTimeSeries,
    OneStepAheadResult,
    PredictiveMoments,
    StationaryMoments
)

SCORES = ("logs", "rps", "dss", "ses")


def one_step_ahead(
    fit: HHH4Fit,
    first: Optional[int] = None,
    last: Optional[int] = None,
    refit: Optional[str] = None
) -> OneStepAheadResult:
    """
    Sequential one-step-ahead predictions

    For every t in [first, last] the counts at t + 1 are predicted from a
    model fitted to data up to t.

    Args:
        fit: Fitted model providing the specification and the window start
        first: First conditioning time point (defaults to the last
            HHH4Config.OSA_PERIODS time points of the series)
        last: Last conditioning time point (defaults to n_time - 2)
        refit: "rolling" refits at every step, "first" fits once at `first`,
            "final" reuses the parameters of `fit`

    Returns:
        OneStepAheadResult
    """
    refit = refit or HHH4Config.OSA_REFIT
    if refit not in ("rolling", "first", "final"):
        raise ValueError(f"Unknown refit strategy: {refit}")

    sts = fit.sts
    window_start = int(fit.window[0])
    last = sts.n_time - 2 if last is None else last
    first = max(window_start, sts.n_time - 1 - HHH4Config.OSA_PERIODS) if first is None else first
    if first < window_start:
        raise ValueError(f"first={first} lies before the fitting window start {window_start}")
    if last > sts.n_time - 2 or first > last:
        raise ValueError(f"Invalid prediction range [{first}, {last}] for {sts.n_time} time points")

    logger.info(f"One-step-ahead predictions for t={first + 1}..{last + 1} ({refit})")

    current = fit
    if refit == "first":
        current = fit_hhh4(sts, fit.control.replace(subset=(window_start, first)),
                           start=fit.coefficients.to_dict())

    means, sizes, rows = [], [], []
    for t in range(first, last + 1):
        if refit == "rolling":
            current = fit_hhh4(sts, fit.control.replace(subset=(window_start, t)),
                               start=current.coefficients.to_dict())
        theta = current.theta
        means.append(current.model.mean_components(theta, [t + 1])["mean"][0])
        sizes.append(current.model.size(theta))
        rows.append(current.coefficients.rename(t + 1))

    times = np.arange(first + 1, last + 2)
    return OneStepAheadResult(
        times=times,
        observed=sts.observed[times].astype(float),
        mean=np.array(means),
        size=np.array(sizes),
        units=list(sts.units),
        refit=refit,
        coefficients=pd.DataFrame(rows)
    )


def _rps(observed: np.ndarray, mean: np.ndarray, size: np.ndarray, eps: float = 1e-10) -> np.ndarray:
    # each cell sums only up to its own 1 - eps quantile (or the observation)
    observed, mean, size = np.broadcast_arrays(observed, mean, size)
    upper = np.maximum(observed, negbin_ppf(1 - eps, mean, size))
    rps = np.empty(observed.shape)
    for idx in np.ndindex(observed.shape):
        grid = np.arange(int(upper[idx]) + 2)
        cdf = np.minimum(np.cumsum(np.exp(negbin_logpmf(grid, mean[idx], size[idx]))), 1.0)
        rps[idx] = ((cdf - (observed[idx] <= grid)) ** 2).sum()
    return rps


def scores(result: OneStepAheadResult, which: Sequence[str] = SCORES) -> Dict[str, np.ndarray]:
    """
    Proper scoring rules of one-step-ahead predictions (lower is better)

    logs: logarithmic score, rps: ranked probability score,
    dss: Dawid-Sebastiani score, ses: squared error score

    Returns:
        Dict of (n_pred, K) score matrices
    """
    unknown = [w for w in which if w not in SCORES]
    if unknown:
        raise ValueError(f"Unknown scores: {unknown}")

    y, mu, size = result.observed, result.mean, result.size
    out = {}
    for name in which:
        if name == "logs":
            out[name] = -negbin_logpmf(y, mu, size)
        elif name == "ses":
            out[name] = (y - mu) ** 2
        elif name == "dss":
            var = negbin_variance(mu, size)
            out[name] = (y - mu) ** 2 / var + np.log(var)
        elif name == "rps":
            out[name] = _rps(y, mu, size)
    return out


def mean_scores(result: OneStepAheadResult, which: Sequence[str] = SCORES) -> Dict[str, float]:
    """Scores averaged over time points and units"""
    return {name: float(values.mean()) for name, values in scores(result, which).items()}


def pit_histogram(result: OneStepAheadResult, n_bins: Optional[int] = None) -> np.ndarray:
    """
    Non-randomised probability integral transform for count forecasts

    Returns:
        Probability mass of each of n_bins equal-width bins (sums to one);
        a calibrated forecast gives a flat histogram
    """
    n_bins = n_bins or HHH4Config.PIT_BINS
    y, mu, size = result.observed, result.mean, result.size
    lower = negbin_cdf(y - 1, mu, size)
    upper = negbin_cdf(y, mu, size)
    width = upper - lower

    breaks = np.linspace(0.0, 1.0, n_bins + 1)
    u = breaks[:, None, None]
    with np.errstate(divide="ignore", invalid="ignore"):
        conditional = np.where(
            width > 0,
            np.clip((u - lower) / width, 0.0, 1.0),
            (u >= upper).astype(float)
        )
    mass = np.diff(conditional, axis=0).reshape(n_bins, -1).mean(axis=1)
    return mass


def calibration_test(result: OneStepAheadResult) -> Dict[str, float]:
    """
    Calibration z-test based on the Dawid-Sebastiani score

    Under calibration each DSS has expectation 1 + log(var) and variance
    2 + excess kurtosis; the standardised sum is approximately N(0, 1).
    """
    y, mu, size = result.observed, result.mean, result.size
    var = negbin_variance(mu, size)
    dss = (y - mu) ** 2 / var + np.log(var)
    expected = 1.0 + np.log(var)
    variance = 2.0 + negbin_excess_kurtosis(mu, size)
    statistic = float((dss - expected).sum() / np.sqrt(variance.sum()))
    return {
        "statistic": statistic,
        "p_value": float(2 * stats.norm.sf(abs(statistic))),
        "n": int(dss.size)
    }


def predictive_moments(
    fit: HHH4Fit,
    t_condition: Optional[int] = None,
    lgt: Optional[int] = None,
    return_cov: bool = False
) -> PredictiveMoments:
    """
    Exact mean and variance of the path forecast Y_{t+1}, ..., Y_{t+lgt}

    Given data up to t_condition, the moments are propagated recursively:
    the conditional mean is linear in past counts, so means and covariances
    of future counts follow from those of earlier ones plus the
    conditional (negative binomial) variance.

    Args:
        fit: Fitted model
        t_condition: Last observed time point (defaults to the window end)
        lgt: Number of steps ahead
        return_cov: Also return the full covariance of all predicted counts

    Returns:
        PredictiveMoments
    """
    model = fit.model
    theta = fit.theta
    sts = fit.sts
    n_units = sts.n_units
    n_lags = len(model.lag_weights)

    t_condition = int(fit.window[-1]) if t_condition is None else int(t_condition)
    lgt = lgt or HHH4Config.PREDICTIVE_HORIZON
    if t_condition < n_lags - 1 or t_condition > sts.n_time - 1:
        raise ValueError(f"Cannot condition on t={t_condition}")
    if lgt < 1:
        raise ValueError("lgt must be at least 1")

    size = model.size(theta)
    # block b holds the counts at time t_condition - n_lags + 1 + b
    means: List[np.ndarray] = [
        sts.observed[t_condition - n_lags + 1 + b].astype(float) for b in range(n_lags)
    ]
    cov = np.zeros((n_lags * n_units, n_lags * n_units))

    for step in range(1, lgt + 1):
        t = t_condition + step
        n_blocks = len(means)
        endemic = model.endemic_mean(theta, [t])[0]
        transitions = model.transition_matrices(theta, t)

        mean = endemic.copy()
        cross = np.zeros((n_units, n_blocks * n_units))  # Cov(Y_t, earlier blocks)
        for q, a_q in enumerate(transitions, start=1):
            b = n_blocks - q
            mean += a_q @ means[b]
            cross += a_q @ cov[b * n_units:(b + 1) * n_units, :]

        var_mean = np.zeros((n_units, n_units))
        for q, a_q in enumerate(transitions, start=1):
            b = n_blocks - q
            var_mean += cross[:, b * n_units:(b + 1) * n_units] @ a_q.T
        var_mean = (var_mean + var_mean.T) / 2
        conditional = mean + (np.diag(var_mean) + mean ** 2) / size
        var_y = var_mean + np.diag(conditional)

        cov = np.block([
            [cov, cross.T],
            [cross, var_y]
        ])
        means.append(mean)

    predicted = np.array(means[n_lags:])
    full = cov[n_lags * n_units:, n_lags * n_units:]
    variances = np.diag(full).reshape(lgt, n_units)

    return PredictiveMoments(
        t_condition=t_condition,
        times=np.arange(t_condition + 1, t_condition + lgt + 1),
        mean=predicted,
        var=variances,
        units=list(sts.units),
        cov=full if return_cov else None
    )


def predictive_dss(moments: PredictiveMoments, sts: CountTimeSeries) -> np.ndarray:
    """Dawid-Sebastiani scores of path-forecast moments against observed counts"""
    if moments.times.max() >= sts.n_time:
        raise ValueError("Predicted time points extend beyond the observed series")
    observed = sts.observed[moments.times]
    return (observed - moments.mean) ** 2 / moments.var + np.log(moments.var)


def _companion(transitions: np.ndarray) -> np.ndarray:
    n_lags, n_units, _ = transitions.shape
    companion = np.zeros((n_lags * n_units, n_lags * n_units))
    companion[:n_units, :] = np.hstack(list(transitions))
    if n_lags > 1:
        companion[n_units:, :-n_units] = np.eye((n_lags - 1) * n_units)
    return companion


def stationary_moments(
    fit: HHH4Fit,
    tol: float = 1e-8,
    max_periods: int = 5000
) -> StationaryMoments:
    """
    (Periodically) stationary mean and variance implied by a fitted model

    Models without seasonality have one stationary distribution; seasonal
    models have one per position in the period (phase p covers all time
    indices t with t % freq == p).

    Args:
        fit: Fitted model without trend or covariates
        tol: Relative convergence tolerance between consecutive periods
        max_periods: Maximum number of periods to iterate

    Returns:
        StationaryMoments
    """
    control = fit.control
    specs = [s for s in (control.end, control.ar, control.ne) if s is not None]
    if any(s.trend for s in specs):
        raise ValueError("Stationary moments do not exist for models with a trend")
    if any(s.covariates for s in specs):
        raise ValueError("Stationary moments are undefined for models with covariates")

    model = fit.model
    theta = fit.theta
    n_units = len(fit.units)
    n_lags = len(model.lag_weights)
    period = fit.sts.freq if any(s.seasons for s in specs) else 1

    transitions = [model.transition_matrices(theta, p) for p in range(period)]
    endemic = [model.endemic_mean(theta, [p])[0] for p in range(period)]

    monodromy = np.eye(n_lags * n_units)
    for a in transitions:
        monodromy = _companion(a) @ monodromy
    radius = float(np.max(np.abs(np.linalg.eigvals(monodromy))))
    if radius >= 1:
        raise ValueError(f"Fitted model is not stationary (spectral radius {radius:.3f})")

    size = model.size(theta)
    dim = n_lags * n_units
    state_mean = np.zeros(dim)
    state_cov = np.zeros((dim, dim))
    previous = None
    means = np.zeros((period, n_units))
    variances = np.zeros((period, n_units))

    iterations = 0
    for iterations in range(1, max_periods + 1):
        for p in range(period):
            a = np.hstack(list(transitions[p]))  # (K, K * Q), lag-1 block first
            mean = endemic[p] + a @ state_mean
            cross = a @ state_cov
            var_mean = cross @ a.T
            var_mean = (var_mean + var_mean.T) / 2
            var_y = var_mean + np.diag(mean + (np.diag(var_mean) + mean ** 2) / size)

            keep = dim - n_units
            new_cov = np.empty_like(state_cov)
            new_cov[:n_units, :n_units] = var_y
            new_cov[:n_units, n_units:] = cross[:, :keep]
            new_cov[n_units:, :n_units] = cross[:, :keep].T
            new_cov[n_units:, n_units:] = state_cov[:keep, :keep]
            state_cov = new_cov
            state_mean = np.concatenate([mean, state_mean[:keep]])

            means[p] = mean
            variances[p] = np.diag(var_y)

        current = np.concatenate([means.ravel(), variances.ravel()])
        if previous is not None:
            change = np.max(np.abs(current - previous))
            if change <= tol * (1.0 + np.max(np.abs(current))):
                break
        previous = current
    else:
        logger.warning(f"Stationary moments did not converge within {max_periods} periods")

    return StationaryMoments(
        phases=np.arange(period),
        mean=means.copy(),
        var=variances.copy(),
        units=list(fit.units),
        n_iterations=iterations
    )


def forecast_quantiles(result: OneStepAheadResult, probs: Sequence[float] = (0.025, 0.25, 0.5, 0.75, 0.975)) -> Dict[float, np.ndarray]:
    """Quantiles of each one-step-ahead predictive distribution"""
    return {p: negbin_ppf(p, result.mean, result.size) for p in probs}
