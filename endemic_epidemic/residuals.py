"""
Pearson residuals of fitted count models

    r_it = (y_it - mu_it) / sqrt(mu_it + mu_it^2 / psi_i)

Large absolute residuals or a residual variance far from one point to
misspecified overdispersion.
"""

from typing import Dict

import numpy as np

from .fitting import HHH4Fit
from .models import Family


def pearson_residuals_from_values(observed, fitted, overdispersion) -> np.ndarray:
    """
    Pearson residuals for given observed counts, fitted means and size parameters

    Args:
        observed: Observed counts
        fitted: Fitted means, same shape as observed
        overdispersion: Size parameter psi > 0, scalar or broadcastable to the
            counts (e.g. one value per unit); inf gives Poisson residuals

    Returns:
        Residual matrix with the shape of observed
    """
    observed = np.asarray(observed, dtype=float)
    fitted = np.asarray(fitted, dtype=float)
    if observed.shape != fitted.shape:
        raise ValueError(
            f"Observed and fitted values differ in shape: {observed.shape} vs {fitted.shape}"
        )
    if np.any(fitted < 0) or not np.all(np.isfinite(fitted)):
        raise ValueError("Fitted values must be finite and non-negative")

    psi = np.asarray(overdispersion, dtype=float)
    if np.any(np.isnan(psi)) or np.any(psi <= 0):
        raise ValueError("Overdispersion parameter must be strictly positive")
    try:
        psi = np.broadcast_to(psi, observed.shape)
    except ValueError as e:
        raise ValueError(
            f"Overdispersion of shape {psi.shape} does not match counts of shape {observed.shape}"
        ) from e

    numerator = observed - fitted
    denominator = np.sqrt(fitted + fitted ** 2 / psi)
    residuals = np.zeros_like(numerator)
    np.divide(numerator, denominator, out=residuals, where=denominator > 0)

    # zero mean with positive count: infinitely surprising
    impossible = (denominator == 0) & (numerator != 0)
    residuals[impossible] = np.sign(numerator[impossible]) * np.inf
    return residuals


def pearson_residuals(fit: HHH4Fit) -> np.ndarray:
    """
    Pearson residuals of a fitted endemic-epidemic model on its fitting window

    The overdispersion is a single shared size parameter for NEGBIN1 fits and
    one size parameter per unit (column) for NEGBINM fits.

    Args:
        fit: Fitted model

    Returns:
        (n_window, K) residual matrix
    """
    psi = fit.overdispersion
    if fit.control.family == Family.NEGBIN1:
        psi = float(psi[0])
    else:
        psi = psi[None, :]
    return pearson_residuals_from_values(fit.observed, fit.fitted_values, psi)


def residual_summary(residuals: np.ndarray, units=None) -> Dict[str, float]:
    """Mean, variance and share of |r| > 2 (overall and per unit)"""
    finite = residuals[np.isfinite(residuals)]
    summary = {
        "mean": float(finite.mean()),
        "variance": float(finite.var(ddof=1)) if finite.size > 1 else float("nan"),
        "share_abs_gt_2": float(np.mean(np.abs(finite) > 2))
    }
    if units is not None:
        for k, unit in enumerate(units):
            column = residuals[:, k]
            column = column[np.isfinite(column)]
            summary[f"variance.{unit}"] = float(column.var(ddof=1)) if column.size > 1 else float("nan")
    return summary
