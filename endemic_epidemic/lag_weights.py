"""
Lag weighting for the epidemic components

Higher-order lags distribute the epidemic effect of past counts over
q = 1..max_lag time points with weights u_q that sum to one.
"""

import numpy as np
from scipy import stats
from scipy.special import expit

from .models import LagKind, LagStructure


def geometric_lag(par_lag: float, max_lag: int) -> np.ndarray:
    """
    Geometric lag weights u_q proportional to alpha * (1 - alpha)^(q - 1)

    Args:
        par_lag: logit(alpha); large values concentrate the weight on lag 1
        max_lag: Number of lags

    Returns:
        Array of max_lag weights summing to one
    """
    if max_lag < 1:
        raise ValueError("max_lag must be at least 1")
    alpha = expit(par_lag)
    q = np.arange(max_lag)
    weights = alpha * (1.0 - alpha) ** q
    total = weights.sum()
    if total <= 0:
        # alpha numerically zero: the geometric weights flatten out
        return np.full(max_lag, 1.0 / max_lag)
    return weights / total


def poisson_lag(par_lag: float, max_lag: int) -> np.ndarray:
    """
    Poisson lag weights u_q proportional to Poisson pmf(q - 1; exp(par_lag))

    Args:
        par_lag: log of the Poisson rate
        max_lag: Number of lags

    Returns:
        Array of max_lag weights summing to one
    """
    if max_lag < 1:
        raise ValueError("max_lag must be at least 1")
    weights = stats.poisson.pmf(np.arange(max_lag), np.exp(par_lag))
    total = weights.sum()
    if total <= 0:
        weights = np.zeros(max_lag)
        weights[-1] = 1.0
        return weights
    return weights / total


def lag_weights(structure: LagStructure) -> np.ndarray:
    """Weights u_1..u_Q of a lag structure"""
    if structure.kind == LagKind.SINGLE:
        return np.ones(1)
    if structure.kind == LagKind.GEOMETRIC:
        return geometric_lag(structure.par_lag, structure.max_lag)
    if structure.kind == LagKind.POISSON:
        return poisson_lag(structure.par_lag, structure.max_lag)
    raise ValueError(f"Unknown lag structure: {structure.kind}")
