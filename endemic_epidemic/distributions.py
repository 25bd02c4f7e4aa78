"""
Negative binomial helpers in the mean / size parameterisation

Var(Y) = mu + mu^2 / size; size = inf is the Poisson limit.
"""

import numpy as np
from scipy import stats
from scipy.special import gammaln, xlogy


def _is_poisson(size) -> bool:
    return bool(np.all(np.isinf(size)))


def negbin_logpmf(y, mu, size) -> np.ndarray:
    """Elementwise log-probability of counts y"""
    y, mu, size = np.broadcast_arrays(
        np.asarray(y, dtype=float), np.asarray(mu, dtype=float), np.asarray(size, dtype=float)
    )
    if _is_poisson(size):
        return xlogy(y, mu) - mu - gammaln(y + 1)
    return (
        gammaln(y + size) - gammaln(size) - gammaln(y + 1)
        + size * (np.log(size) - np.log(size + mu))
        + xlogy(y, mu) - xlogy(y, size + mu)
    )


def negbin_variance(mu, size) -> np.ndarray:
    mu = np.asarray(mu, dtype=float)
    return mu + mu ** 2 / np.asarray(size, dtype=float)


def _frozen(mu, size):
    mu = np.asarray(mu, dtype=float)
    size = np.asarray(size, dtype=float)
    if _is_poisson(size):
        return stats.poisson(mu)
    return stats.nbinom(size, size / (size + mu))


def negbin_cdf(y, mu, size) -> np.ndarray:
    """P(Y <= y); returns 0 for y < 0"""
    return _frozen(*np.broadcast_arrays(mu, size)).cdf(y)


def negbin_ppf(q, mu, size) -> np.ndarray:
    """Quantiles of the predictive distribution"""
    return _frozen(*np.broadcast_arrays(mu, size)).ppf(q)


def negbin_excess_kurtosis(mu, size) -> np.ndarray:
    """Excess kurtosis (Poisson: 1 / mu)"""
    size = np.asarray(size, dtype=float)
    var = negbin_variance(mu, size)
    with np.errstate(divide="ignore"):
        return 6.0 / size + 1.0 / var
