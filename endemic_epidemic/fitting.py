"""
Endemic-Epidemic (hhh4) Model Fitting
Maximum likelihood estimation of multivariate count time series models with
endemic, autoregressive and neighbourhood components

    mu_it = e_i * nu_it + lambda_it * sum_q u_q Y_i,t-q
            + phi_it * sum_j w_ji sum_q u_q Y_j,t-q

where log(nu), log(lambda) and log(phi) are linear predictors made of
intercepts, a linear trend, sine/cosine seasonality and covariates.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from statsmodels.tools.numdiff import approx_hess
from loguru import logger

from .config import HHH4Config
from .distributions import negbin_logpmf
from .lag_weights import lag_weights
from .models import (
    CountTimeSeries,
    ModelControl,
    ComponentSpec,
    Family,
    LagKind,
    LagProfile
)
from .neighbourhood import first_order_weights, powerlaw_weights


COMPONENTS = ("end", "ar", "ne")
_ETA_BOUND = 30.0  # linear predictors are clipped to keep exp() finite


class HHH4Model:
    """
    Likelihood of an endemic-epidemic model for one series and one control

    Parameters are kept in a flat vector; `names` labels every entry.
    """

    def __init__(self, sts: CountTimeSeries, control: ModelControl):
        self.sts = sts
        self.control = control
        self.units = sts.units

        n_time, n_units = sts.n_time, sts.n_units
        max_lag = control.max_lag
        first, last = control.subset or (max_lag, n_time - 1)
        if first < max_lag:
            raise ValueError(
                f"Fitting window starts at t={first} but lags reach back {max_lag} time points"
            )
        if last > n_time - 1:
            raise ValueError(f"Fitting window ends at t={last}, series has {n_time} time points")
        self.window = np.arange(first, last + 1)

        if control.ne is not None:
            if sts.neighbourhood is None:
                raise ValueError("The neighbourhood component needs a neighbourhood matrix")
            if n_units < 2:
                raise ValueError("The neighbourhood component needs at least two units")

        for name in COMPONENTS:
            spec = getattr(control, name)
            if spec is None:
                continue
            missing = [c for c in spec.covariates if c not in sts.covariates]
            if missing:
                raise ValueError(f"Unknown covariates in '{name}': {missing}")

        if control.end.offset:
            self.offset = sts.population_fraction()
        else:
            self.offset = np.ones(n_units)

        self.lag_weights = lag_weights(control.lag)
        self._build_layout()

    # ------------------------------------------------------------------
    # parameter layout
    # ------------------------------------------------------------------

    def _build_layout(self):
        names: List[str] = []
        self._terms: Dict[str, List[Tuple[int, str, object]]] = {}

        def add(name, kind, arg, component):
            self._terms[component].append((len(names), kind, arg))
            names.append(name)

        freq = self.sts.freq
        for comp in COMPONENTS:
            spec: Optional[ComponentSpec] = getattr(self.control, comp)
            if spec is None:
                continue
            self._terms[comp] = []
            if spec.intercept:
                if spec.unit_specific:
                    for k, unit in enumerate(self.units):
                        add(f"{comp}.intercept.{unit}", "unit_intercept", k, comp)
                else:
                    add(f"{comp}.intercept", "intercept", None, comp)
            if spec.trend:
                add(f"{comp}.trend", "trend", None, comp)
            for s in range(1, spec.seasons + 1):
                add(f"{comp}.sin(2*pi*{s}*t/{freq})", "sin", s, comp)
                add(f"{comp}.cos(2*pi*{s}*t/{freq})", "cos", s, comp)
            for covariate in spec.covariates:
                add(f"{comp}.{covariate}", "covariate", covariate, comp)

        self._decay_index = None
        weights = self.control.ne_weights
        if self.control.ne is not None and weights.kind == "powerlaw" and weights.estimate_decay:
            self._decay_index = len(names)
            names.append("neweights.log_d")

        self._size_index: Optional[slice] = None
        family = self.control.family
        if family == Family.NEGBIN1:
            self._size_index = slice(len(names), len(names) + 1)
            names.append("overdisp.log_size")
        elif family == Family.NEGBINM:
            self._size_index = slice(len(names), len(names) + len(self.units))
            names.extend(f"overdisp.log_size.{unit}" for unit in self.units)

        self.names = names

    @property
    def n_params(self) -> int:
        return len(self.names)

    def start_values(self) -> np.ndarray:
        """Crude starting values: endemic intercepts at the observed mean"""
        theta = np.zeros(self.n_params)
        y = self.sts.observed[self.window]
        epidemic = self.control.ar is not None or self.control.ne is not None
        for comp, terms in self._terms.items():
            for index, kind, arg in terms:
                if comp == "end" and kind == "intercept":
                    theta[index] = np.log(y.mean() + 0.5) - np.log(self.offset.mean())
                elif comp == "end" and kind == "unit_intercept":
                    theta[index] = np.log(y[:, arg].mean() + 0.5) - np.log(self.offset[arg])
                elif comp == "ar" and kind in ("intercept", "unit_intercept"):
                    theta[index] = -1.0
                elif comp == "ne" and kind in ("intercept", "unit_intercept"):
                    theta[index] = -2.0
            if comp == "end" and epidemic:
                # leave room for the epidemic part of the mean
                for index, kind, _ in terms:
                    if kind in ("intercept", "unit_intercept"):
                        theta[index] -= np.log(2.0)
        if self._decay_index is not None:
            theta[self._decay_index] = np.log(self.control.ne_weights.decay)
        if self._size_index is not None:
            theta[self._size_index] = 2.0
        return theta

    def bounds(self) -> List[Tuple[Optional[float], Optional[float]]]:
        bounds: List[Tuple[Optional[float], Optional[float]]] = [(None, None)] * self.n_params
        if self._decay_index is not None:
            bounds[self._decay_index] = (np.log(0.01), np.log(30.0))
        if self._size_index is not None:
            for i in range(self._size_index.start, self._size_index.stop):
                bounds[i] = (-10.0, 20.0)
        return bounds

    # ------------------------------------------------------------------
    # model quantities
    # ------------------------------------------------------------------

    def _time_index(self, times) -> np.ndarray:
        times = np.atleast_1d(np.asarray(times, dtype=int))
        if np.any(times < 0):
            raise ValueError("Time indices must be non-negative")
        return times

    def linear_predictor(self, component: str, theta: np.ndarray, times) -> np.ndarray:
        """Linear predictor of a component, shape (len(times), K)"""
        times = self._time_index(times)
        eta = np.zeros((len(times), len(self.units)))
        t = times[:, None].astype(float)
        freq = self.sts.freq
        for index, kind, arg in self._terms[component]:
            beta = theta[index]
            if kind == "intercept":
                eta += beta
            elif kind == "unit_intercept":
                eta[:, arg] += beta
            elif kind == "trend":
                eta += beta * t
            elif kind == "sin":
                eta += beta * np.sin(2 * np.pi * arg * t / freq)
            elif kind == "cos":
                eta += beta * np.cos(2 * np.pi * arg * t / freq)
            elif kind == "covariate":
                if times.max() >= self.sts.n_time:
                    raise ValueError(
                        f"Covariate '{arg}' is not available beyond t={self.sts.n_time - 1}"
                    )
                eta += beta * self.sts.covariates[arg][times]
        return eta

    def _rate(self, component: str, theta: np.ndarray, times) -> np.ndarray:
        if component not in self._terms:
            return np.zeros((len(np.atleast_1d(times)), len(self.units)))
        return np.exp(np.clip(self.linear_predictor(component, theta, times), -_ETA_BOUND, _ETA_BOUND))

    def endemic_mean(self, theta: np.ndarray, times) -> np.ndarray:
        """e_i * nu_it, shape (len(times), K)"""
        return self.offset * self._rate("end", theta, times)

    def decay(self, theta: np.ndarray) -> Optional[float]:
        weights = self.control.ne_weights
        if self.control.ne is None or weights.kind != "powerlaw":
            return None
        if self._decay_index is not None:
            return float(np.exp(theta[self._decay_index]))
        return weights.decay

    def neighbour_weights(self, theta: np.ndarray) -> Optional[np.ndarray]:
        """Weight matrix W with w_ji in row j, column i"""
        if self.control.ne is None:
            return None
        weights = self.control.ne_weights
        order = self.sts.neighbourhood
        if weights.kind == "first_order":
            return first_order_weights(order, normalize=weights.normalize)
        return powerlaw_weights(
            order,
            decay=self.decay(theta),
            max_order=weights.max_order,
            normalize=weights.normalize
        )

    def size(self, theta: np.ndarray) -> np.ndarray:
        """Overdispersion (size) parameter per unit; inf for Poisson"""
        n_units = len(self.units)
        if self._size_index is None:
            return np.full(n_units, np.inf)
        values = np.exp(theta[self._size_index])
        return np.broadcast_to(values, (n_units,)).copy()

    def lagged_counts(self, times) -> np.ndarray:
        """sum_q u_q Y_{t-q} for each requested time point"""
        times = self._time_index(times)
        if times.min() < len(self.lag_weights):
            raise ValueError("Lagged counts reach before the start of the series")
        observed = self.sts.observed
        lagged = np.zeros((len(times), len(self.units)))
        for q, weight in enumerate(self.lag_weights, start=1):
            lagged += weight * observed[times - q]
        return lagged

    def mean_components(self, theta: np.ndarray, times=None) -> Dict[str, np.ndarray]:
        """
        Conditional means split by component

        Args:
            theta: Parameter vector
            times: Time indices (defaults to the fitting window)

        Returns:
            Dict with 'endemic', 'epi_own', 'epi_neighbours' and 'mean' arrays
        """
        times = self.window if times is None else self._time_index(times)
        lagged = self.lagged_counts(times)

        endemic = self.endemic_mean(theta, times)
        epi_own = self._rate("ar", theta, times) * lagged
        if self.control.ne is not None:
            epi_neighbours = self._rate("ne", theta, times) * (lagged @ self.neighbour_weights(theta))
        else:
            epi_neighbours = np.zeros_like(endemic)

        return {
            "endemic": endemic,
            "epi_own": epi_own,
            "epi_neighbours": epi_neighbours,
            "mean": endemic + epi_own + epi_neighbours
        }

    def transition_matrices(self, theta: np.ndarray, t: int) -> np.ndarray:
        """
        Matrices A_q with mu_t = endemic_t + sum_q A_q Y_{t-q}

        Returns:
            Array of shape (Q, K, K)
        """
        lam = self._rate("ar", theta, [t])[0]
        coupling = np.diag(lam)
        if self.control.ne is not None:
            phi = self._rate("ne", theta, [t])[0]
            coupling = coupling + phi[:, None] * self.neighbour_weights(theta).T
        return np.stack([weight * coupling for weight in self.lag_weights])

    def loglik(self, theta: np.ndarray) -> float:
        mean = self.mean_components(theta)["mean"]
        observed = self.sts.observed[self.window]
        return float(negbin_logpmf(observed, mean, self.size(theta)[None, :]).sum())

    # ------------------------------------------------------------------
    # estimation
    # ------------------------------------------------------------------

    def _start_vector(self, start: Optional[Dict[str, float]]) -> np.ndarray:
        theta = self.start_values()
        if start:
            for i, name in enumerate(self.names):
                if name in start and np.isfinite(start[name]):
                    theta[i] = start[name]
        lower_upper = self.bounds()
        for i, (lower, upper) in enumerate(lower_upper):
            if lower is not None:
                theta[i] = np.clip(theta[i], lower, upper)
        return theta

    def _covariance(self, theta: np.ndarray) -> np.ndarray:
        hessian = approx_hess(theta, self.loglik)
        try:
            cov = np.linalg.inv(-hessian)
        except np.linalg.LinAlgError:
            logger.warning("Singular Hessian, using the pseudo-inverse for standard errors")
            cov = np.linalg.pinv(-hessian)
        if np.any(np.diag(cov) < 0):
            logger.warning("Hessian is not negative definite at the estimate")
        return cov

    def fit(self, start: Optional[Dict[str, float]] = None) -> "HHH4Fit":
        """
        Maximise the log-likelihood

        Args:
            start: Optional starting values by parameter name

        Returns:
            HHH4Fit
        """
        theta0 = self._start_vector(start)
        result = minimize(
            lambda theta: -self.loglik(theta),
            theta0,
            method="L-BFGS-B",
            bounds=self.bounds(),
            options=dict(maxiter=self.control.maxiter, ftol=self.control.tol)
        )
        if not result.success:
            logger.warning(f"Optimizer did not converge: {result.message}")

        theta = result.x
        cov = self._covariance(theta)
        return HHH4Fit(
            model=self,
            coefficients=pd.Series(theta, index=self.names, name="estimate"),
            cov=pd.DataFrame(cov, index=self.names, columns=self.names),
            loglik=-float(result.fun),
            converged=bool(result.success),
            n_iter=int(result.nit)
        )


@dataclass(frozen=True, eq=False)
class HHH4Fit:
    """Fitted endemic-epidemic model (immutable)"""
    model: HHH4Model
    coefficients: pd.Series
    cov: pd.DataFrame
    loglik: float
    converged: bool
    n_iter: int = 0
    n_profiled: int = 0  # parameters fixed by profile likelihood, counted in df

    @property
    def sts(self) -> CountTimeSeries:
        return self.model.sts

    @property
    def control(self) -> ModelControl:
        return self.model.control

    @property
    def units(self) -> List[str]:
        return self.model.units

    @property
    def window(self) -> np.ndarray:
        return self.model.window

    @property
    def theta(self) -> np.ndarray:
        return self.coefficients.to_numpy()

    @property
    def df(self) -> int:
        return len(self.coefficients) + self.n_profiled

    @property
    def n_obs(self) -> int:
        return len(self.window) * len(self.units)

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.df

    @property
    def bic(self) -> float:
        return -2.0 * self.loglik + np.log(self.n_obs) * self.df

    @property
    def se(self) -> pd.Series:
        variances = np.diag(self.cov.to_numpy())
        with np.errstate(invalid="ignore"):
            return pd.Series(np.sqrt(np.where(variances >= 0, variances, np.nan)),
                             index=self.coefficients.index, name="se")

    @property
    def observed(self) -> np.ndarray:
        return self.sts.observed[self.window]

    @property
    def components(self) -> Dict[str, np.ndarray]:
        return self.model.mean_components(self.theta)

    @property
    def fitted_values(self) -> np.ndarray:
        return self.components["mean"]

    @property
    def overdispersion(self) -> np.ndarray:
        """Size parameter psi per unit (inf for Poisson fits)"""
        return self.model.size(self.theta)

    @property
    def decay(self) -> Optional[float]:
        """Estimated (or fixed) power-law decay d"""
        return self.model.decay(self.theta)

    @property
    def lag_weights(self) -> np.ndarray:
        return self.model.lag_weights

    def summary(self) -> pd.DataFrame:
        """Estimates, standard errors and Wald confidence intervals"""
        est = self.coefficients
        se = self.se
        return pd.DataFrame({
            "estimate": est,
            "se": se,
            "ci_lower": est - 1.96 * se,
            "ci_upper": est + 1.96 * se,
            "exp_estimate": np.exp(est)
        })

    def update(self, sts: Optional[CountTimeSeries] = None, **changes) -> "HHH4Fit":
        """
        Refit with a modified control, starting from the current estimates

        Args:
            sts: Optional replacement series
            **changes: ModelControl fields to change

        Returns:
            New HHH4Fit
        """
        control = self.control.replace(**changes) if changes else self.control
        return fit_hhh4(sts or self.sts, control, start=self.coefficients.to_dict())


def fit_hhh4(
    sts: CountTimeSeries,
    control: ModelControl,
    start: Optional[Dict[str, float]] = None
) -> HHH4Fit:
    """
    Fit an endemic-epidemic model

    Args:
        sts: Count time series
        control: Model specification
        start: Optional starting values by parameter name

    Returns:
        HHH4Fit
    """
    model = HHH4Model(sts, control)
    logger.debug(f"Fitting {control.describe()} ({model.n_params} parameters)")
    fit = model.fit(start=start)
    logger.info(
        f"Fitted {control.describe()}: loglik={fit.loglik:.2f}, AIC={fit.aic:.2f}"
        + ("" if fit.converged else " (not converged)")
    )
    return fit


def profile_par_lag(
    sts: CountTimeSeries,
    control: ModelControl,
    grid: Optional[Sequence[float]] = None
) -> LagProfile:
    """
    Profile likelihood of the lag-weighting parameter

    The model is refitted for every grid value of par_lag; the fit with the
    highest log-likelihood is returned with one extra degree of freedom.

    Args:
        sts: Count time series
        control: Specification with a geometric or Poisson lag structure
        grid: Values of par_lag (defaults to the configured grid)

    Returns:
        LagProfile
    """
    if control.lag.kind == LagKind.SINGLE:
        raise ValueError("Profiling needs a geometric or Poisson lag structure")
    if grid is None:
        grid = np.linspace(
            HHH4Config.PAR_LAG_GRID_MIN,
            HHH4Config.PAR_LAG_GRID_MAX,
            HHH4Config.PAR_LAG_GRID_SIZE
        )
    grid = np.asarray(grid, dtype=float)
    if grid.size == 0:
        raise ValueError("Empty par_lag grid")

    fits = []
    start = None
    for value in grid:
        fit = fit_hhh4(sts, control.replace(lag=replace(control.lag, par_lag=float(value))), start=start)
        start = fit.coefficients.to_dict()
        fits.append(fit)

    logliks = np.array([fit.loglik for fit in fits])
    best = int(np.argmax(logliks))
    logger.info(f"Profiled {control.lag.kind.value} lag parameter: best par_lag={grid[best]:.3f}")

    return LagProfile(
        kind=control.lag.kind,
        grid=grid,
        loglik=logliks,
        best_par_lag=float(grid[best]),
        best_fit=replace(fits[best], n_profiled=1)
    )


def compare_models(fits: Dict[str, HHH4Fit]) -> pd.DataFrame:
    """
    AIC comparison table of models fitted on the same window

    Args:
        fits: Fitted models by name

    Returns:
        DataFrame sorted by AIC with a delta_aic column
    """
    if not fits:
        raise ValueError("No models to compare")
    reference = next(iter(fits.values()))
    for name, fit in fits.items():
        if not np.array_equal(fit.window, reference.window) or fit.sts.observed.shape != reference.sts.observed.shape:
            raise ValueError(f"Model '{name}' was fitted on a different window")

    table = pd.DataFrame([
        {
            "model": name,
            "description": fit.control.describe(),
            "df": fit.df,
            "loglik": fit.loglik,
            "aic": fit.aic,
            "converged": fit.converged
        }
        for name, fit in fits.items()
    ])
    table = table.sort_values("aic").reset_index(drop=True)
    table["delta_aic"] = table["aic"] - table["aic"].iloc[0]
    return table
