"""
Data Models for Endemic-Epidemic Modelling
Multivariate count time series container, model control specification and result structures
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import pickle

import numpy as np
import pandas as pd


class Family(Enum):
    """Conditional distribution of the counts"""
    POISSON = "poisson"
    NEGBIN1 = "negbin1"  # one overdispersion parameter shared by all units
    NEGBINM = "negbinm"  # unit-specific overdispersion parameters


class LagKind(Enum):
    """Weighting of past observations in the epidemic components"""
    SINGLE = "single"
    GEOMETRIC = "geometric"
    POISSON = "poisson"


_PERIOD_FREQUENCIES = {1: "Y", 4: "Q", 12: "M", 52: "W"}


@dataclass(frozen=True, eq=False)
class CountTimeSeries:
    """
    Multivariate count time series (rows: time points, columns: spatial units)

    The series is validated on construction and never mutated afterwards;
    models only reference windows of it.
    """
    observed: np.ndarray
    units: List[str]
    freq: int = 12
    start: Tuple[int, int] = (2000, 1)
    neighbourhood: Optional[np.ndarray] = None  # path-distance order matrix
    population: Optional[np.ndarray] = None
    covariates: Dict[str, np.ndarray] = field(default_factory=dict)
    map: Optional[Any] = None  # GeoDataFrame indexed by unit

    def __post_init__(self):
        observed = np.asarray(self.observed, dtype=float)
        if observed.ndim == 1:
            observed = observed[:, None]
        if observed.ndim != 2:
            raise ValueError(f"Counts must be a 2-d matrix, got {observed.ndim} dimensions")
        if not np.all(np.isfinite(observed)):
            raise ValueError("Counts contain missing or infinite values")
        if np.any(observed < 0):
            raise ValueError("Counts must be non-negative")
        if not np.all(observed == np.round(observed)):
            raise ValueError("Counts must be integers")
        observed = observed.astype(np.int64)
        observed.setflags(write=False)
        object.__setattr__(self, "observed", observed)

        n_time, n_units = observed.shape
        units = [str(u) for u in self.units]
        if len(units) != n_units:
            raise ValueError(f"Got {len(units)} unit names for {n_units} columns")
        if len(set(units)) != n_units:
            raise ValueError("Unit names must be unique")
        object.__setattr__(self, "units", units)

        if self.freq < 1:
            raise ValueError("freq must be a positive number of periods per year")

        if self.neighbourhood is not None:
            nb = np.asarray(self.neighbourhood, dtype=float)
            if nb.shape != (n_units, n_units):
                raise ValueError(
                    f"Neighbourhood matrix must be {n_units}x{n_units}, got {nb.shape}"
                )
            if np.any(np.isnan(nb)) or np.any(nb < 0):
                raise ValueError("Neighbourhood orders must be non-negative")
            if not np.array_equal(nb, nb.T):
                raise ValueError("Neighbourhood matrix must be symmetric")
            if np.any(np.diag(nb) != 0):
                raise ValueError("Neighbourhood matrix must have a zero diagonal")
            nb.setflags(write=False)
            object.__setattr__(self, "neighbourhood", nb)

        if self.population is not None:
            pop = np.asarray(self.population, dtype=float).ravel()
            if pop.shape != (n_units,):
                raise ValueError(f"Population must have {n_units} entries, got {pop.shape[0]}")
            if np.any(~np.isfinite(pop)) or np.any(pop <= 0):
                raise ValueError("Population must be strictly positive")
            pop.setflags(write=False)
            object.__setattr__(self, "population", pop)

        covariates = {}
        for name, values in (self.covariates or {}).items():
            values = np.asarray(values, dtype=float)
            if values.shape != (n_time, n_units):
                raise ValueError(
                    f"Covariate '{name}' must be {n_time}x{n_units}, got {values.shape}"
                )
            values.setflags(write=False)
            covariates[name] = values
        object.__setattr__(self, "covariates", covariates)

    @property
    def n_time(self) -> int:
        return self.observed.shape[0]

    @property
    def n_units(self) -> int:
        return self.observed.shape[1]

    @property
    def periods(self) -> pd.Index:
        """Calendar index of the rows (RangeIndex for unusual frequencies)"""
        year, period = self.start
        alias = _PERIOD_FREQUENCIES.get(self.freq)
        if alias == "M":
            first = pd.Period(year=year, month=period, freq="M")
        elif alias == "Q":
            first = pd.Period(year=year, quarter=period, freq="Q")
        elif alias == "Y":
            first = pd.Period(year=year, freq="Y")
        elif alias == "W":
            first = pd.Timestamp.fromisocalendar(year, period, 1).to_period("W")
        else:
            return pd.RangeIndex(self.n_time)
        return pd.period_range(start=first, periods=self.n_time)

    def population_fraction(self) -> np.ndarray:
        """Population shares of the units (uniform if no population is attached)"""
        if self.population is None:
            return np.full(self.n_units, 1.0 / self.n_units)
        return self.population / self.population.sum()

    def unit_index(self, units: Sequence[str]) -> np.ndarray:
        missing = [u for u in units if u not in self.units]
        if missing:
            raise ValueError(f"Unknown units: {missing}")
        return np.array([self.units.index(u) for u in units], dtype=int)

    def _start_after(self, n_rows: int) -> Tuple[int, int]:
        """(year, period) of the row n_rows after the start"""
        alias = _PERIOD_FREQUENCIES.get(self.freq)
        if alias == "W":
            # ISO years have 52 or 53 weeks
            first = self.periods[0].start_time + pd.Timedelta(weeks=n_rows)
            iso = first.isocalendar()
            return (iso[0], iso[1])
        year, period = self.start
        offset = (period - 1) + n_rows
        return (year + offset // self.freq, offset % self.freq + 1)

    def subset(
        self,
        units: Optional[Sequence[str]] = None,
        times: Optional[Union[slice, Sequence[int]]] = None
    ) -> "CountTimeSeries":
        """
        Return a new series restricted to some units and/or time points

        Args:
            units: Unit names to keep (in the given order)
            times: Slice or contiguous indices of time points to keep

        Returns:
            New CountTimeSeries
        """
        cols = self.unit_index(units) if units is not None else np.arange(self.n_units)
        if times is None:
            rows = np.arange(self.n_time)
        elif isinstance(times, slice):
            rows = np.arange(self.n_time)[times]
        else:
            rows = np.asarray(times, dtype=int)
        if len(rows) == 0:
            raise ValueError("Subset contains no time points")
        if len(rows) > 1 and np.any(np.diff(rows) != 1):
            raise ValueError("Time subset must be contiguous")

        start = self._start_after(int(rows[0]))

        nb = None
        if self.neighbourhood is not None:
            nb = self.neighbourhood[np.ix_(cols, cols)]
        geometry = None
        if self.map is not None:
            geometry = self.map.loc[[self.units[c] for c in cols]]

        return CountTimeSeries(
            observed=self.observed[np.ix_(rows, cols)],
            units=[self.units[c] for c in cols],
            freq=self.freq,
            start=start,
            neighbourhood=nb,
            population=None if self.population is None else self.population[cols],
            covariates={k: v[np.ix_(rows, cols)] for k, v in self.covariates.items()},
            map=geometry
        )

    def to_frame(self) -> pd.DataFrame:
        """Wide DataFrame of the counts indexed by period"""
        return pd.DataFrame(self.observed, index=self.periods, columns=self.units)

    def save(self, path: Union[str, Path]) -> None:
        """Pickle the series (map included)"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            pickle.dump(self, f)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CountTimeSeries":
        """Load a pickled series"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Series file not found: {path}")
        with open(path, 'rb') as f:
            series = pickle.load(f)
        if not isinstance(series, cls):
            raise ValueError(f"{path} does not contain a {cls.__name__}")
        return series


@dataclass(frozen=True)
class ComponentSpec:
    """Log-linear predictor of one model component"""
    intercept: bool = True
    unit_specific: bool = False  # one intercept per unit instead of a common one
    trend: bool = False
    seasons: int = 0  # number of sine/cosine harmonics
    covariates: Tuple[str, ...] = ()
    offset: bool = False  # population fraction offset (endemic component only)

    def __post_init__(self):
        if self.seasons < 0:
            raise ValueError("Number of seasonal harmonics cannot be negative")
        object.__setattr__(self, "covariates", tuple(self.covariates))

    @classmethod
    def from_dict(cls, d: Optional[Dict]) -> Optional["ComponentSpec"]:
        if d is None:
            return None
        return cls(**d)

    def describe(self) -> str:
        terms = []
        if self.intercept:
            terms.append("1 (unit-specific)" if self.unit_specific else "1")
        if self.trend:
            terms.append("t")
        if self.seasons:
            terms.append(f"sin/cos(S={self.seasons})")
        terms.extend(self.covariates)
        text = " + ".join(terms) if terms else "0"
        if self.offset:
            text += " [offset: population]"
        return text


@dataclass(frozen=True)
class NeighbourWeights:
    """Weighting of neighbouring units in the neighbourhood component"""
    kind: str = "powerlaw"  # "first_order" or "powerlaw"
    max_order: int = 5
    normalize: bool = True
    decay: float = 2.0  # starting (or fixed) value of the power-law decay d
    estimate_decay: bool = True

    def __post_init__(self):
        if self.kind not in ("first_order", "powerlaw"):
            raise ValueError(f"Unknown neighbourhood weights: {self.kind}")
        if self.max_order < 1:
            raise ValueError("max_order must be at least 1")
        if self.decay <= 0:
            raise ValueError("Power-law decay must be positive")


@dataclass(frozen=True)
class LagStructure:
    """Distribution of the epidemic effect over past time points"""
    kind: LagKind = LagKind.SINGLE
    max_lag: int = 1
    par_lag: float = 0.0  # unconstrained scale: logit(alpha) or log(lambda)

    def __post_init__(self):
        kind = self.kind if isinstance(self.kind, LagKind) else LagKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if self.max_lag < 1:
            raise ValueError("max_lag must be at least 1")
        if kind == LagKind.SINGLE and self.max_lag != 1:
            raise ValueError("A single lag has max_lag = 1")


@dataclass(frozen=True)
class ModelControl:
    """Full specification of an endemic-epidemic model"""
    end: Optional[ComponentSpec] = field(default_factory=ComponentSpec)
    ar: Optional[ComponentSpec] = None
    ne: Optional[ComponentSpec] = None
    ne_weights: NeighbourWeights = field(default_factory=NeighbourWeights)
    lag: LagStructure = field(default_factory=LagStructure)
    family: Family = Family.NEGBIN1
    subset: Optional[Tuple[int, int]] = None  # first and last time index of the fit
    maxiter: int = 2000
    tol: float = 1e-9

    def __post_init__(self):
        family = self.family if isinstance(self.family, Family) else Family(str(self.family).lower())
        object.__setattr__(self, "family", family)
        if self.end is None and self.ar is None and self.ne is None:
            raise ValueError("At least one model component is required")
        if self.end is None:
            raise ValueError("The endemic component is required")
        for name, spec in (("ar", self.ar), ("ne", self.ne)):
            if spec is not None and spec.offset:
                raise ValueError(f"Population offsets are only supported in the endemic component, not '{name}'")
        if self.subset is not None:
            first, last = self.subset
            if first > last:
                raise ValueError(f"Empty fitting window {self.subset}")
            object.__setattr__(self, "subset", (int(first), int(last)))

    @property
    def max_lag(self) -> int:
        return self.lag.max_lag

    def replace(self, **changes) -> "ModelControl":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, d: Dict) -> "ModelControl":
        """Build a control object from (YAML-loaded) nested dictionaries"""
        kwargs = {}
        for name in ("end", "ar", "ne"):
            if name in d:
                kwargs[name] = ComponentSpec.from_dict(d[name])
        if d.get("ne_weights") is not None:
            kwargs["ne_weights"] = NeighbourWeights(**d["ne_weights"])
        if d.get("lag") is not None:
            kwargs["lag"] = LagStructure(**d["lag"])
        if "family" in d:
            kwargs["family"] = Family(str(d["family"]).lower())
        if d.get("subset") is not None:
            kwargs["subset"] = tuple(d["subset"])
        for key in ("maxiter", "tol"):
            if key in d:
                kwargs[key] = d[key]
        return cls(**kwargs)

    def describe(self) -> str:
        parts = [f"end: {self.end.describe()}"]
        if self.ar is not None:
            parts.append(f"ar: {self.ar.describe()}")
        if self.ne is not None:
            parts.append(f"ne: {self.ne.describe()} [{self.ne_weights.kind}]")
        if self.lag.kind != LagKind.SINGLE:
            parts.append(f"lags: {self.lag.kind.value}(max {self.lag.max_lag})")
        parts.append(f"family: {self.family.value}")
        return "; ".join(parts)


@dataclass(frozen=True, eq=False)
class OneStepAheadResult:
    """Sequence of one-step-ahead predictive distributions"""
    times: np.ndarray  # predicted time indices
    observed: np.ndarray  # (n_pred, K)
    mean: np.ndarray  # (n_pred, K)
    size: np.ndarray  # (n_pred, K), inf for Poisson
    units: List[str]
    refit: str
    coefficients: pd.DataFrame  # one row of estimates per prediction

    @property
    def variance(self) -> np.ndarray:
        return self.mean + self.mean ** 2 / self.size


@dataclass(frozen=True, eq=False)
class PredictiveMoments:
    """Mean and (co)variance of a multi-step-ahead predictive distribution"""
    t_condition: int
    times: np.ndarray
    mean: np.ndarray  # (lgt, K)
    var: np.ndarray  # (lgt, K)
    units: List[str]
    cov: Optional[np.ndarray] = None  # (lgt*K, lgt*K), time-major stacking

    @property
    def sd(self) -> np.ndarray:
        return np.sqrt(self.var)


@dataclass(frozen=True, eq=False)
class StationaryMoments:
    """(Periodically) stationary moments of a fitted model"""
    phases: np.ndarray  # position within the period (0..freq-1), or [0]
    mean: np.ndarray  # (n_phases, K)
    var: np.ndarray  # (n_phases, K)
    units: List[str]
    n_iterations: int

    @property
    def sd(self) -> np.ndarray:
        return np.sqrt(self.var)


@dataclass(frozen=True, eq=False)
class LagProfile:
    """Profile likelihood of the lag-weighting parameter"""
    kind: LagKind
    grid: np.ndarray
    loglik: np.ndarray
    best_par_lag: float
    best_fit: Any  # HHH4Fit

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"par_lag": self.grid, "loglik": self.loglik})


@dataclass
class PipelineReport:
    """Summary of a model-building run"""
    report_id: str
    generation_time: datetime
    n_time: int
    units: List[str]

    comparison: pd.DataFrame
    best_model: str
    coefficients: Dict[str, float]

    residual_summary: Dict[str, float]
    forecast_scores: Dict[str, float]
    calibration: Dict[str, float]
    stationary_mean: Dict[str, float]

    plots: List[str] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)
