"""
Pytest configuration and fixtures for endemic-epidemic model tests
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from endemic_epidemic.fitting import HHH4Fit, HHH4Model
from endemic_epidemic.models import (
    ComponentSpec,
    CountTimeSeries,
    Family,
    ModelControl,
    NeighbourWeights
)
from endemic_epidemic.neighbourhood import neighbourhood_order
from endemic_epidemic.simulation import simulate_series


UNITS = ["north", "east", "south", "west"]

# unit names follow the parameter naming of HHH4Model
TRUE_COEFFICIENTS = {
    "end.intercept": np.log(80.0),
    "end.sin(2*pi*1*t/12)": 0.4,
    "end.cos(2*pi*1*t/12)": -0.3,
    "ar.intercept": np.log(0.4),
    "ne.intercept": np.log(0.1),
    "neweights.log_d": np.log(2.0),
    "overdisp.log_size": np.log(10.0)
}


def path_graph_adjacency(n_units):
    adjacency = np.zeros((n_units, n_units), dtype=bool)
    for i in range(n_units - 1):
        adjacency[i, i + 1] = adjacency[i + 1, i] = True
    return adjacency


@pytest.fixture(scope="session")
def true_coefficients():
    return dict(TRUE_COEFFICIENTS)


@pytest.fixture(scope="session")
def true_control():
    """Seasonal endemic + autoregressive + power-law neighbourhood model"""
    return ModelControl(
        end=ComponentSpec(seasons=1, offset=True),
        ar=ComponentSpec(),
        ne=ComponentSpec(),
        ne_weights=NeighbourWeights(kind="powerlaw"),
        family=Family.NEGBIN1
    )


@pytest.fixture(scope="session")
def template_series():
    """Ten years of monthly data for four units on a path graph"""
    n_time = 120
    return CountTimeSeries(
        observed=np.full((n_time, len(UNITS)), 20),
        units=UNITS,
        freq=12,
        start=(2010, 1),
        neighbourhood=neighbourhood_order(path_graph_adjacency(len(UNITS))),
        population=np.array([100000.0, 200000.0, 150000.0, 50000.0])
    )


@pytest.fixture(scope="session")
def simulated_series(template_series, true_control):
    """Counts simulated from TRUE_COEFFICIENTS"""
    return simulate_series(template_series, true_control, TRUE_COEFFICIENTS, seed=42)


@pytest.fixture(scope="session")
def true_fit(simulated_series, true_control):
    """Model evaluated at the true parameters (no estimation)"""
    model = HHH4Model(simulated_series, true_control)
    theta = [TRUE_COEFFICIENTS[name] for name in model.names]
    return HHH4Fit(
        model=model,
        coefficients=pd.Series(theta, index=model.names, name="estimate"),
        cov=pd.DataFrame(np.eye(len(theta)), index=model.names, columns=model.names),
        loglik=model.loglik(np.asarray(theta)),
        converged=True
    )


@pytest.fixture(scope="session")
def small_series():
    """Short univariate series for quick fits"""
    rng = np.random.default_rng(7)
    counts = rng.poisson(15, size=(48, 1))
    return CountTimeSeries(observed=counts, units=["region"], freq=12, start=(2015, 1))


@pytest.fixture
def counts_long():
    """Long-format monthly case counts for three countries"""
    periods = pd.period_range("2020-01", periods=6, freq="M").astype(str)
    rows = []
    for unit, base in (("AT", 3), ("CH", 5), ("DE", 11)):
        for i, period in enumerate(periods):
            rows.append({"Country": unit, "Month": period, "Cases": base + i})
    return pd.DataFrame(rows)
