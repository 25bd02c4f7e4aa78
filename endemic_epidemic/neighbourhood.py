"""
Spatial neighbourhood structure
Adjacency from map geometry, path-distance neighbourhood orders and transmission weights
"""

from typing import List, Optional, Sequence

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import shortest_path
from loguru import logger


def adjacency_from_geometry(
    gdf,
    unit_column: Optional[str] = None,
    units: Optional[Sequence[str]] = None
) -> np.ndarray:
    """
    Boolean adjacency matrix of polygons sharing a border

    Args:
        gdf: GeoDataFrame with one polygon per unit
        unit_column: Column holding the unit identifiers (index if None)
        units: Order of the rows/columns (defaults to the GeoDataFrame order)

    Returns:
        Symmetric boolean K x K matrix with a False diagonal
    """
    ids: List[str] = [str(u) for u in (gdf[unit_column] if unit_column else gdf.index)]
    if units is None:
        units = ids
    missing = [u for u in units if u not in ids]
    if missing:
        raise ValueError(f"Units without geometry: {missing}")

    geometries = [gdf.geometry.iloc[ids.index(u)] for u in units]
    n = len(geometries)
    adjacency = np.zeros((n, n), dtype=bool)
    for i in range(n):
        for j in range(i + 1, n):
            if geometries[i].intersects(geometries[j]):
                adjacency[i, j] = adjacency[j, i] = True

    isolated = [u for u, row in zip(units, adjacency) if not row.any()]
    if isolated:
        logger.warning(f"Units without neighbours: {isolated}")
    return adjacency


def neighbourhood_order(adjacency: np.ndarray) -> np.ndarray:
    """
    Path-distance neighbourhood orders from an adjacency matrix

    Order 1 are direct neighbours, order 2 neighbours of neighbours, etc.

    Args:
        adjacency: Symmetric K x K adjacency matrix (non-zero = adjacent)

    Returns:
        K x K float matrix, 0 on the diagonal, inf for unreachable pairs
    """
    adjacency = np.asarray(adjacency)
    if adjacency.ndim != 2 or adjacency.shape[0] != adjacency.shape[1]:
        raise ValueError(f"Adjacency matrix must be square, got {adjacency.shape}")
    adjacency = adjacency != 0
    if not np.array_equal(adjacency, adjacency.T):
        raise ValueError("Adjacency matrix must be symmetric")
    np.fill_diagonal(adjacency, False)

    return shortest_path(
        csr_matrix(adjacency.astype(float)),
        method="D",
        directed=False,
        unweighted=True
    )


def _normalize_rows(weights: np.ndarray) -> np.ndarray:
    totals = weights.sum(axis=1, keepdims=True)
    return np.divide(weights, totals, out=np.zeros_like(weights), where=totals > 0)


def first_order_weights(order: np.ndarray, normalize: bool = True) -> np.ndarray:
    """
    Weights w_ji = 1 for direct neighbours, 0 otherwise

    Row j holds the weights with which unit j transmits to the other units;
    with normalize=True each row sums to one.
    """
    weights = (np.asarray(order) == 1).astype(float)
    return _normalize_rows(weights) if normalize else weights


def powerlaw_weights(
    order: np.ndarray,
    decay: float,
    max_order: int = 5,
    normalize: bool = True
) -> np.ndarray:
    """
    Power-law weights w_ji = o_ji^(-d) for 1 <= o_ji <= max_order

    Args:
        order: Neighbourhood order matrix
        decay: Decay parameter d > 0
        max_order: Orders beyond this get zero weight
        normalize: Scale each row to sum to one

    Returns:
        K x K weight matrix with a zero diagonal
    """
    if decay <= 0:
        raise ValueError("Power-law decay must be positive")
    order = np.asarray(order, dtype=float)
    within = (order >= 1) & (order <= max_order)
    weights = np.zeros_like(order)
    weights[within] = order[within] ** (-decay)
    return _normalize_rows(weights) if normalize else weights
