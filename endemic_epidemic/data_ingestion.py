"""
Data Ingestion Module for Endemic-Epidemic Modelling
Loads case counts, population denominators, map geometry and covariates and
assembles them into a CountTimeSeries
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd
from loguru import logger

from .config import HHH4Config
from .models import CountTimeSeries
from .neighbourhood import adjacency_from_geometry, neighbourhood_order


_PANDAS_FREQUENCIES = {1: "Y", 4: "Q", 12: "M", 52: "W"}


class DataIngester(ABC):
    """Base class for tabular data ingesters"""

    column_mapping: Dict[str, str] = {}
    required_columns: Tuple[str, ...] = ()

    def __init__(self, data_source_name: str):
        self.data_source_name = data_source_name

    @abstractmethod
    def ingest(self, data_path: Union[str, Path]):
        """Ingest data from source"""
        pass

    def read_csv(self, source: Union[str, Path]) -> pd.DataFrame:
        """Read a (possibly gzip-compressed or remote) CSV file"""
        if isinstance(source, Path) or not str(source).startswith(("http://", "https://")):
            source = Path(source)
            if not source.exists():
                raise FileNotFoundError(f"{self.data_source_name} file not found: {source}")
        try:
            df = pd.read_csv(source, compression="infer")
        except Exception as e:
            raise RuntimeError(f"Failed to read {self.data_source_name} data: {str(e)}") from e
        return self._standardize_columns(df)

    def _standardize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Standardize column names to expected format"""
        df = df.rename(columns=lambda c: str(c).strip().lower().replace(" ", "_"))
        df = df.rename(columns={k: v for k, v in self.column_mapping.items() if k in df.columns})
        missing = [c for c in self.required_columns if c not in df.columns]
        if missing:
            raise ValueError(f"{self.data_source_name} data is missing columns: {missing}")
        df["unit"] = df["unit"].astype(str).str.strip()
        return df


class CaseCountIngester(DataIngester):
    """
    Ingester for case counts in long format

    Expected format (gzip CSV or plain CSV):
    - Unit (country / region / district code)
    - Period (month or date)
    - Case count
    """

    column_mapping = {
        'country': 'unit',
        'country_code': 'unit',
        'region': 'unit',
        'district': 'unit',
        'location': 'unit',
        'month': 'period',
        'date': 'period',
        'time': 'period',
        'week': 'period',
        'cases': 'count',
        'case_count': 'count',
        'n': 'count'
    }
    required_columns = ('unit', 'period', 'count')

    def __init__(self, freq: Optional[int] = None):
        super().__init__("case count")
        self.freq = freq or HHH4Config.FREQUENCY
        if self.freq not in _PANDAS_FREQUENCIES:
            raise ValueError(f"Unsupported frequency: {self.freq}")

    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        """
        Ingest long-format case counts into a wide period x unit table

        Args:
            data_path: Path to the (gzip) CSV file

        Returns:
            DataFrame indexed by a complete PeriodIndex with one column per unit
        """
        df = self.read_csv(data_path)
        return self.to_wide(df)

    def to_wide(self, df: pd.DataFrame) -> pd.DataFrame:
        alias = _PANDAS_FREQUENCIES[self.freq]
        df = df.dropna(subset=['unit', 'period']).copy()
        df['period'] = pd.to_datetime(df['period'].astype(str)).dt.to_period(alias)
        df['count'] = pd.to_numeric(df['count'], errors='coerce')

        if df['count'].isna().any():
            raise ValueError(f"{int(df['count'].isna().sum())} case counts are not numeric")
        if (df['count'] < 0).any():
            raise ValueError("Case counts must be non-negative")
        if not np.all(df['count'] == np.round(df['count'])):
            raise ValueError("Case counts must be integers")

        wide = df.pivot_table(index='period', columns='unit', values='count', aggfunc='sum')
        full_index = pd.period_range(wide.index.min(), wide.index.max(), freq=alias)
        wide = wide.reindex(full_index)

        n_missing = int(wide.isna().sum().sum())
        if n_missing:
            logger.warning(f"Filling {n_missing} missing unit-period cells with zero counts")
        wide = wide.fillna(0).astype(np.int64)
        wide.columns = [str(c) for c in wide.columns]
        wide.columns.name = None

        logger.info(f"Loaded {wide.shape[0]} periods x {wide.shape[1]} units of case counts")
        return wide


class PopulationIngester(DataIngester):
    """Ingester for unit population counts"""

    column_mapping = {
        'country': 'unit',
        'country_code': 'unit',
        'region': 'unit',
        'district': 'unit',
        'location': 'unit',
        'pop': 'population',
        'population_count': 'population'
    }
    required_columns = ('unit', 'population')

    def __init__(self):
        super().__init__("population")

    def ingest(self, data_path: Union[str, Path]) -> pd.Series:
        df = self.read_csv(data_path)
        if df['unit'].duplicated().any():
            raise ValueError(f"Duplicate population entries: {df.loc[df['unit'].duplicated(), 'unit'].tolist()}")
        population = pd.to_numeric(df['population'], errors='coerce')
        if population.isna().any() or (population <= 0).any():
            raise ValueError("Population counts must be positive numbers")
        return pd.Series(population.to_numpy(dtype=float), index=df['unit'], name='population')


class CovariateIngester(DataIngester):
    """
    Ingester for unit-level covariates in long format (e.g. monthly temperature)

    The source can be a local file or a remote CSV URL.
    """

    column_mapping = {k: v for k, v in CaseCountIngester.column_mapping.items() if v != 'count'}
    required_columns = ('unit', 'period')

    def __init__(self, value_column: str, freq: Optional[int] = None):
        super().__init__(f"covariate '{value_column}'")
        self.value_column = value_column
        self.freq = freq or HHH4Config.FREQUENCY

    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        df = self.read_csv(data_path)
        if self.value_column not in df.columns:
            raise ValueError(f"Covariate column '{self.value_column}' not found")
        alias = _PANDAS_FREQUENCIES[self.freq]
        df['period'] = pd.to_datetime(df['period'].astype(str)).dt.to_period(alias)
        wide = df.pivot_table(index='period', columns='unit', values=self.value_column, aggfunc='mean')
        wide.columns = [str(c) for c in wide.columns]
        wide.columns.name = None
        return wide

    @staticmethod
    def align(wide: pd.DataFrame, periods: pd.Index, units: List[str]) -> np.ndarray:
        """Align a wide covariate table to the series; gaps are interpolated in time"""
        missing_units = [u for u in units if u not in wide.columns]
        if missing_units:
            raise ValueError(f"Covariate is missing units: {missing_units}")
        aligned = wide.reindex(index=periods, columns=units)
        aligned = aligned.interpolate(limit_direction='both')
        if aligned.isna().any().any():
            raise ValueError("Covariate has no values for some units")
        return aligned.to_numpy(dtype=float)


class AdjacencyIngester(DataIngester):
    """Ingester for a square adjacency matrix stored as CSV (first column = unit)"""

    def __init__(self):
        super().__init__("adjacency")

    def ingest(self, data_path: Union[str, Path]) -> pd.DataFrame:
        data_path = Path(data_path)
        if not data_path.exists():
            raise FileNotFoundError(f"adjacency file not found: {data_path}")
        try:
            df = pd.read_csv(data_path, index_col=0)
        except Exception as e:
            raise RuntimeError(f"Failed to read adjacency data: {str(e)}") from e
        df.index = df.index.astype(str)
        df.columns = df.columns.astype(str)
        if list(df.index) != list(df.columns):
            raise ValueError("Adjacency matrix rows and columns must list the same units")
        return df


class MapIngester:
    """
    Loads unit boundaries, preferring a local cache of the GeoDataFrame

    On a cache miss the GeoJSON is fetched from the configured URL and the
    cache is written; network errors are not retried.
    """

    def __init__(self, unit_column: Optional[str] = None):
        self.unit_column = unit_column or HHH4Config.MAP_UNIT_COLUMN

    def load(
        self,
        cache_path: Optional[Path] = None,
        url: Optional[str] = None
    ) -> gpd.GeoDataFrame:
        cache_path = Path(cache_path) if cache_path else HHH4Config.MAP_CACHE_PATH
        url = url or HHH4Config.GEOJSON_URL

        if cache_path is not None and cache_path.exists():
            logger.info(f"Loading cached map from {cache_path}")
            gdf = pd.read_pickle(cache_path)
        else:
            if not url:
                raise ValueError("No cached map available and no GeoJSON URL configured")
            logger.info(f"Fetching map geometry from {url}")
            gdf = gpd.read_file(url)
            if cache_path is not None:
                cache_path.parent.mkdir(parents=True, exist_ok=True)
                gdf.to_pickle(cache_path)

        if self.unit_column not in gdf.columns:
            raise ValueError(f"Map has no unit column '{self.unit_column}'")
        gdf = gdf.copy()
        gdf[self.unit_column] = gdf[self.unit_column].astype(str)
        return gdf.set_index(self.unit_column, drop=False)


def _check_units(units: List[str], other: List[str], what: str):
    missing = sorted(set(units) - set(other))
    extra = sorted(set(other) - set(units))
    if missing:
        raise ValueError(f"Units without {what}: {missing}")
    if extra:
        logger.warning(f"Ignoring {what} for units without counts: {extra}")


def build_count_time_series(
    counts: pd.DataFrame,
    population: Optional[pd.Series] = None,
    geometry: Optional[gpd.GeoDataFrame] = None,
    adjacency: Optional[pd.DataFrame] = None,
    covariates: Optional[Dict[str, pd.DataFrame]] = None
) -> CountTimeSeries:
    """
    Assemble a CountTimeSeries from ingested tables

    Args:
        counts: Wide period x unit count table
        population: Population by unit
        geometry: GeoDataFrame indexed by unit (used for adjacency unless
            an explicit adjacency matrix is given)
        adjacency: Square adjacency table by unit
        covariates: Wide period x unit covariate tables by name

    Returns:
        CountTimeSeries
    """
    units = [str(u) for u in counts.columns]
    periods = counts.index
    if not isinstance(periods, pd.PeriodIndex):
        raise ValueError("Count table must be indexed by periods")
    freq = {"Y": 1, "A": 1, "Q": 4, "M": 12, "W": 52}.get(periods.freqstr[0])
    if freq is None:
        raise ValueError(f"Unsupported period frequency: {periods.freqstr}")
    first = periods[0]
    if freq == 12:
        start = (first.year, first.month)
    elif freq == 4:
        start = (first.year, first.quarter)
    elif freq == 52:
        iso = first.start_time.isocalendar()
        start = (iso[0], iso[1])
    else:
        start = (first.year, 1)

    pop = None
    if population is not None:
        _check_units(units, list(population.index), "population")
        pop = population.reindex(units).to_numpy(dtype=float)

    order = None
    gdf = None
    if adjacency is not None:
        _check_units(units, list(adjacency.index), "adjacency")
        order = neighbourhood_order(adjacency.loc[units, units].to_numpy())
    if geometry is not None:
        _check_units(units, [str(u) for u in geometry.index], "geometry")
        gdf = geometry.loc[units]
        if order is None:
            order = neighbourhood_order(adjacency_from_geometry(gdf, units=units))

    aligned = {}
    for name, table in (covariates or {}).items():
        aligned[name] = CovariateIngester.align(table, periods, units)

    return CountTimeSeries(
        observed=counts.to_numpy(),
        units=units,
        freq=freq,
        start=start,
        neighbourhood=order,
        population=pop,
        covariates=aligned,
        map=gdf
    )


class MultiSourceIngester:
    """Loads every configured data source and builds the count time series"""

    def __init__(self, freq: Optional[int] = None, unit_column: Optional[str] = None):
        self.count_ingester = CaseCountIngester(freq=freq)
        self.population_ingester = PopulationIngester()
        self.adjacency_ingester = AdjacencyIngester()
        self.map_ingester = MapIngester(unit_column=unit_column)
        self.freq = self.count_ingester.freq

    def ingest_all(
        self,
        counts_path: Union[str, Path],
        population_path: Optional[Union[str, Path]] = None,
        adjacency_path: Optional[Union[str, Path]] = None,
        map_cache_path: Optional[Union[str, Path]] = None,
        geojson_url: Optional[str] = None,
        covariate_sources: Optional[Dict[str, Tuple[Union[str, Path], str]]] = None
    ) -> CountTimeSeries:
        """
        Ingest all sources

        Args:
            counts_path: Case count CSV (gzip allowed)
            population_path: Population CSV
            adjacency_path: Adjacency CSV (alternative to a map)
            map_cache_path: Cached map geometry
            geojson_url: Remote GeoJSON used when the cache is missing
            covariate_sources: name -> (path or URL, value column)

        Returns:
            CountTimeSeries
        """
        counts = self.count_ingester.ingest(counts_path)

        population = None
        if population_path is not None:
            population = self.population_ingester.ingest(population_path)

        adjacency = None
        if adjacency_path is not None:
            adjacency = self.adjacency_ingester.ingest(adjacency_path)

        geometry = None
        if map_cache_path is not None or geojson_url is not None:
            geometry = self.map_ingester.load(
                cache_path=Path(map_cache_path) if map_cache_path else None,
                url=geojson_url
            )

        covariates = {}
        for name, (source, column) in (covariate_sources or {}).items():
            covariates[name] = CovariateIngester(column, freq=self.freq).ingest(source)

        sts = build_count_time_series(
            counts,
            population=population,
            geometry=geometry,
            adjacency=adjacency,
            covariates=covariates
        )
        logger.info(
            f"Built count time series: {sts.n_time} time points, {sts.n_units} units, "
            f"start {sts.start}, freq {sts.freq}"
        )
        return sts
