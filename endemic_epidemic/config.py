"""
Configuration for Endemic-Epidemic (hhh4) Modelling
"""

import os
import sys
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

load_dotenv()


def _optional_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


class HHH4Config:
    """Configuration for endemic-epidemic modelling"""

    # ═══════════════════════════════════════════════════════════
    # Directory Paths
    # ═══════════════════════════════════════════════════════════
    BASE_DIR = Path(os.getenv("HHH4_BASE_DIR", Path.cwd()))
    DATA_DIR = BASE_DIR / "data"
    OUTPUT_DIR = BASE_DIR / "output"

    # ═══════════════════════════════════════════════════════════
    # Data Source Paths
    # ═══════════════════════════════════════════════════════════
    COUNTS_PATH: Optional[Path] = _optional_path("COUNTS_PATH")
    POPULATION_PATH: Optional[Path] = _optional_path("POPULATION_PATH")
    ADJACENCY_PATH: Optional[Path] = _optional_path("ADJACENCY_PATH")
    MAP_CACHE_PATH: Optional[Path] = _optional_path("MAP_CACHE_PATH")
    SERIES_CACHE_PATH: Optional[Path] = _optional_path("SERIES_CACHE_PATH")

    # Remote sources (read-only, no retry)
    GEOJSON_URL: Optional[str] = os.getenv("GEOJSON_URL") or None
    TEMPERATURE_URL: Optional[str] = os.getenv("TEMPERATURE_URL") or None
    MAP_UNIT_COLUMN = os.getenv("MAP_UNIT_COLUMN", "unit")

    # ═══════════════════════════════════════════════════════════
    # Model Defaults
    # ═══════════════════════════════════════════════════════════
    FREQUENCY = int(os.getenv("FREQUENCY", "12"))
    SEASONAL_HARMONICS = int(os.getenv("SEASONAL_HARMONICS", "1"))
    MAX_LAG = int(os.getenv("MAX_LAG", "5"))
    POWERLAW_MAX_ORDER = int(os.getenv("POWERLAW_MAX_ORDER", "5"))
    FAMILY = os.getenv("FAMILY", "negbin1")

    OPTIMIZER_MAXITER = int(os.getenv("OPTIMIZER_MAXITER", "2000"))
    OPTIMIZER_TOL = float(os.getenv("OPTIMIZER_TOL", "1e-9"))

    # Grid for the profile likelihood of the lag parameter
    PAR_LAG_GRID_MIN = float(os.getenv("PAR_LAG_GRID_MIN", "-3.0"))
    PAR_LAG_GRID_MAX = float(os.getenv("PAR_LAG_GRID_MAX", "3.0"))
    PAR_LAG_GRID_SIZE = int(os.getenv("PAR_LAG_GRID_SIZE", "13"))

    # ═══════════════════════════════════════════════════════════
    # Forecast Evaluation
    # ═══════════════════════════════════════════════════════════
    OSA_REFIT = os.getenv("OSA_REFIT", "rolling")
    OSA_PERIODS = int(os.getenv("OSA_PERIODS", "12"))
    PREDICTIVE_HORIZON = int(os.getenv("PREDICTIVE_HORIZON", "12"))
    PIT_BINS = int(os.getenv("PIT_BINS", "10"))

    # ═══════════════════════════════════════════════════════════
    # Logging
    # ═══════════════════════════════════════════════════════════
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    LOG_FILE = OUTPUT_DIR / "hhh4.log"

    # ═══════════════════════════════════════════════════════════
    # Report Configuration
    # ═══════════════════════════════════════════════════════════
    GENERATE_PLOTS = os.getenv("GENERATE_PLOTS", "true").lower() == "true"
    PLOT_DPI = int(os.getenv("PLOT_DPI", "150"))
    REPORT_FORMAT = os.getenv("REPORT_FORMAT", "markdown,json")  # comma-separated

    @classmethod
    def ensure_directories(cls):
        """Create necessary directories"""
        for dir_path in [cls.DATA_DIR, cls.OUTPUT_DIR]:
            dir_path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def set_data_paths(
        cls,
        counts_path: Optional[Path] = None,
        population_path: Optional[Path] = None,
        adjacency_path: Optional[Path] = None,
        map_cache_path: Optional[Path] = None
    ):
        """Set data source paths"""
        if counts_path:
            cls.COUNTS_PATH = Path(counts_path)
        if population_path:
            cls.POPULATION_PATH = Path(population_path)
        if adjacency_path:
            cls.ADJACENCY_PATH = Path(adjacency_path)
        if map_cache_path:
            cls.MAP_CACHE_PATH = Path(map_cache_path)

    @classmethod
    def load_from_yaml(cls, config_path: str) -> Dict:
        """
        Load a model-sequence description from a YAML file.

        Args:
            config_path: Path to YAML file

        Returns:
            Dictionary with the parsed content
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def validate(cls) -> bool:
        """Validate configuration"""
        errors = []

        if cls.FREQUENCY < 1:
            errors.append("FREQUENCY must be a positive number of periods per year")

        if cls.SEASONAL_HARMONICS < 0:
            errors.append("SEASONAL_HARMONICS cannot be negative")

        if cls.MAX_LAG < 1:
            errors.append("MAX_LAG must be at least 1")

        if cls.POWERLAW_MAX_ORDER < 1:
            errors.append("POWERLAW_MAX_ORDER must be at least 1")

        if cls.FAMILY.lower() not in ("poisson", "negbin1", "negbinm"):
            errors.append(f"Unknown FAMILY: {cls.FAMILY}")

        if cls.OSA_REFIT not in ("rolling", "first", "final"):
            errors.append(f"Unknown OSA_REFIT: {cls.OSA_REFIT}")

        if cls.PAR_LAG_GRID_SIZE < 2 or cls.PAR_LAG_GRID_MIN >= cls.PAR_LAG_GRID_MAX:
            errors.append("Lag parameter grid needs at least two increasing values")

        if cls.MAP_CACHE_PATH is not None and not cls.MAP_CACHE_PATH.exists() and not cls.GEOJSON_URL:
            errors.append("GEOJSON_URL must be set when the map cache does not exist")

        if errors:
            for error in errors:
                logger.error(f"Configuration Error: {error}")
            return False

        return True

    @classmethod
    def summary(cls) -> dict:
        """Return configuration summary"""
        return {
            "data": {
                "counts_path": str(cls.COUNTS_PATH) if cls.COUNTS_PATH else None,
                "population_path": str(cls.POPULATION_PATH) if cls.POPULATION_PATH else None,
                "map_cache_path": str(cls.MAP_CACHE_PATH) if cls.MAP_CACHE_PATH else None,
                "geojson_url": cls.GEOJSON_URL,
                "temperature_url": cls.TEMPERATURE_URL
            },
            "model": {
                "frequency": cls.FREQUENCY,
                "seasonal_harmonics": cls.SEASONAL_HARMONICS,
                "max_lag": cls.MAX_LAG,
                "powerlaw_max_order": cls.POWERLAW_MAX_ORDER,
                "family": cls.FAMILY
            },
            "optimizer": {
                "maxiter": cls.OPTIMIZER_MAXITER,
                "tol": cls.OPTIMIZER_TOL
            },
            "evaluation": {
                "osa_refit": cls.OSA_REFIT,
                "osa_periods": cls.OSA_PERIODS,
                "predictive_horizon": cls.PREDICTIVE_HORIZON,
                "pit_bins": cls.PIT_BINS
            }
        }


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None):
    """Replace the default loguru sink with a stdout sink and an optional file sink"""
    logger.remove()
    logger.add(
        sys.stdout,
        format=HHH4Config.LOG_FORMAT,
        level=level or HHH4Config.LOG_LEVEL
    )
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=HHH4Config.LOG_FORMAT,
            level="DEBUG"
        )


if __name__ == "__main__":
    import json
    print("Endemic-Epidemic Modelling Configuration")
    print("=" * 60)
    print(json.dumps(HHH4Config.summary(), indent=2))
    print("\nValidation:", "PASSED" if HHH4Config.validate() else "FAILED")
