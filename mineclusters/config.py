"""Project-wide configuration constants."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import joblib

from mineclusters.errors import ConfigurationError


@dataclass(frozen=True)
class CRSConfig:
    """Centralized CRS configuration."""

    wgs84: str = "EPSG:4326"
    ellipsoid: str = "WGS84"


CRS = CRSConfig()


@dataclass(frozen=True)
class ComputeConfig:
    """Worker settings threaded into the parallel stages."""

    n_jobs: int = -1
    distance_backend: str = "loky"
    fitness_backend: str = "threading"

    def resolved_n_jobs(self) -> int:
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be a positive count or negative (relative to cpu_count).")
        if self.n_jobs < 0:
            return max(1, joblib.cpu_count() + 1 + self.n_jobs)
        return self.n_jobs


# Threshold search defaults (meters)
THRESHOLD_LOWER_M = 1000.0
THRESHOLD_UPPER_M = 15000.0
POPULATION_SIZE = 20
GENERATIONS = 10
MUTATION_SCALE = 0.1
SEED = 42

# Inputs and cache
CACHE_DIR = Path("data/cache")
GROUP_COLUMN = "ISO3_CODE"
COMMODITY_SEPARATOR = ","
