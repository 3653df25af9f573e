"""Per-group pairwise distance matrices computed in parallel and cached on disk.

The cache is keyed only by group key: when ``<cache_dir>/dist_matrix/<key>.joblib``
exists it is loaded as-is, even if the features of that group have changed since it was
written. Delete the file to force a recomputation.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import joblib
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from mineclusters.config import ComputeConfig
from mineclusters.data.spatial_ops import Feature, distances_from, safe_group_name
from mineclusters.errors import ComputationFailure, DataIntegrityError

LOGGER = logging.getLogger(__name__)

SYMMETRY_TOLERANCE_M = 1e-6


@dataclass(frozen=True)
class DistanceMatrix:
    """Labelled square matrix of distances (meters) between the features of one group."""

    group_key: str
    frame: pd.DataFrame

    @property
    def ids(self) -> List[str]:
        return [str(i) for i in self.frame.index]

    @property
    def values(self) -> np.ndarray:
        return self.frame.to_numpy(dtype=float)

    def __len__(self) -> int:
        return len(self.frame)

    def validate(self) -> "DistanceMatrix":
        validate_matrix(self.frame, label=self.group_key)
        return self


def validate_matrix(frame: pd.DataFrame, label: str = "distance matrix") -> None:
    """Fail fast on anything that is not a symmetric, zero-diagonal, non-negative matrix."""

    values = frame.to_numpy(dtype=float)
    if values.ndim != 2 or values.shape[0] != values.shape[1]:
        raise DataIntegrityError(f"{label}: distance matrix must be square, got shape {values.shape}.")
    if list(frame.index) != list(frame.columns):
        raise DataIntegrityError(f"{label}: row and column labels differ.")
    if frame.index.duplicated().any():
        raise DataIntegrityError(f"{label}: duplicate feature ids in matrix labels.")
    if not np.isfinite(values).all():
        raise DataIntegrityError(f"{label}: distance matrix contains non-finite values.")
    if (values < 0).any():
        raise DataIntegrityError(f"{label}: distance matrix contains negative distances.")
    if not np.allclose(np.diag(values), 0.0, atol=SYMMETRY_TOLERANCE_M):
        raise DataIntegrityError(f"{label}: distance matrix diagonal must be zero.")
    if not np.allclose(values, values.T, rtol=0.0, atol=SYMMETRY_TOLERANCE_M):
        raise DataIntegrityError(f"{label}: distance matrix is not symmetric.")


def dist_matrix_path(cache_dir: Path, group_key: str) -> Path:
    return Path(cache_dir) / "dist_matrix" / f"{safe_group_name(group_key)}.joblib"


def load_distance_matrix(path: Path, group_key: str) -> DistanceMatrix:
    frame = joblib.load(path)
    if not isinstance(frame, pd.DataFrame):
        raise DataIntegrityError(f"Cached distance matrix at {path} is not a labelled DataFrame.")
    return DistanceMatrix(group_key=group_key, frame=frame).validate()


def _persist(frame: pd.DataFrame, path: Path) -> None:
    # Write next to the target and rename, so readers never see a partial file.
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    os.close(fd)
    try:
        joblib.dump(frame, tmp_name)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def compute_distance_frame(
    features: Sequence[Feature],
    group_key: str,
    compute: ComputeConfig = ComputeConfig(),
    geodesic: bool = True,
) -> pd.DataFrame:
    """Compute the full matrix, one parallel task per feature row."""

    geometries = [f.geometry for f in features]
    kinds = [f.dataset_kind for f in features]
    try:
        rows = Parallel(n_jobs=compute.resolved_n_jobs(), backend=compute.distance_backend)(
            delayed(distances_from)(i, geometries, kinds, geodesic) for i in range(len(features))
        )
    except Exception as exc:
        raise ComputationFailure(group_key, f"{exc.__class__.__name__}: {exc}") from exc

    values = np.vstack(rows)
    values = np.minimum(values, values.T)
    np.fill_diagonal(values, 0.0)
    ids = [f.id for f in features]
    return pd.DataFrame(values, index=ids, columns=ids)


def compute_or_load(
    features: Sequence[Feature],
    group_key: str,
    cache_dir: Path,
    compute: ComputeConfig = ComputeConfig(),
    geodesic: bool = True,
) -> Optional[DistanceMatrix]:
    """Return the group's distance matrix, computing and caching it on first use.

    Parameters
    ----------
    features : ordered features of a single group
    group_key : key shared by every feature; also the cache file name
    cache_dir : root directory; matrices live in ``cache_dir/dist_matrix``
    compute : worker settings for the row computation
    geodesic : ellipsoidal distances for lon/lat data, planar CRS units otherwise

    Returns ``None`` for groups with fewer than two features.
    """

    mismatched = sorted({f.group_key for f in features if f.group_key != group_key})
    if mismatched:
        raise DataIntegrityError(f"Features with group keys {mismatched} passed for group {group_key!r}.")

    path = dist_matrix_path(cache_dir, group_key)
    path.parent.mkdir(parents=True, exist_ok=True)

    if len(features) < 2:
        LOGGER.debug("Group %s has %d feature(s); no distance matrix.", group_key, len(features))
        return None

    if path.exists():
        LOGGER.info("Group %s: reusing cached distance matrix %s", group_key, path)
        return load_distance_matrix(path, group_key)

    LOGGER.info("Group %s: computing %d x %d distance matrix", group_key, len(features), len(features))
    frame = compute_distance_frame(features, group_key, compute=compute, geodesic=geodesic)
    matrix = DistanceMatrix(group_key=group_key, frame=frame).validate()
    _persist(frame, path)
    LOGGER.info("Group %s: wrote distance matrix to %s", group_key, path)
    return matrix
