"""Single-linkage and density partitions of a group from its distance matrix."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.cluster import DBSCAN

from mineclusters.data.distance_matrix import DistanceMatrix, validate_matrix
from mineclusters.data.spatial_ops import Feature
from mineclusters.errors import ConfigurationError, DataIntegrityError

LOGGER = logging.getLogger(__name__)

Partition = Dict[str, int]


@dataclass(frozen=True)
class ClusterResult:
    hierarchical: Partition
    density: Partition


def _check_threshold(threshold: float) -> float:
    threshold = float(threshold)
    if not np.isfinite(threshold) or threshold < 0:
        raise ConfigurationError(f"Clustering threshold must be a finite, non-negative distance; got {threshold}.")
    return threshold


def hierarchical_labels(values: np.ndarray, threshold: float) -> np.ndarray:
    """Cut a single-linkage tree at ``threshold``; labels start at 1."""

    condensed = squareform(values, checks=False)
    tree = linkage(condensed, method="single")
    return fcluster(tree, t=threshold, criterion="distance")


def density_labels(values: np.ndarray, threshold: float) -> np.ndarray:
    """DBSCAN with one-sample neighbourhoods, so every feature seeds or joins a cluster."""

    # DBSCAN rejects eps == 0; the smallest positive float gives the same neighbourhoods.
    eps = max(threshold, np.finfo(float).tiny)
    labels = DBSCAN(eps=eps, min_samples=1, metric="precomputed").fit_predict(values)
    if (labels < 0).any():
        raise DataIntegrityError("Density clustering left features unclustered.")
    return labels + 1


def cluster(
    distance_matrix: Optional[DistanceMatrix],
    threshold: float,
    feature_ids: Sequence[str] = (),
) -> ClusterResult:
    """Partition one group at ``threshold`` meters.

    ``feature_ids`` is only consulted when there is no matrix (groups of one feature).
    Cluster ids are fresh on every call; only which features share an id matters.
    """

    threshold = _check_threshold(threshold)
    if distance_matrix is None:
        ids = list(feature_ids)
        if len(ids) > 1:
            raise DataIntegrityError(f"Missing distance matrix for a group of {len(ids)} features.")
        trivial = {str(fid): 1 for fid in ids}
        return ClusterResult(hierarchical=trivial, density=dict(trivial))

    validate_matrix(distance_matrix.frame, label=distance_matrix.group_key)
    ids = distance_matrix.ids
    values = distance_matrix.values
    hierarchical = hierarchical_labels(values, threshold)
    density = density_labels(values, threshold)
    LOGGER.debug(
        "Group %s at %.1f m: %d hierarchical / %d density clusters",
        distance_matrix.group_key,
        threshold,
        len(set(hierarchical)),
        len(set(density)),
    )
    return ClusterResult(
        hierarchical={fid: int(label) for fid, label in zip(ids, hierarchical)},
        density={fid: int(label) for fid, label in zip(ids, density)},
    )


def cluster_groups(
    groups: Mapping[str, Sequence[Feature]],
    matrices: Mapping[str, Optional[DistanceMatrix]],
    threshold: float,
    keys: Optional[Iterable[str]] = None,
) -> ClusterResult:
    """Cluster every group at the same threshold and merge the partitions."""

    hierarchical: Partition = {}
    density: Partition = {}
    for key in keys if keys is not None else groups.keys():
        result = cluster(matrices.get(key), threshold, feature_ids=[f.id for f in groups[key]])
        hierarchical.update(result.hierarchical)
        density.update(result.density)
    return ClusterResult(hierarchical=hierarchical, density=density)
