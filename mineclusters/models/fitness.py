"""Cluster quality objectives: area left without a commodity and area shared by several."""

from __future__ import annotations

import logging
from typing import Mapping, NamedTuple, Sequence

import pandas as pd

from mineclusters.data.spatial_ops import Feature, GeometryKind
from mineclusters.errors import DataIntegrityError

LOGGER = logging.getLogger(__name__)

UNKNOWN = "Unknown"
SINGLE_HOST = "Single host"
COMPANION = "Companion"


class FitnessVector(NamedTuple):
    unknown_area: float
    companion_area: float

    @classmethod
    def zero(cls) -> "FitnessVector":
        return cls(0.0, 0.0)


def classify_commodities(commodities: frozenset) -> str:
    if not commodities:
        return UNKNOWN
    if len(commodities) == 1:
        return SINGLE_HOST
    return COMPANION


def _membership(partition: Mapping[str, int], features: Sequence[Feature]) -> pd.DataFrame:
    missing = [f.id for f in features if f.id not in partition]
    if missing:
        raise DataIntegrityError(f"{len(missing)} features have no cluster assignment. Sample: {missing[:10]}")
    return pd.DataFrame(
        {
            "group_key": [f.group_key for f in features],
            "cluster_id": [int(partition[f.id]) for f in features],
            "is_polygon": [f.dataset_kind is GeometryKind.POLYGON for f in features],
            "area": [f.area if f.dataset_kind is GeometryKind.POLYGON else 0.0 for f in features],
            "commodities": [f.commodity_list for f in features],
        }
    )


def summarize_clusters(partition: Mapping[str, int], features: Sequence[Feature]) -> pd.DataFrame:
    """One row per (group_key, cluster_id) with its area, commodities and class."""

    columns = [
        "group_key",
        "cluster_id",
        "n_features",
        "n_polygons",
        "n_points",
        "area",
        "commodities",
        "commodity_class",
    ]
    if not features:
        return pd.DataFrame(columns=columns)

    members = _membership(partition, features)
    grouped = members.groupby(["group_key", "cluster_id"], sort=True)
    summary = grouped.agg(
        n_features=("is_polygon", "size"),
        n_polygons=("is_polygon", "sum"),
        area=("area", "sum"),
        commodities=("commodities", lambda s: "|".join(sorted(frozenset().union(*s)))),
        commodity_class=("commodities", lambda s: classify_commodities(frozenset().union(*s))),
    ).reset_index()
    summary["n_polygons"] = summary["n_polygons"].astype(int)
    summary["n_points"] = summary["n_features"] - summary["n_polygons"]
    return summary[columns]


def evaluate(partition: Mapping[str, int], features: Sequence[Feature], normalize: bool = False) -> FitnessVector:
    """Fitness of a partition; both objectives are minimized.

    Parameters
    ----------
    partition : feature id -> cluster id (ids need only be unique within a group)
    features : features carrying ``commodity_list`` (points) and ``area`` (polygons)
    normalize : report shares of the total polygon area instead of absolute areas
    """

    summary = summarize_clusters(partition, features)
    if summary.empty:
        return FitnessVector.zero()

    unknown_area = float(summary.loc[summary["commodity_class"] == UNKNOWN, "area"].sum())
    companion_area = float(summary.loc[summary["commodity_class"] == COMPANION, "area"].sum())
    if normalize:
        total_area = float(summary["area"].sum())
        if total_area <= 0:
            return FitnessVector.zero()
        return FitnessVector(unknown_area / total_area, companion_area / total_area)
    return FitnessVector(unknown_area, companion_area)
