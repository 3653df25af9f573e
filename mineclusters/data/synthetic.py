"""Create mock mining polygons and commodity points with spatial structure."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import geopandas as gpd
import numpy as np
from shapely.geometry import Point, box

from mineclusters.config import CRS
from mineclusters.data.spatial_ops import Feature, GeometryKind, geodesic_area_km2

LOGGER = logging.getLogger(__name__)

# (group key, lon, lat) of mining districts
DEFAULT_HUBS: Tuple[Tuple[str, float, float], ...] = (
    ("AUS", 121.5, -30.7),
    ("AUS", 117.8, -22.6),
    ("BRA", -43.9, -20.1),
    ("PER", -76.3, -10.6),
)

COMMODITIES: Tuple[str, ...] = ("Gold", "Copper", "Iron ore", "Zinc", "Coal")

# Meters per degree of latitude
METERS_PER_DEGREE = 111_320.0


def make_synthetic_features(
    n_sites: int = 40,
    seed: int = 42,
    hubs: Sequence[Tuple[str, float, float]] = DEFAULT_HUBS,
    spread_m: float = 8000.0,
    point_share: float = 0.6,
) -> List[Feature]:
    """Mine polygons scattered around hubs, with commodity points inside some of them.

    Each site is a small rectangle; with probability ``point_share`` a commodity point is
    placed at its centre carrying one or two commodities, the rest stay without commodity
    information.
    """

    rng = np.random.default_rng(seed)
    features: List[Feature] = []
    hub_idx = rng.integers(0, len(hubs), size=n_sites)
    for site in range(n_sites):
        group_key, hub_lon, hub_lat = hubs[hub_idx[site]]
        offset = rng.normal(0.0, spread_m, size=2) / METERS_PER_DEGREE
        lon = hub_lon + offset[0] / max(np.cos(np.radians(hub_lat)), 0.1)
        lat = hub_lat + offset[1]
        half = rng.uniform(200.0, 900.0) / METERS_PER_DEGREE
        footprint = box(lon - half, lat - half, lon + half, lat + half)
        features.append(
            Feature(
                id=f"P{site:04d}",
                geometry=footprint,
                group_key=group_key,
                dataset_kind=GeometryKind.POLYGON,
                area=geodesic_area_km2(footprint),
            )
        )
        if rng.random() < point_share:
            n_commodities = 1 if rng.random() < 0.7 else 2
            commodities = rng.choice(COMMODITIES, size=n_commodities, replace=False)
            features.append(
                Feature(
                    id=f"M{site:04d}",
                    geometry=Point(lon, lat),
                    group_key=group_key,
                    dataset_kind=GeometryKind.POINT,
                    commodity_list=frozenset(str(c) for c in commodities),
                )
            )
    LOGGER.info("Created %d mock features around %d hubs", len(features), len(hubs))
    return features


def features_to_frames(features: Sequence[Feature]) -> Dict[str, gpd.GeoDataFrame]:
    """Split features into the polygon and point tables the pipeline loads."""

    polygons = [f for f in features if f.dataset_kind is GeometryKind.POLYGON]
    points = [f for f in features if f.dataset_kind is GeometryKind.POINT]
    polygon_gdf = gpd.GeoDataFrame(
        {
            "feature_id": [f.id for f in polygons],
            "ISO3_CODE": [f.group_key for f in polygons],
            "area": [f.area for f in polygons],
        },
        geometry=[f.geometry for f in polygons],
        crs=CRS.wgs84,
    )
    point_gdf = gpd.GeoDataFrame(
        {
            "feature_id": [f.id for f in points],
            "ISO3_CODE": [f.group_key for f in points],
            "list_of_commodities": [",".join(sorted(f.commodity_list)) for f in points],
        },
        geometry=[f.geometry for f in points],
        crs=CRS.wgs84,
    )
    return {"polygons": polygon_gdf, "points": point_gdf}
