"""Feature records, loaders and pairwise geometric distance for mining clusters."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import pyproj
from pyproj import Geod, Transformer
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry
from shapely.ops import nearest_points

from mineclusters.config import COMMODITY_SEPARATOR, CRS, GROUP_COLUMN
from mineclusters.errors import DataIntegrityError

LOGGER = logging.getLogger(__name__)

GEOD = Geod(ellps=CRS.ellipsoid)


class GeometryKind(str, enum.Enum):
    POINT = "point"
    POLYGON = "polygon"


_ALLOWED_TYPES = {
    GeometryKind.POINT: {"Point", "MultiPoint"},
    GeometryKind.POLYGON: {"Polygon", "MultiPolygon"},
}


@dataclass(frozen=True)
class Feature:
    """A mining site footprint (polygon) or a commodity-bearing location (point)."""

    id: str
    geometry: BaseGeometry
    group_key: str
    dataset_kind: GeometryKind
    commodity_list: frozenset = field(default_factory=frozenset)
    area: float = 0.0

    def __post_init__(self) -> None:
        kind = GeometryKind(self.dataset_kind)
        object.__setattr__(self, "dataset_kind", kind)
        object.__setattr__(self, "commodity_list", frozenset(self.commodity_list))
        if self.geometry is None or self.geometry.is_empty:
            raise DataIntegrityError(f"Feature {self.id!r} has an empty geometry.")
        if self.geometry.geom_type not in _ALLOWED_TYPES[kind]:
            raise DataIntegrityError(
                f"Feature {self.id!r} is declared {kind.value} but has a {self.geometry.geom_type} geometry."
            )
        if not self.geometry.is_valid:
            raise DataIntegrityError(f"Feature {self.id!r} has an invalid geometry.")
        if not np.isfinite(self.area) or self.area < 0:
            raise DataIntegrityError(f"Feature {self.id!r} has a negative or non-finite area: {self.area}")


def _ensure_crs(gdf: gpd.GeoDataFrame, target_crs: str) -> gpd.GeoDataFrame:
    if gdf.crs is None:
        raise ValueError("GeoDataFrame missing CRS; please set a CRS before operations.")
    if gdf.crs.to_string() != target_crs:
        return gdf.to_crs(target_crs)
    return gdf


def _find_column(gdf: pd.DataFrame, candidates: Iterable[str]) -> Optional[str]:
    lower_map = {col.lower(): col for col in gdf.columns}
    return next((lower_map.get(c.lower()) for c in candidates if c.lower() in lower_map), None)


def _normalize_columns(gdf: gpd.GeoDataFrame, mapping: Dict[str, Iterable[str]], required: Iterable[str]) -> gpd.GeoDataFrame:
    renames = {}
    for target, candidates in mapping.items():
        source = _find_column(gdf, candidates)
        if source:
            renames[source] = target
    gdf = gdf.rename(columns=renames)
    missing = [col for col in required if col not in gdf.columns]
    if missing:
        raise ValueError(f"Could not find required columns {missing}; available: {list(gdf.columns)}")
    return gdf


def parse_commodities(value, separator: str = COMMODITY_SEPARATOR) -> frozenset:
    """Split a delimited commodity string into a set of clean names."""

    if value is None:
        return frozenset()
    if isinstance(value, (set, frozenset, list, tuple)):
        items = value
    else:
        if pd.isna(value):
            return frozenset()
        items = str(value).split(separator)
    return frozenset(str(item).strip() for item in items if str(item).strip())


def geodesic_area_km2(geometry: BaseGeometry) -> float:
    """Ellipsoidal area of a lon/lat polygon in square kilometers."""

    area, _ = GEOD.geometry_area_perimeter(geometry)
    return abs(area) / 1_000_000.0


def load_mining_polygons(path: str, group_col: str = GROUP_COLUMN) -> gpd.GeoDataFrame:
    """Load mine footprint polygons and normalize column names."""

    gdf = gpd.read_file(path)
    gdf = _normalize_columns(
        gdf,
        {
            "id": ("id", "feature_id", "fid"),
            "group_key": (group_col, "group_key", "iso3", "country"),
            "area": ("area", "area_km2", "area_sq_km"),
        },
        required=("id", "group_key"),
    )
    if gdf.crs is None:
        gdf = gdf.set_crs(CRS.wgs84)
    gdf = _ensure_crs(gdf, CRS.wgs84)
    if "area" not in gdf:
        gdf["area"] = gdf.geometry.apply(geodesic_area_km2)
    gdf["id"] = gdf["id"].astype(str).str.strip()
    gdf["group_key"] = gdf["group_key"].astype(str).str.strip()
    return gdf[["id", "group_key", "area", "geometry"]].copy()


def load_commodity_points(path: str, group_col: str = GROUP_COLUMN) -> gpd.GeoDataFrame:
    """Load commodity-bearing mine locations and normalize column names.

    CSV tables with `lat`/`lon` columns are accepted as well as vector files.
    """

    if str(path).lower().endswith(".csv"):
        gdf = make_points_from_latlon(pd.read_csv(path))
    else:
        gdf = gpd.read_file(path)
    gdf = _normalize_columns(
        gdf,
        {
            "id": ("id", "feature_id", "fid"),
            "group_key": (group_col, "group_key", "iso3", "country"),
            "commodity": ("commodity", "list_of_commodities", "commodities", "primary_commodity"),
        },
        required=("id", "group_key"),
    )
    if "commodity" not in gdf:
        gdf["commodity"] = None
    if gdf.crs is None:
        gdf = gdf.set_crs(CRS.wgs84)
    gdf = _ensure_crs(gdf, CRS.wgs84)
    gdf["id"] = gdf["id"].astype(str).str.strip()
    gdf["group_key"] = gdf["group_key"].astype(str).str.strip()
    return gdf[["id", "group_key", "commodity", "geometry"]].copy()


def features_from_frame(
    gdf: gpd.GeoDataFrame,
    kind: GeometryKind,
    id_col: str = "id",
    group_col: str = "group_key",
    commodity_col: Optional[str] = "commodity",
    area_col: Optional[str] = "area",
) -> List[Feature]:
    """Turn a normalized GeoDataFrame into immutable Feature records."""

    if gdf[id_col].duplicated().any():
        dup = gdf.loc[gdf[id_col].duplicated(), id_col].head(10).tolist()
        raise DataIntegrityError(f"Duplicate feature ids found. Sample duplicates: {dup}")
    has_commodity = commodity_col is not None and commodity_col in gdf
    has_area = area_col is not None and area_col in gdf
    features = []
    for row in gdf.itertuples(index=False):
        record = row._asdict()
        features.append(
            Feature(
                id=str(record[id_col]),
                geometry=record["geometry"],
                group_key=str(record[group_col]),
                dataset_kind=kind,
                commodity_list=parse_commodities(record[commodity_col]) if has_commodity else frozenset(),
                area=float(record[area_col]) if has_area and pd.notna(record[area_col]) else 0.0,
            )
        )
    return features


def group_features(features: Iterable[Feature]) -> Dict[str, List[Feature]]:
    """Split features by group key, keeping their original order within each group."""

    groups: Dict[str, List[Feature]] = {}
    for feature in features:
        groups.setdefault(feature.group_key, []).append(feature)
    return groups


def safe_group_name(group_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", str(group_key)).strip("._") or "group"


def make_points_from_latlon(df: pd.DataFrame, lat_col: str = "lat", lon_col: str = "lon") -> gpd.GeoDataFrame:
    """Create GeoDataFrame from lat/lon."""

    if lat_col not in df or lon_col not in df:
        raise ValueError(f"Missing lat/lon columns: {lat_col}, {lon_col}.")
    geometry = [Point(xy) for xy in zip(df[lon_col], df[lat_col])]
    return gpd.GeoDataFrame(df.copy(), geometry=geometry, crs=CRS.wgs84)


# Pairwise distance -----------------------------------------------------------


def local_metric_crs(center: BaseGeometry) -> pyproj.CRS:
    """Azimuthal equidistant CRS centred on ``center``; distances from the centre are exact."""

    c = center.centroid
    return pyproj.CRS.from_proj4(f"+proj=aeqd +lat_0={c.y} +lon_0={c.x} +datum=WGS84 +units=m +no_defs")


class LocalFrame:
    """Geometries projected into a metric plane centred on one origin geometry.

    The plane follows the ellipsoid around the origin at any latitude and across the
    antimeridian, so nearest points picked in it are the geodesic nearest points.
    """

    def __init__(self, center: BaseGeometry, geometries: Sequence[BaseGeometry]) -> None:
        crs = local_metric_crs(center)
        self.geometries = list(gpd.GeoSeries(list(geometries), crs=CRS.wgs84).to_crs(crs))
        self._to_lonlat = Transformer.from_crs(crs, CRS.wgs84, always_xy=True)

    def geodesic_length(self, a: Point, b: Point) -> float:
        lons, lats = self._to_lonlat.transform([a.x, b.x], [a.y, b.y])
        _, _, dist = GEOD.inv(lons[0], lats[0], lons[1], lats[1])
        return float(dist)


def _geodesic_between_points(a: Point, b: Point) -> float:
    _, _, dist = GEOD.inv(a.x, a.y, b.x, b.y)
    return float(dist)


def _separation(a: BaseGeometry, b: BaseGeometry, frame: Optional[LocalFrame]) -> float:
    if a.intersects(b):
        return 0.0
    if frame is None:
        return float(a.distance(b))
    near_a, near_b = nearest_points(a, b)
    return frame.geodesic_length(near_a, near_b)


def _point_point(a, b, local_a, local_b, frame: Optional[LocalFrame]) -> float:
    if frame is not None and a.geom_type == "Point" and b.geom_type == "Point":
        return _geodesic_between_points(a, b)
    return _separation(local_a, local_b, frame)


def _point_polygon(a, b, local_a, local_b, frame: Optional[LocalFrame]) -> float:
    return _separation(local_a, local_b, frame)


def _polygon_polygon(a, b, local_a, local_b, frame: Optional[LocalFrame]) -> float:
    return _separation(local_a, local_b, frame)


# (lon/lat a, lon/lat b, projected a, projected b, frame or None for planar)
DistanceFn = Callable[[BaseGeometry, BaseGeometry, BaseGeometry, BaseGeometry, Optional[LocalFrame]], float]

PAIRWISE_DISTANCE: Dict[frozenset, DistanceFn] = {
    frozenset({GeometryKind.POINT}): _point_point,
    frozenset({GeometryKind.POINT, GeometryKind.POLYGON}): _point_polygon,
    frozenset({GeometryKind.POLYGON}): _polygon_polygon,
}


def pairwise_distance(
    a: BaseGeometry,
    a_kind: GeometryKind,
    b: BaseGeometry,
    b_kind: GeometryKind,
    geodesic: bool = True,
) -> float:
    """Minimum separation between two geometries, in meters when geodesic."""

    frame = LocalFrame(a, [a, b]) if geodesic else None
    local_a, local_b = frame.geometries if frame is not None else (a, b)
    return PAIRWISE_DISTANCE[frozenset({a_kind, b_kind})](a, b, local_a, local_b, frame)


def distances_from(
    index: int,
    geometries: Sequence[BaseGeometry],
    kinds: Sequence[GeometryKind],
    geodesic: bool = True,
) -> np.ndarray:
    """Distances from one geometry to every geometry of the group.

    Geodesic rows are measured in a plane centred on the origin geometry, projected once
    per row.
    """

    origin = geometries[index]
    if origin is None or origin.is_empty or not origin.is_valid:
        raise DataIntegrityError(f"Degenerate geometry at position {index}.")
    frame = LocalFrame(origin, geometries) if geodesic else None
    local = frame.geometries if frame is not None else list(geometries)
    row = np.empty(len(geometries), dtype=float)
    for j, (other, other_kind) in enumerate(zip(geometries, kinds)):
        if j == index:
            row[j] = 0.0
            continue
        distance_fn = PAIRWISE_DISTANCE[frozenset({kinds[index], other_kind})]
        row[j] = distance_fn(origin, other, local[index], local[j], frame)
    if not np.isfinite(row).all() or (row < 0).any():
        raise DataIntegrityError(f"Non-finite or negative distance computed from position {index}.")
    return row
