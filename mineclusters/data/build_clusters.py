"""Build mining clusters: distance matrices, threshold search and final assignment."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from mineclusters.config import (
    CACHE_DIR,
    GENERATIONS,
    GROUP_COLUMN,
    MUTATION_SCALE,
    POPULATION_SIZE,
    SEED,
    THRESHOLD_LOWER_M,
    THRESHOLD_UPPER_M,
    ComputeConfig,
)
from mineclusters.data.distance_matrix import DistanceMatrix, compute_or_load
from mineclusters.data.spatial_ops import (
    Feature,
    GeometryKind,
    features_from_frame,
    group_features,
    load_commodity_points,
    load_mining_polygons,
    safe_group_name,
)
from mineclusters.errors import DataIntegrityError
from mineclusters.models.cluster import ClusterResult, cluster_groups
from mineclusters.models.elbow import find_elbow
from mineclusters.models.fitness import FitnessVector, evaluate, summarize_clusters
from mineclusters.models.optimize import ParetoFront, optimize

LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    Path("logs").mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename="logs/build_clusters.log",
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class GroupMatrices:
    groups: Dict[str, List[Feature]]
    matrices: Dict[str, Optional[DistanceMatrix]] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def keys(self) -> List[str]:
        return [key for key in self.groups if key not in self.failed]

    @property
    def features(self) -> List[Feature]:
        return [f for key in self.keys for f in self.groups[key]]


def load_features(polygons_path: Path, points_path: Optional[Path], group_col: str = GROUP_COLUMN) -> List[Feature]:
    """Stage 1: load polygon footprints and commodity points as Feature records."""

    LOGGER.info("Loading mining polygons from %s", polygons_path)
    polygons = load_mining_polygons(str(polygons_path), group_col=group_col)
    features = features_from_frame(polygons, GeometryKind.POLYGON, commodity_col=None)
    if points_path is not None:
        LOGGER.info("Loading commodity points from %s", points_path)
        points = load_commodity_points(str(points_path), group_col=group_col)
        features += features_from_frame(points, GeometryKind.POINT, area_col=None)
    ids = pd.Series([f.id for f in features])
    if ids.duplicated().any():
        raise ValueError(f"Feature ids must be unique across polygons and points. Sample: {ids[ids.duplicated()].head(10).tolist()}")
    LOGGER.info("Loaded %d features", len(features))
    return features


def _check_cache_names(keys) -> None:
    seen: Dict[str, str] = {}
    for key in keys:
        name = safe_group_name(key)
        if name in seen:
            raise DataIntegrityError(
                f"Group keys {seen[name]!r} and {key!r} share the cache file name {name!r}; rename one of them."
            )
        seen[name] = key


def build_distance_matrices(
    features: List[Feature],
    cache_dir: Path,
    compute: ComputeConfig = ComputeConfig(),
) -> GroupMatrices:
    """Stage 2: one distance matrix per group; a failing group does not stop the others."""

    result = GroupMatrices(groups=group_features(features))
    _check_cache_names(result.groups)
    for key, members in result.groups.items():
        LOGGER.info("Group %s: %d features", key, len(members))
        try:
            result.matrices[key] = compute_or_load(members, key, cache_dir, compute=compute)
        except Exception as exc:
            LOGGER.exception("Group %s: distance matrix failed; group skipped.", key)
            result.failed[key] = f"{exc.__class__.__name__}: {exc}"
    return result


def make_fitness_fn(data: GroupMatrices, normalize: bool = False):
    keys = data.keys
    features = data.features

    def fitness(threshold: float) -> FitnessVector:
        partition = cluster_groups(data.groups, data.matrices, threshold, keys=keys).hierarchical
        return evaluate(partition, features, normalize=normalize)

    return fitness


def search_threshold(
    data: GroupMatrices,
    lower: float = THRESHOLD_LOWER_M,
    upper: float = THRESHOLD_UPPER_M,
    population_size: int = POPULATION_SIZE,
    generations: int = GENERATIONS,
    mutation_scale: float = MUTATION_SCALE,
    seed: Optional[int] = SEED,
    compute: ComputeConfig = ComputeConfig(),
) -> ParetoFront:
    """Stage 3: Pareto front of thresholds over the pooled fitness of all groups."""

    return optimize(
        make_fitness_fn(data),
        lower,
        upper,
        population_size,
        generations,
        mutation_scale=mutation_scale,
        seed=seed,
        compute=compute,
    )


def assign_clusters(data: GroupMatrices, threshold: float) -> pd.DataFrame:
    """Stage 4: final hierarchical and density cluster ids per feature."""

    result: ClusterResult = cluster_groups(data.groups, data.matrices, threshold, keys=data.keys)
    return pd.DataFrame(
        {
            "id": [f.id for f in data.features],
            "group_key": [f.group_key for f in data.features],
            "dataset_kind": [f.dataset_kind.value for f in data.features],
            "hierarchical_cluster": [result.hierarchical[f.id] for f in data.features],
            "density_cluster": [result.density[f.id] for f in data.features],
        }
    )


def persist_outputs(
    data: GroupMatrices,
    clusters: pd.DataFrame,
    front: ParetoFront,
    threshold: float,
    output_dir: Path,
) -> Dict[str, Path]:
    """Stage 5: write cluster tables, the Pareto front and a run report."""

    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "clusters": output_dir / "clusters.csv",
        "summary": output_dir / "cluster_summary.csv",
        "pareto": output_dir / "pareto_front.csv",
        "history": output_dir / "optimization_history.csv",
        "report": output_dir / "build_clusters_report.json",
    }
    partition = dict(zip(clusters["id"], clusters["hierarchical_cluster"]))
    summary = summarize_clusters(partition, data.features)

    clusters.to_csv(paths["clusters"], index=False)
    summary.to_csv(paths["summary"], index=False)
    front.to_frame().to_csv(paths["pareto"], index=False)
    front.history_frame().to_csv(paths["history"], index=False)

    fitness = evaluate(partition, data.features)
    report = {
        "rows": int(len(clusters)),
        "groups": len(data.groups),
        "failed_groups": data.failed,
        "threshold": float(threshold),
        "clusters": int(len(summary)),
        "fitness": fitness._asdict(),
        "pareto_points": len(front),
    }
    paths["report"].write_text(json.dumps(report, indent=2), encoding="utf-8")
    return paths


def build_clusters(
    polygons_path: Path,
    points_path: Optional[Path],
    output_dir: Path,
    cache_dir: Path = CACHE_DIR,
    lower: float = THRESHOLD_LOWER_M,
    upper: float = THRESHOLD_UPPER_M,
    population_size: int = POPULATION_SIZE,
    generations: int = GENERATIONS,
    threshold: Optional[float] = None,
    seed: Optional[int] = SEED,
    compute: ComputeConfig = ComputeConfig(),
    group_col: str = GROUP_COLUMN,
) -> pd.DataFrame:
    """Thin orchestrator: call stages 1→5."""

    features = load_features(polygons_path, points_path, group_col=group_col)
    data = build_distance_matrices(features, cache_dir, compute=compute)
    front = search_threshold(
        data,
        lower=lower,
        upper=upper,
        population_size=population_size,
        generations=generations,
        seed=seed,
        compute=compute,
    )
    if threshold is None:
        threshold = find_elbow(front).threshold
        LOGGER.info("Elbow threshold: %.1f m", threshold)
    clusters = assign_clusters(data, threshold)
    persist_outputs(data, clusters, front, threshold, output_dir)
    print(
        f"OK: {len(clusters)} features | {len(data.keys)} groups ({len(data.failed)} failed) | "
        f"threshold={threshold:.1f} m | pareto points={len(front)}"
    )
    return clusters


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cluster mining features and tune the distance threshold.")
    parser.add_argument("--polygons", type=Path, default=Path("data/raw/mining_polygons.geojson"))
    parser.add_argument("--points", type=Path, default=Path("data/raw/commodity_points.geojson"))
    parser.add_argument("--output-dir", type=Path, default=Path("data/processed"))
    parser.add_argument("--cache-dir", type=Path, default=CACHE_DIR)
    parser.add_argument("--group-col", type=str, default=GROUP_COLUMN, help="Column holding the group key.")
    parser.add_argument("--lower", type=float, default=THRESHOLD_LOWER_M, help="Lower threshold bound (m).")
    parser.add_argument("--upper", type=float, default=THRESHOLD_UPPER_M, help="Upper threshold bound (m).")
    parser.add_argument("--population", type=int, default=POPULATION_SIZE)
    parser.add_argument("--generations", type=int, default=GENERATIONS)
    parser.add_argument("--threshold", type=float, default=None, help="Use this threshold instead of the elbow.")
    parser.add_argument("--n-jobs", type=int, default=-1)
    parser.add_argument("--seed", type=int, default=SEED)
    return parser.parse_args()


def main() -> None:
    _configure_logging()
    args = parse_args()
    if not args.polygons.exists():
        raise FileNotFoundError(f"Missing mining polygons at {args.polygons}. Run scripts/create_mock_mines.py.")
    points = args.points if args.points.exists() else None
    if points is None:
        LOGGER.warning("No commodity points at %s; every cluster will be Unknown.", args.points)

    build_clusters(
        polygons_path=args.polygons,
        points_path=points,
        output_dir=args.output_dir,
        cache_dir=args.cache_dir,
        lower=args.lower,
        upper=args.upper,
        population_size=args.population,
        generations=args.generations,
        threshold=args.threshold,
        seed=args.seed,
        compute=ComputeConfig(n_jobs=args.n_jobs),
        group_col=args.group_col,
    )


if __name__ == "__main__":
    main()
