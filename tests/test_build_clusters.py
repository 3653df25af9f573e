"""End-to-end run of the cluster pipeline on synthetic inputs."""

import importlib.util
import json
import logging
import sys

import pytest


if importlib.util.find_spec("geopandas") is None:
    pytest.skip("geopandas not installed", allow_module_level=True)

import pandas as pd  # noqa: E402
from shapely.geometry import Point  # noqa: E402

from mineclusters.config import ComputeConfig  # noqa: E402
from mineclusters.data import build_clusters as pipeline  # noqa: E402
from mineclusters.data.spatial_ops import Feature, GeometryKind  # noqa: E402
from mineclusters.data.synthetic import features_to_frames, make_synthetic_features  # noqa: E402
from mineclusters.errors import ComputationFailure, DataIntegrityError  # noqa: E402

SERIAL = ComputeConfig(n_jobs=1)


def _write_inputs(tmp_path, n_sites=24, seed=42):
    frames = features_to_frames(make_synthetic_features(n_sites=n_sites, seed=seed))
    polygons_path = tmp_path / "mining_polygons.geojson"
    points_path = tmp_path / "commodity_points.geojson"
    frames["polygons"].to_file(polygons_path, driver="GeoJSON")
    frames["points"].to_file(points_path, driver="GeoJSON")
    return polygons_path, points_path, frames


def _run(tmp_path, polygons_path, points_path, **kwargs):
    return pipeline.build_clusters(
        polygons_path=polygons_path,
        points_path=points_path,
        output_dir=tmp_path / "out",
        cache_dir=tmp_path / "cache",
        population_size=6,
        generations=2,
        compute=SERIAL,
        **kwargs,
    )


class TestLoadFeatures:
    def test_polygons_and_points_loaded(self, tmp_path):
        polygons_path, points_path, frames = _write_inputs(tmp_path)
        features = pipeline.load_features(polygons_path, points_path)
        assert len(features) == len(frames["polygons"]) + len(frames["points"])
        points = [f for f in features if f.dataset_kind.value == "point"]
        assert all(f.commodity_list for f in points)
        polygons = [f for f in features if f.dataset_kind.value == "polygon"]
        assert all(f.area > 0 for f in polygons)

    def test_points_are_optional(self, tmp_path):
        polygons_path, _, frames = _write_inputs(tmp_path)
        features = pipeline.load_features(polygons_path, None)
        assert len(features) == len(frames["polygons"])


class TestBuildClusters:
    def test_outputs_written(self, tmp_path):
        polygons_path, points_path, frames = _write_inputs(tmp_path)
        clusters = _run(tmp_path, polygons_path, points_path, threshold=5000.0)

        out = tmp_path / "out"
        for name in [
            "clusters.csv",
            "cluster_summary.csv",
            "pareto_front.csv",
            "optimization_history.csv",
            "build_clusters_report.json",
        ]:
            assert (out / name).exists()
        assert len(clusters) == len(frames["polygons"]) + len(frames["points"])
        assert clusters["hierarchical_cluster"].min() >= 1
        assert clusters["density_cluster"].min() >= 1

        report = json.loads((out / "build_clusters_report.json").read_text(encoding="utf-8"))
        assert report["threshold"] == 5000.0
        assert report["failed_groups"] == {}
        assert set(report["fitness"]) == {"unknown_area", "companion_area"}

        history = pd.read_csv(out / "optimization_history.csv")
        assert len(history) == 6 * 3

    def test_cache_written_per_group(self, tmp_path):
        polygons_path, points_path, frames = _write_inputs(tmp_path)
        _run(tmp_path, polygons_path, points_path, threshold=5000.0)
        cached = sorted(p.stem for p in (tmp_path / "cache" / "dist_matrix").glob("*.joblib"))
        sizes = pd.concat([frames["polygons"]["ISO3_CODE"], frames["points"]["ISO3_CODE"]]).value_counts()
        assert cached == sorted(sizes[sizes >= 2].index)

    def test_elbow_threshold_within_bounds(self, tmp_path):
        polygons_path, points_path, _ = _write_inputs(tmp_path)
        _run(tmp_path, polygons_path, points_path)
        report = json.loads((tmp_path / "out" / "build_clusters_report.json").read_text(encoding="utf-8"))
        assert 1000.0 <= report["threshold"] <= 15000.0

    def test_failed_group_does_not_stop_siblings(self, tmp_path, monkeypatch):
        polygons_path, points_path, frames = _write_inputs(tmp_path)
        real = pipeline.compute_or_load
        broken = sorted(frames["polygons"]["ISO3_CODE"].unique())[-1]

        def _fail_for_one(features, group_key, cache_dir, compute=ComputeConfig()):
            if group_key == broken:
                raise ComputationFailure(group_key, "DataIntegrityError: degenerate geometry")
            return real(features, group_key, cache_dir, compute=compute)

        monkeypatch.setattr(pipeline, "compute_or_load", _fail_for_one)
        clusters = _run(tmp_path, polygons_path, points_path, threshold=5000.0)

        assert broken not in set(clusters["group_key"])
        assert set(clusters["group_key"]) == set(frames["polygons"]["ISO3_CODE"]) - {broken}
        report = json.loads((tmp_path / "out" / "build_clusters_report.json").read_text(encoding="utf-8"))
        assert list(report["failed_groups"]) == [broken]


class TestDistanceStage:
    def test_colliding_cache_names_rejected(self, tmp_path):
        features = [
            Feature(f"{key}-{i}", Point(10.0 + i * 0.01, 5.0), key, GeometryKind.POINT)
            for key in ("A/B", "A_B")
            for i in range(2)
        ]
        with pytest.raises(DataIntegrityError, match="A_B"):
            pipeline.build_distance_matrices(features, tmp_path, compute=SERIAL)
        assert not (tmp_path / "dist_matrix").exists()

    def test_distinct_names_each_get_a_matrix(self, tmp_path):
        features = [
            Feature(f"{key}-{i}", Point(10.0 + i * 0.01, 5.0), key, GeometryKind.POINT)
            for key in ("A/B", "C D")
            for i in range(2)
        ]
        data = pipeline.build_distance_matrices(features, tmp_path, compute=SERIAL)
        assert data.failed == {}
        assert sorted(p.name for p in (tmp_path / "dist_matrix").iterdir()) == ["A_B.joblib", "C_D.joblib"]


def test_missing_points_warns_on_module_logger(tmp_path, monkeypatch, caplog):
    polygons_path = tmp_path / "mining_polygons.geojson"
    polygons_path.write_text("{}", encoding="utf-8")
    calls = []
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        sys,
        "argv",
        ["build_clusters", "--polygons", str(polygons_path), "--points", str(tmp_path / "missing.geojson")],
    )
    monkeypatch.setattr(pipeline, "build_clusters", lambda **kwargs: calls.append(kwargs))

    with caplog.at_level(logging.WARNING):
        pipeline.main()

    assert calls and calls[0]["points_path"] is None
    warnings = [r for r in caplog.records if "No commodity points" in r.getMessage()]
    assert [r.name for r in warnings] == ["mineclusters.data.build_clusters"]
