"""Distance matrix computation, validation and on-disk memoization."""

from __future__ import annotations

import itertools

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Point, Polygon, box

from mineclusters.config import ComputeConfig
from mineclusters.data import distance_matrix as dm
from mineclusters.data.distance_matrix import (
    DistanceMatrix,
    compute_or_load,
    dist_matrix_path,
    validate_matrix,
)
from mineclusters.data.spatial_ops import Feature, GeometryKind
from mineclusters.errors import ComputationFailure, DataIntegrityError

SERIAL = ComputeConfig(n_jobs=1)


def _make_features(n: int = 6, group: str = "AUS", seed: int = 0) -> list:
    rng = np.random.default_rng(seed)
    features = []
    for i in range(n):
        lon, lat = 121.0 + rng.uniform(0, 0.5), -30.0 - rng.uniform(0, 0.5)
        if i % 2:
            features.append(Feature(f"{group}-{i}", Point(lon, lat), group, GeometryKind.POINT))
        else:
            geom = box(lon, lat, lon + 0.01, lat + 0.01)
            features.append(Feature(f"{group}-{i}", geom, group, GeometryKind.POLYGON, area=1.0))
    return features


def _make_points(n: int = 7, group: str = "BRA", seed: int = 1) -> list:
    rng = np.random.default_rng(seed)
    return [
        Feature(f"p{i}", Point(-44.0 + rng.uniform(0, 1), -20.0 + rng.uniform(0, 1)), group, GeometryKind.POINT)
        for i in range(n)
    ]


class TestMatrixProperties:
    def test_symmetric_zero_diagonal_non_negative(self, tmp_path) -> None:
        matrix = compute_or_load(_make_features(), "AUS", tmp_path, compute=SERIAL)
        values = matrix.values
        assert values.shape == (6, 6)
        assert np.array_equal(values, values.T)
        assert np.all(np.diag(values) == 0)
        assert (values >= 0).all()

    def test_rows_labelled_in_feature_order(self, tmp_path) -> None:
        features = _make_features()
        matrix = compute_or_load(features, "AUS", tmp_path, compute=SERIAL)
        assert matrix.ids == [f.id for f in features]
        assert list(matrix.frame.columns) == [f.id for f in features]

    def test_triangle_inequality_for_points(self, tmp_path) -> None:
        values = compute_or_load(_make_points(), "BRA", tmp_path, compute=SERIAL).values
        n = len(values)
        for i, j, k in itertools.product(range(n), repeat=3):
            assert values[i, k] <= values[i, j] + values[j, k] + 1e-6

    def test_threaded_workers_match_serial(self, tmp_path) -> None:
        features = _make_features(8)
        serial = compute_or_load(features, "AUS", tmp_path / "serial", compute=SERIAL)
        threaded = compute_or_load(
            features,
            "AUS",
            tmp_path / "threaded",
            compute=ComputeConfig(n_jobs=2, distance_backend="threading"),
        )
        pd.testing.assert_frame_equal(serial.frame, threaded.frame)

    def test_process_workers_match_serial(self, tmp_path) -> None:
        features = _make_features(10)
        serial = compute_or_load(features, "AUS", tmp_path / "serial", compute=SERIAL)
        processes = ComputeConfig(n_jobs=2)
        assert processes.distance_backend == "loky"
        pooled = compute_or_load(features, "AUS", tmp_path / "loky", compute=processes)
        pd.testing.assert_frame_equal(serial.frame, pooled.frame)

    def test_group_across_antimeridian(self, tmp_path) -> None:
        features = [
            Feature("west", box(179.990, -17.0045, 179.999, -16.9955), "FJI", GeometryKind.POLYGON, area=1.0),
            Feature("east", box(-179.999, -17.0045, -179.990, -16.9955), "FJI", GeometryKind.POLYGON, area=1.0),
            Feature("mine", Point(-179.995, -17.0), "FJI", GeometryKind.POINT),
        ]
        matrix = compute_or_load(features, "FJI", tmp_path, compute=SERIAL)
        assert matrix.frame.loc["west", "east"] < 250.0
        assert matrix.frame.loc["east", "mine"] == 0.0
        assert matrix.frame.loc["west", "mine"] < 700.0


class TestDegenerateGroups:
    def test_single_feature_returns_none(self, tmp_path) -> None:
        result = compute_or_load(_make_features(1), "AUS", tmp_path, compute=SERIAL)
        assert result is None
        assert (tmp_path / "dist_matrix").is_dir()
        assert not dist_matrix_path(tmp_path, "AUS").exists()

    def test_empty_group_returns_none(self, tmp_path) -> None:
        assert compute_or_load([], "AUS", tmp_path, compute=SERIAL) is None

    def test_mismatched_group_keys(self, tmp_path) -> None:
        features = _make_features(2, group="AUS") + _make_features(1, group="PER")
        with pytest.raises(DataIntegrityError, match="PER"):
            compute_or_load(features, "AUS", tmp_path, compute=SERIAL)


class TestCache:
    def test_second_call_loads_without_recomputing(self, tmp_path, monkeypatch) -> None:
        features = _make_features()
        first = compute_or_load(features, "AUS", tmp_path, compute=SERIAL)

        def _fail(*args, **kwargs):
            raise AssertionError("distance matrix recomputed despite cache")

        monkeypatch.setattr(dm, "compute_distance_frame", _fail)
        second = compute_or_load(features, "AUS", tmp_path, compute=SERIAL)
        assert np.array_equal(first.values, second.values)
        assert first.ids == second.ids

    def test_stale_cache_is_reused_verbatim(self, tmp_path) -> None:
        compute_or_load(_make_features(4), "AUS", tmp_path, compute=SERIAL)
        changed = _make_features(6, seed=99)
        reused = compute_or_load(changed, "AUS", tmp_path, compute=SERIAL)
        assert len(reused) == 4

    def test_cache_file_per_group(self, tmp_path) -> None:
        compute_or_load(_make_features(3, group="AUS"), "AUS", tmp_path, compute=SERIAL)
        compute_or_load(_make_features(3, group="PER"), "PER", tmp_path, compute=SERIAL)
        assert sorted(p.name for p in (tmp_path / "dist_matrix").iterdir()) == ["AUS.joblib", "PER.joblib"]

    def test_worker_failure_writes_nothing(self, tmp_path, monkeypatch) -> None:
        real = dm.distances_from

        def _flaky(index, geometries, kinds, geodesic=True):
            if index == 2:
                raise DataIntegrityError("Degenerate geometry at position 2.")
            return real(index, geometries, kinds, geodesic)

        monkeypatch.setattr(dm, "distances_from", _flaky)
        with pytest.raises(ComputationFailure, match="AUS") as excinfo:
            compute_or_load(_make_features(), "AUS", tmp_path, compute=SERIAL)
        assert isinstance(excinfo.value.__cause__, DataIntegrityError)
        assert not dist_matrix_path(tmp_path, "AUS").exists()
        assert list((tmp_path / "dist_matrix").iterdir()) == []

    def test_process_worker_failure_writes_nothing(self, tmp_path) -> None:
        features = _make_features(6)
        lon, lat = 121.2, -30.2
        bowtie = Polygon([(lon, lat), (lon + 0.01, lat + 0.01), (lon + 0.01, lat), (lon, lat + 0.01)])
        # Feature rejects invalid geometry, so swap it in after construction
        object.__setattr__(features[2], "geometry", bowtie)
        with pytest.raises(ComputationFailure, match="AUS"):
            compute_or_load(features, "AUS", tmp_path, compute=ComputeConfig(n_jobs=2))
        assert not dist_matrix_path(tmp_path, "AUS").exists()
        assert list((tmp_path / "dist_matrix").iterdir()) == []


class TestValidateMatrix:
    def _frame(self, values) -> pd.DataFrame:
        ids = [f"f{i}" for i in range(len(values))]
        return pd.DataFrame(np.asarray(values, dtype=float), index=ids, columns=ids)

    def test_accepts_valid_matrix(self) -> None:
        validate_matrix(self._frame([[0, 1], [1, 0]]))

    @pytest.mark.parametrize(
        "values,match",
        [
            ([[0, 1], [2, 0]], "symmetric"),
            ([[0, -1], [-1, 0]], "negative"),
            ([[1, 1], [1, 0]], "diagonal"),
            ([[0, np.nan], [np.nan, 0]], "non-finite"),
        ],
    )
    def test_rejects_malformed(self, values, match) -> None:
        with pytest.raises(DataIntegrityError, match=match):
            validate_matrix(self._frame(values))

    def test_rejects_label_mismatch(self) -> None:
        frame = pd.DataFrame([[0.0, 1.0], [1.0, 0.0]], index=["a", "b"], columns=["a", "c"])
        with pytest.raises(DataIntegrityError, match="labels"):
            DistanceMatrix("AUS", frame).validate()

    def test_rejects_non_square(self) -> None:
        frame = pd.DataFrame([[0.0, 1.0, 2.0], [1.0, 0.0, 3.0]], index=["a", "b"], columns=["a", "b", "c"])
        with pytest.raises(DataIntegrityError, match="square"):
            validate_matrix(frame)
