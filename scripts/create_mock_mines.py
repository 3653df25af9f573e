"""Create mock mining polygons and commodity points for the cluster pipeline."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mineclusters.data.synthetic import features_to_frames, make_synthetic_features  # noqa: E402


def configure_logging() -> None:
    Path("logs").mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename="logs/create_mock_mines.log",
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_mock_mines(output_dir: Path, n_sites: int = 400, seed: int = 42) -> None:
    frames = features_to_frames(make_synthetic_features(n_sites=n_sites, seed=seed))
    output_dir.mkdir(parents=True, exist_ok=True)
    polygons_path = output_dir / "mining_polygons.geojson"
    points_path = output_dir / "commodity_points.geojson"
    frames["polygons"].to_file(polygons_path, driver="GeoJSON")
    frames["points"].to_file(points_path, driver="GeoJSON")
    logging.info("Wrote %d polygons to %s", len(frames["polygons"]), polygons_path)
    logging.info("Wrote %d points to %s", len(frames["points"]), points_path)
    print(
        f"OK: {len(frames['polygons'])} polygons | {len(frames['points'])} commodity points | "
        f"groups={frames['polygons']['ISO3_CODE'].nunique()}"
    )


def main() -> None:
    configure_logging()
    create_mock_mines(Path("data/raw"))


if __name__ == "__main__":
    main()
