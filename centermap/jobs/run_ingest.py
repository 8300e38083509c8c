"""CLI job to load center datasets, resolve missing coordinates and render a marker map."""

import argparse
import logging
from typing import List, Optional

from centermap.core.config import get_settings
from centermap.core.markers import FoliumMarkerSurface, MarkerRenderer
from centermap.core.pipeline import CenterPipeline
from centermap.etl.datasets import HttpDatasetSource, LocalDatasetSource
from centermap.etl.feeds import parse_urls_from_text
from centermap.models import CENTER_KINDS

logger = logging.getLogger(__name__)


def run_ingest_job(
    *,
    kind: str,
    output: Optional[str],
    dataset_dir: Optional[str] = None,
    api_url: Optional[str] = None,
    concurrency: Optional[int] = None,
    geocode: bool = True,
    feed_urls: Optional[List[str]] = None,
) -> int:
    """Returns the number of markers on the rendered map."""
    if kind not in CENTER_KINDS:
        raise ValueError(f"Unknown center kind: {kind}")

    pipeline = CenterPipeline.from_settings()
    if api_url:
        pipeline.source = HttpDatasetSource(api_url)
        pipeline.api_base_url = api_url.rstrip("/")
    elif dataset_dir:
        pipeline.source = LocalDatasetSource(dataset_dir)

    surface = FoliumMarkerSurface(name=kind)
    point_surface = FoliumMarkerSurface(name="openapi") if feed_urls else None
    renderer = MarkerRenderer(surface, point_surface)

    try:
        result = pipeline.load(kind)
        for error in result.errors:
            logger.warning("Dataset error: %s", error)
        logger.info("Loaded %d centers", len(result.centers))

        if geocode:
            tasks = pipeline.pending_tasks()
            logger.info("Resolving coordinates for %d centers", len(tasks))
            if tasks:
                run_result = pipeline.resolve_coordinates(concurrency=concurrency)
                logger.info(
                    "Resolved %d, unresolved %d", len(run_result.resolved), len(run_result.unresolved)
                )

        marker_count = renderer.render(pipeline.centers())

        if feed_urls:
            report = pipeline.ingest_feeds(feed_urls)
            if report.error:
                logger.warning("Feed ingest: %s", report.error)
            marker_count += renderer.render_points(report.points)

        if output:
            surface.save(output, point_surface)
        return marker_count
    finally:
        pipeline.close()


def _read_feed_urls(path: Optional[str]) -> Optional[List[str]]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as handle:
        return parse_urls_from_text(handle.read())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load center datasets and render them on a map")
    parser.add_argument("--kind", dest="kind", choices=CENTER_KINDS, default="counseling", help="Center kind to load")
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--dataset-dir",
        dest="dataset_dir",
        default=None,
        help=f"Directory of dataset JSON files (default: {get_settings().dataset_dir})",
    )
    source.add_argument("--api-url", dest="api_url", help="Dataset API base URL")
    parser.add_argument("--output", dest="output", default="centers_map.html", help="HTML map output path")
    parser.add_argument("--concurrency", dest="concurrency", type=int, help="Geocode worker count")
    parser.add_argument("--no-geocode", dest="geocode", action="store_false", help="Skip coordinate resolution")
    parser.add_argument("--feeds-file", dest="feeds_file", help="Text file of feed URLs to ingest via the stream API")
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    try:
        run_ingest_job(
            kind=args.kind,
            output=args.output,
            dataset_dir=args.dataset_dir,
            api_url=args.api_url,
            concurrency=args.concurrency,
            geocode=args.geocode,
            feed_urls=_read_feed_urls(args.feeds_file),
        )
    except Exception:  # noqa: BLE001
        logger.exception("Ingest job failed")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
