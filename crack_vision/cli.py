"""Command-line front end: compare two site photographs and save the highlighted result.

Usage:
    crack-vision compare BASELINE CURRENT -o changes.png
    crack-vision compare old.jpg https://cdn.example.com/new.jpg -o out.png --detector sift
"""

import argparse
import asyncio
import sys
from pathlib import Path

from crack_vision.clients.http import get_http_client
from crack_vision.config import config
from crack_vision.jobs.controller import PipelineController
from crack_vision.jobs.types import FALLBACK_STATUS_MESSAGE, PipelinePriority, PipelineSuccess
from crack_vision.jobs.worker import PipelineParams
from crack_vision.lib.image_io import encode_png, load_image
from crack_vision.utils.job_errors import LoadError
from crack_vision.utils.log_utils import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crack-vision",
        description="Align two photographs of a crack site and highlight what changed",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    compare = subparsers.add_parser("compare", help="Compare a current image against a baseline")
    compare.add_argument("baseline", help="Baseline image (path, file:// or http(s) URL)")
    compare.add_argument("current", help="Current image (path, file:// or http(s) URL)")
    compare.add_argument(
        "-o", "--output", required=True, type=Path, help="Where to write the highlighted PNG"
    )
    compare.add_argument(
        "--foreground",
        action="store_true",
        help="Start immediately instead of after the background debounce",
    )
    compare.add_argument(
        "--detector", choices=["orb", "sift"], default=None, help="Feature detector"
    )
    compare.add_argument(
        "--no-align",
        action="store_true",
        help="Skip feature matching and compare a plain resize",
    )
    compare.add_argument(
        "--diff-threshold",
        type=int,
        default=None,
        help="Blurred difference (0-255) at or above which a pixel counts as changed",
    )
    compare.add_argument(
        "--min-blob-area",
        type=int,
        default=None,
        help="Drop changed regions smaller than this many pixels",
    )
    compare.add_argument(
        "--max-dimension",
        type=int,
        default=None,
        help="Downsample so the longer side is at most this many pixels",
    )
    compare.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")

    return parser


async def _compare(args: argparse.Namespace) -> int:
    params = PipelineParams.from_config(
        feature_detector=args.detector,
        alignment_enabled=False if args.no_align else None,
        diff_threshold=args.diff_threshold,
        min_blob_area=args.min_blob_area,
    )
    controller = PipelineController(params=params, max_dimension=args.max_dimension)
    priority = PipelinePriority.FOREGROUND if args.foreground else PipelinePriority.BACKGROUND

    try:
        result = await controller.run(args.baseline, args.current, priority)

        if not isinstance(result, PipelineSuccess):
            print(f"Comparison failed: {result.reason}", file=sys.stderr)
            return 1

        if result.is_passthrough:
            # Nothing to compare; save the single source image as is
            image = await load_image(result.source_ref)
            png_bytes = encode_png(image)
            summary = f"{image.width}x{image.height}, unchanged"
        else:
            png_bytes = result.to_png_bytes()
            regions = result.stats.changed_regions if result.stats else 0
            summary = f"{result.image.width}x{result.image.height}, {regions} changed regions"
    except LoadError as e:
        print(f"Comparison failed: {e}", file=sys.stderr)
        return 1
    finally:
        await get_http_client().aclose()

    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(png_bytes)
    print(f"Saved: {args.output} ({summary})")

    if result.used_fallback:
        print(f"Warning: {FALLBACK_STATUS_MESSAGE}", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level or config.log_level, config.log_format)

    if args.command == "compare":
        return asyncio.run(_compare(args))

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
