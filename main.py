#!/usr/bin/env python3
"""CLI entrypoint for the dashcam exporter."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from dashcam_export.config import ExportSettings, find_ffmpeg, load_config, log_level_value
from dashcam_export.encoders import LOW_QUALITY_TIERS, EncoderSelector, quality_profile
from dashcam_export.errors import ExportError
from dashcam_export.filters import output_size
from dashcam_export.jobs import CANCELLED, COMPLETED, ExportJobManager
from dashcam_export.logging_setup import configure_logging
from dashcam_export.models import CAMERA_ORDER, QUALITY_TIERS, ExportRequest, ProgressEvent

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Export synchronized dashcam footage as a single grid video.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.json"),
        help="Path to the JSON settings file (default: config.json, falls back to environment).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Run one export described by a JSON request.")
    export_parser.add_argument(
        "request",
        type=Path,
        help="JSON file with start/end times, segments, cameras and output path.",
    )

    subparsers.add_parser("probe", help="Print the encoder chosen for each quality tier.")
    return parser


def _load_request(path: Path) -> ExportRequest:
    with path.open("r", encoding="utf-8") as handle:
        return ExportRequest.from_dict(json.load(handle))


def run_export(settings: ExportSettings, request_path: Path, logger: logging.Logger) -> int:
    try:
        request = _load_request(request_path)
    except (OSError, ValueError, KeyError) as exc:
        logger.error("Could not read export request %s: %s", request_path, exc)
        return EXIT_FAILED

    def on_progress(event: ProgressEvent) -> None:
        logger.info("[%s] %s", event.kind, event.message)

    manager = ExportJobManager(settings, logger=logger)
    job_id = manager.submit(request, on_progress=on_progress)
    try:
        completion = manager.wait(job_id)
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling export %s", job_id)
        manager.cancel(job_id)
        completion = manager.wait(job_id, timeout=30)

    if completion is None:
        logger.error("Export %s did not finish", job_id)
        return EXIT_FAILED
    if completion.state == COMPLETED:
        logger.info("%s -> %s", completion.message, completion.output_path)
        return EXIT_OK
    if completion.state == CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def run_probe(settings: ExportSettings, logger: logging.Logger) -> int:
    try:
        ffmpeg = find_ffmpeg(settings.ffmpeg_path, logger=logger)
    except ExportError as exc:
        logger.error("%s", exc)
        return EXIT_FAILED

    selector = EncoderSelector(
        ffmpeg,
        logger=logger,
        max_hardware_dimension=settings.hardware_max_dimension,
        fps=settings.fps,
    )
    for tier in QUALITY_TIERS:
        for front_only in (True, False):
            profile = quality_profile(tier, front_only=front_only)
            width, height = output_size(1 if front_only else len(CAMERA_ORDER), profile)
            choice = selector.choose(profile, width, height, low_quality=tier in LOW_QUALITY_TIERS)
            layout = "front only" if front_only else "all cameras"
            print(f"{tier:<7} {layout:<12} {width}x{height:<6} {choice.name}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_config(args.config)
    level = logging.DEBUG if args.verbose else log_level_value(settings.log_level)
    logger = configure_logging(level=level, log_file=settings.log_file)

    if args.command == "export":
        return run_export(settings, args.request, logger)
    if args.command == "probe":
        return run_probe(settings, logger)

    parser.error(f"Unhandled command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
