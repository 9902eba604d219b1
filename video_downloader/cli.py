"""Command-line entry point for the video pipeline."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .config import AppConfig, ConfigError, load_config
from .models import Stage
from .pipeline import PipelineResult, RunOptions, run_app
from .store import CheckpointError

logger = logging.getLogger("video_downloader.cli")

EXIT_CANCELLED = 130


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Catalog videos from a site, then download, scrape and publish each one "
            "to Stash, resuming from the last checkpoint."
        ),
    )
    parser.add_argument("config", type=Path, help="JSON configuration file")
    parser.add_argument(
        "--start",
        type=int,
        default=None,
        help="First video to process (1-based, overrides general.start_video)",
    )
    parser.add_argument(
        "--end",
        type=int,
        default=None,
        help="Last video to process (inclusive, overrides general.end_video)",
    )
    parser.add_argument(
        "--quit-after",
        type=int,
        default=None,
        help="Stop after this many videos were processed successfully",
    )
    parser.add_argument(
        "--force-download",
        action="store_true",
        help="Download again even when a video is already marked as acquired",
    )
    parser.add_argument(
        "--force-scrape",
        action="store_true",
        help="Scrape metadata again even when a video is already enriched",
    )
    parser.add_argument(
        "--force-publish",
        action="store_true",
        help="Publish to Stash again even when a video is already published",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window instead of running headless",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(list(sys.argv[1:] if argv is None else argv))


def build_options(config: AppConfig, args: argparse.Namespace) -> RunOptions:
    """Combine configured run settings with command-line overrides."""
    options = RunOptions.from_config(config)
    if args.start is not None:
        options.start = args.start
    if args.end is not None:
        options.end = args.end
    if args.quit_after is not None:
        options.quit_after = args.quit_after
    if args.force_download:
        options.force[Stage.ACQUIRE] = True
    if args.force_scrape:
        options.force[Stage.ENRICH] = True
    if args.force_publish:
        options.force[Stage.PUBLISH] = True
    return options


async def _run_with_signals(config: AppConfig, options: RunOptions) -> PipelineResult:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)

    def _request_stop(name: str) -> None:
        logger.warning("Received %s, stopping at the next step boundary", name)
        cancel_event.set()
        # A second signal falls through to the default handler.
        for sig in signals:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    for sig in signals:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _request_stop, sig.name)
    try:
        return await run_app(config, options, cancel_event)
    finally:
        for sig in signals:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


def _log_summary(result: PipelineResult, total_elapsed: float) -> None:
    logger.info(
        "Finished in %.2fs (%d processed, %d ignored, %d failed, catalog size %d)",
        total_elapsed,
        result.processed,
        result.skipped,
        len(result.failures),
        result.total,
    )
    logger.debug(
        "Stages run: %s",
        ", ".join(f"{stage.name.lower()}={count}" for stage, count in result.stages_run.items()),
    )
    for video_id, reason in result.failures:
        logger.warning("Video %s failed: %s", video_id, reason)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    if args.headed:
        config.general.headless = False
    options = build_options(config, args)

    overall_start = time.perf_counter()
    try:
        result = asyncio.run(_run_with_signals(config, options))
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.warning("Cancelled; progress is saved in %s", config.checkpoint_path)
        return EXIT_CANCELLED
    except CheckpointError as exc:
        logger.error("Checkpoint failure, stopping: %s", exc)
        return 1
    _log_summary(result, time.perf_counter() - overall_start)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
