"""High-level orchestration: move each video through acquire, enrich and publish."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .catalog import CatalogSummary, VideoListCrawler, build_catalog
from .config import AppConfig
from .downloader import VideoDownloader
from .models import Stage, Video
from .scraper import VideoScraper
from .session import SessionManager, raise_if_cancelled
from .stash import StashPublisher
from .store import CheckpointError, save_videos

logger = logging.getLogger("video_downloader")

UNSET = -1


class Acquirer(Protocol):
    async def acquire(self, video: Video, session: Any) -> Video: ...


class Enricher(Protocol):
    async def enrich(self, video: Video, session: Any) -> Video: ...


class Publisher(Protocol):
    async def publish(self, video: Video) -> Video: ...


class StageError(RuntimeError):
    """Raised when a stage adapter reports success without its result."""


@dataclass
class StageAdapters:
    """The collaborators that perform each stage."""

    acquirer: Acquirer
    enricher: Enricher
    publisher: Publisher


@dataclass
class RunOptions:
    """Per-run range, limit and force-rerun settings."""

    start: int = UNSET
    end: int = UNSET
    quit_after: int = 0
    force: Dict[Stage, bool] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: AppConfig) -> "RunOptions":
        return cls(
            start=config.general.start_video,
            end=config.general.end_video,
            quit_after=config.general.quit_after,
            force={
                Stage.ACQUIRE: config.download.force_rerun,
                Stage.ENRICH: config.scrape.force_rerun,
                Stage.PUBLISH: config.stash.force_rerun,
            },
        )


@dataclass
class PipelineResult:
    """Summary of a pipeline run."""

    total: int = 0
    processed: int = 0
    skipped: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)
    stages_run: Dict[Stage, int] = field(default_factory=lambda: {stage: 0 for stage in Stage})
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures


def video_range(total: int, start: int = UNSET, end: int = UNSET) -> Tuple[int, int]:
    """Return the inclusive 1-based ``(start, end)`` range to visit.

    ``UNSET`` endpoints default to the first and last video; the end is
    clamped to ``total``. An empty range has ``start > end``.
    """
    first = 1 if start == UNSET else max(start, 1)
    last = total if end == UNSET else min(end, total)
    return first, last


def _stage_call(
    stage: Stage, adapters: StageAdapters
) -> Tuple[Callable[[Video, Any], Awaitable[Video]], bool]:
    """Return the adapter call for ``stage`` and whether it needs the browser."""
    if stage is Stage.ACQUIRE:
        return adapters.acquirer.acquire, True
    if stage is Stage.ENRICH:
        return adapters.enricher.enrich, True
    return (lambda video, _session: adapters.publisher.publish(video)), False


async def run_stage(
    stage: Stage,
    video: Video,
    adapters: StageAdapters,
    sessions: SessionManager,
    cancel_event: Optional[asyncio.Event] = None,
) -> Video:
    """Run one stage through the retry envelope and return the updated video.

    Every attempt works on its own copy so a failed attempt never leaks
    partial changes into the catalog. Markers that were already set stay
    set and the stage's own marker is asserted on success.
    """
    call, borrow_session = _stage_call(stage, adapters)

    async def _attempt(session: Any) -> Video:
        updated = await call(copy.deepcopy(video), session)
        if stage is Stage.ACQUIRE and not updated.downloaded_file:
            raise StageError(f"{video.id}: acquisition finished without a downloaded file")
        return updated

    updated = await sessions.with_retry(
        _attempt,
        cancel_event=cancel_event,
        borrow_session=borrow_session,
    )
    for done in Stage:
        if video.is_complete(done):
            setattr(updated, done.marker, True)
    setattr(updated, stage.marker, True)
    return updated


async def process_video(
    videos: List[Video],
    index: int,
    checkpoint_path: Path,
    adapters: StageAdapters,
    sessions: SessionManager,
    options: RunOptions,
    cancel_event: Optional[asyncio.Event] = None,
    result: Optional[PipelineResult] = None,
) -> Video:
    """Run every pending stage for ``videos[index]``, saving after each one."""
    for stage in Stage:
        raise_if_cancelled(cancel_event)
        video = videos[index]
        if video.is_complete(stage) and not options.force.get(stage, False):
            logger.debug("%s: %s already complete", video.id, stage.name.lower())
            continue
        videos[index] = await run_stage(stage, video, adapters, sessions, cancel_event)
        save_videos(checkpoint_path, videos)
        if result is not None:
            result.stages_run[stage] += 1
    return videos[index]


async def run_pipeline(
    videos: List[Video],
    checkpoint_path: Path,
    adapters: StageAdapters,
    sessions: SessionManager,
    options: Optional[RunOptions] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> PipelineResult:
    """Process the configured range of ``videos`` in order.

    A video whose stage still fails after all retries is logged and left
    with its markers unchanged, and the run moves on to the next video.
    Checkpoint failures and cancellation end the run.
    """
    options = options or RunOptions()
    result = PipelineResult(total=len(videos))
    start, end = video_range(len(videos), options.start, options.end)
    logger.info("Processing videos %d..%d of %d", start, end, len(videos))
    started = time.perf_counter()

    for position in range(start, end + 1):
        raise_if_cancelled(cancel_event)
        index = position - 1
        video = videos[index]
        if video.ignore:
            logger.debug("%s: Ignored", video.id)
            result.skipped += 1
            continue

        try:
            await process_video(
                videos, index, checkpoint_path, adapters, sessions, options, cancel_event, result
            )
        except CheckpointError:
            raise
        except Exception as exc:  # noqa: BLE001 - one failing video must not stop the batch
            logger.exception("%s: Processing failed for '%s'", video.id, video.label)
            result.failures.append((video.id, f"{type(exc).__name__}: {exc}"))
            continue

        result.processed += 1
        if options.quit_after and result.processed >= options.quit_after:
            logger.info(
                "quit_after is set to %d, stopping after %d videos",
                options.quit_after,
                result.processed,
            )
            break

    result.elapsed_seconds = time.perf_counter() - started
    return result


async def run_app(
    config: AppConfig,
    options: Optional[RunOptions] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> PipelineResult:
    """Build the catalog and run the pipeline with the real collaborators."""
    checkpoint_path = config.checkpoint_path
    publisher = StashPublisher(config.stash, cancel_event=cancel_event)
    summary = CatalogSummary()
    try:
        async with SessionManager(config) as sessions:
            videos = await build_catalog(
                checkpoint_path,
                config.catalog,
                VideoListCrawler(config.catalog),
                sessions,
                cancel_event,
                summary,
            )
            logger.info("Catalog contains %d videos", len(videos))
            if config.catalog.stop_after_catalog and summary.crawled:
                logger.info("Stopping after crawling the catalog as configured")
                return PipelineResult(total=len(videos))

            adapters = StageAdapters(
                acquirer=VideoDownloader(config.download),
                enricher=VideoScraper(config.scrape),
                publisher=publisher,
            )
            return await run_pipeline(
                videos,
                checkpoint_path,
                adapters,
                sessions,
                options or RunOptions.from_config(config),
                cancel_event,
            )
    finally:
        publisher.close()
