"""Catalog discovery: crawl the paged video list and checkpoint as it goes."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

from playwright.async_api import Page

from .config import CatalogConfig
from .models import Video
from .session import BrowserSession, SessionManager, raise_if_cancelled
from .store import load_videos, save_videos

logger = logging.getLogger("video_downloader")

_TEXT_JS = "els => els.map(el => (el.innerText || el.textContent || '').trim())"
_HREF_JS = "els => els.map(el => el.href || el.getAttribute('href') || '')"


class CatalogError(RuntimeError):
    """Raised when a list page does not have the expected layout."""


@dataclass
class CatalogSummary:
    """What a `build_catalog` call did."""

    crawled: bool = False
    pages: int = 0
    added: int = 0


class PageCrawler(Protocol):
    async def crawl(self, page_num: int, session: Any) -> List[Video]: ...


async def scroll_to_end(
    page: Page,
    step: int = 500,
    delay: float = 1.0,
    max_scrolls: int = 50,
) -> None:
    """Scroll down in ``step`` pixel increments until the page stops growing."""
    last_height = 0.0
    position = 0
    for _ in range(max_scrolls):
        height = await page.evaluate("document.body.scrollHeight")
        if height == last_height:
            break
        last_height = height
        while position < height:
            position += step
            await page.evaluate("(y) => window.scrollTo(0, y)", position)
            await page.wait_for_timeout(int(delay * 1000))


class VideoListCrawler:
    """Extracts title/link pairs from one page of the video list."""

    def __init__(self, config: CatalogConfig) -> None:
        self.config = config

    async def crawl(self, page_num: int, session: BrowserSession) -> List[Video]:
        config = self.config
        page = session.page
        page_url = config.pages_url.format(page=page_num)
        logger.info("Crawling list page %d: %s", page_num, page_url)
        await page.goto(page_url, wait_until="networkidle")
        await scroll_to_end(page, config.scroll_step, config.scroll_delay, config.max_scrolls)
        if config.wait_after_load:
            await page.wait_for_timeout(int(config.wait_after_load * 1000))

        titles = await page.locator(config.title_selector).evaluate_all(_TEXT_JS)
        links = await page.locator(config.link_selector).evaluate_all(_HREF_JS)
        if len(titles) != len(links):
            raise CatalogError(
                f"Titles and links on page must be equal "
                f"(page={page_num}, titles={len(titles)}, links={len(links)})"
            )
        if (
            config.videos_per_page
            and len(links) != config.videos_per_page
            and page_num != config.end_page
        ):
            raise CatalogError(
                f"Unexpected number of videos on page "
                f"(page={page_num}, expected={config.videos_per_page}, found={len(links)})"
            )

        prefix = config.allowed_href_prefix.lower()
        videos: List[Video] = []
        for title, href in zip(titles, links):
            if prefix and not href.lower().startswith(prefix):
                continue
            videos.append(Video(id=0, url=href, page_num=page_num, title=title.strip()))
        return videos


async def build_catalog(
    checkpoint_path: Path,
    config: CatalogConfig,
    crawler: PageCrawler,
    sessions: SessionManager,
    cancel_event: Optional[asyncio.Event] = None,
    summary: Optional[CatalogSummary] = None,
) -> List[Video]:
    """Return the cached catalog or crawl the configured page range.

    The accumulated list is saved after every page so an interrupted crawl
    loses at most one page. Ids continue from the highest id already in
    the catalog and URLs already present are not added twice.
    """
    videos: List[Video] = []
    if not config.force_refresh:
        videos = load_videos(checkpoint_path)
        if videos:
            logger.info("Using cached catalog (%d videos)", len(videos))
            if not config.resume_scrape:
                return videos

    if summary is not None:
        summary.crawled = True
    logger.info(
        "Building catalog by crawling pages %d..%d", config.start_page, config.end_page
    )
    ids = itertools.count(max((video.id for video in videos), default=0) + 1)
    known_urls = {video.url for video in videos}

    for page_num in range(config.start_page, config.end_page + 1):
        raise_if_cancelled(cancel_event)
        found = await sessions.with_retry(
            lambda session, number=page_num: crawler.crawl(number, session),
            cancel_event=cancel_event,
        )
        added = 0
        for video in found:
            if video.url in known_urls:
                logger.debug("Skipping already catalogued %s", video.url)
                continue
            video.id = next(ids)
            known_urls.add(video.url)
            videos.append(video)
            added += 1
        save_videos(checkpoint_path, videos)
        if summary is not None:
            summary.pages += 1
            summary.added += added
        logger.info("Page %d added %d videos (%d total)", page_num, added, len(videos))
    return videos
