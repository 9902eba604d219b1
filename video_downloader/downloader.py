"""Acquisition stage: pick a download link and save the video file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

from filetype import guess
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator

from .config import DownloadConfig
from .models import Video
from .session import BrowserSession
from .utils import slugify, unique_destination

logger = logging.getLogger("video_downloader")

# Chromium aborts the navigation once a response turns into a download.
_DOWNLOAD_NAVIGATION_MARKERS = ("net::ERR_ABORTED", "Download is starting")


class DownloadError(RuntimeError):
    """Raised when no usable download link is found on a video page."""


def choose_download_link(
    links: Sequence[Tuple[str, str]],
    preferred_qualities: Sequence[str],
) -> Optional[str]:
    """Return the href of the best link given ``(label, href)`` pairs.

    Qualities are tried in preference order; within one quality the first
    link whose label contains it wins.
    """
    for quality in preferred_qualities:
        for label, href in links:
            if quality in (label or ""):
                return href
    return None


def detect_video_mime(path: Path) -> Optional[str]:
    """Sniff the file signature; returns the MIME type for video files only."""
    kind = guess(str(path))
    if kind and kind.mime.startswith("video/"):
        return kind.mime
    return None


class VideoDownloader:
    """Downloads a video through the shared browser page."""

    def __init__(self, config: DownloadConfig) -> None:
        self.config = config

    async def acquire(self, video: Video, session: BrowserSession) -> Video:
        config = self.config
        page = session.page
        logger.info("%s: Downloading '%s'", video.id, video.label)
        await page.goto(video.url, wait_until="networkidle")

        if config.popup_selector:
            popup = page.locator(config.popup_selector).first
            await popup.wait_for()
            await popup.click()

        links = page.locator(config.link_selector)
        await links.first.wait_for()
        href = await self._select_link(links, video)
        logger.debug("%s: Chosen download link %s", video.id, href)

        target_dir = Path(config.move_path)
        target_dir.mkdir(parents=True, exist_ok=True)
        async with page.expect_download(timeout=config.download_timeout * 1000) as download_info:
            try:
                await page.goto(href)
            except PlaywrightError as exc:
                if not any(marker in str(exc) for marker in _DOWNLOAD_NAVIGATION_MARKERS):
                    raise
                logger.info("%s: Starting download", video.id)
        download = await download_info.value

        filename = download.suggested_filename or f"{slugify(video.label)}.mp4"
        destination = unique_destination(target_dir, filename)
        await download.save_as(destination)

        if detect_video_mime(destination) is None:
            logger.warning("%s: %s does not look like a video file", video.id, destination)

        video.downloaded_file = str(destination)
        video.acquired = True
        logger.info("%s: Saved download to %s", video.id, destination)
        return video

    async def _select_link(self, links: Locator, video: Video) -> str:
        config = self.config
        if config.download_type == "single":
            href = await links.first.evaluate("el => el.href")
            if not href:
                raise DownloadError(
                    f"No download link found (page={video.page_num}, video={video.id}, url={video.url})"
                )
            return href

        if config.preferred_quality_type == "url":
            labels = await links.evaluate_all("els => els.map(el => el.href)")
        else:
            labels = await links.evaluate_all(
                "els => els.map(el => (el.textContent || '').trim())"
            )
        hrefs = await links.evaluate_all("els => els.map(el => el.href)")
        for label in labels:
            logger.debug("%s: Evaluating download link %s", video.id, label)

        chosen = choose_download_link(list(zip(labels, hrefs)), config.preferred_qualities)
        if chosen is None:
            raise DownloadError(
                "No download links with a preferred quality found "
                f"(page={video.page_num}, video={video.id}, url={video.url})"
            )
        return chosen
