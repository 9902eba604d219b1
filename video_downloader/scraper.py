"""Enrichment stage: read scene metadata and performer images from the site."""

from __future__ import annotations

import logging
from typing import List, Optional

from playwright.async_api import Page

from .config import ScrapeConfig
from .models import Performer, Video
from .session import BrowserSession
from .utils import parse_date, strip_query

logger = logging.getLogger("video_downloader")

_TEXT_JS = "el => (el.innerText || el.textContent || '').trim()"
_ATTRIBUTE_JS = "(el, name) => el[name] || el.getAttribute(name) || ''"


async def _single_text(page: Page, selector: str, wait: bool) -> Optional[str]:
    if not selector or not selector.strip():
        return None
    locator = page.locator(selector)
    if wait:
        await locator.first.wait_for(state="attached")
    if await locator.count() == 0:
        return None
    return await locator.first.evaluate(_TEXT_JS)


async def _single_attribute(
    page: Page, selector: str, name: str, wait: bool
) -> Optional[str]:
    if not selector or not selector.strip():
        return None
    locator = page.locator(selector)
    if wait:
        await locator.first.wait_for(state="attached")
    if await locator.count() == 0:
        return None
    value = await locator.first.evaluate(_ATTRIBUTE_JS, name)
    return value or None


async def _many_text(page: Page, selector: str) -> List[str]:
    if not selector or not selector.strip():
        return []
    texts = await page.locator(selector).evaluate_all(
        "els => els.map(el => (el.innerText || el.textContent || '').trim())"
    )
    return [text for text in texts if text]


class VideoScraper:
    """Fills in title, details, date, studio, tags and performers."""

    def __init__(self, config: ScrapeConfig) -> None:
        self.config = config

    async def _settle(self, page: Page) -> None:
        if self.config.wait_after_load:
            await page.wait_for_timeout(int(self.config.wait_after_load * 1000))

    async def enrich(self, video: Video, session: BrowserSession) -> Video:
        config = self.config
        page = session.page
        logger.info("%s: Scraping '%s' ...", video.id, video.label)
        await page.goto(video.url, wait_until="networkidle")
        await self._settle(page)

        title = await _single_text(page, config.title_selector, wait=True)
        if title:
            video.title = title
        video.details = await _single_text(page, config.details_selector, wait=True)
        video.cover_image = await _single_attribute(
            page, config.cover_image_selector, "src", wait=True
        )
        date_text = await _single_text(page, config.date_selector, wait=True)
        video.date = parse_date(date_text, config.date_format, config.date_remove_suffix)
        video.tags = await _many_text(page, config.tags_selector)
        video.studio = await _single_text(page, config.studio_selector, wait=False)

        performers: List[Performer] = []
        if config.performers_selector:
            pairs = await page.locator(config.performers_selector).evaluate_all(
                "els => els.map(el => [(el.innerText || el.textContent || '').trim(), el.href || ''])"
            )
            performers = [Performer(name=name, url=href) for name, href in pairs if name]

        if config.performer_cover_image_selector:
            for performer in performers:
                if not performer.url:
                    continue
                await page.goto(performer.url, wait_until="networkidle")
                await self._settle(page)
                image = await _single_attribute(
                    page, config.performer_cover_image_selector, "src", wait=True
                )
                performer.cover_image = strip_query(image) if image else None
        video.performers = performers

        video.enriched = True
        logger.info(
            "%s: Scraping complete (%s | date=%s | performers=%d | tags=%d)",
            video.id,
            video.title,
            video.date,
            len(video.performers),
            len(video.tags),
        )
        return video
