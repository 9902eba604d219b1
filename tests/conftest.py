from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from video_downloader.config import AppConfig, GeneralConfig
from video_downloader.models import Video
from video_downloader.session import SessionManager


class FakeSession:
    """Stands in for a browser session; records whether it was closed."""

    def __init__(self, number: int, fail_close: bool = False) -> None:
        self.number = number
        self.closed = False
        self.fail_close = fail_close

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise RuntimeError("browser already gone")


class SessionFactory:
    def __init__(self, fail_close: bool = False) -> None:
        self.sessions: List[FakeSession] = []
        self.fail_close = fail_close

    async def __call__(self) -> FakeSession:
        session = FakeSession(len(self.sessions) + 1, self.fail_close)
        self.sessions.append(session)
        return session

    @property
    def closed(self) -> int:
        return sum(1 for session in self.sessions if session.closed)


class Crash(BaseException):
    """Simulates the process dying mid-run; bypasses retries and error handling."""


class FakeStage:
    """Adapter double for any of the three stages.

    ``failures`` maps a video id to the number of leading calls that raise.
    ``crash_on`` makes the n-th call overall raise ``Crash``.
    """

    def __init__(
        self,
        name: str,
        failures: Optional[Dict[int, int]] = None,
        crash_on: Optional[int] = None,
    ) -> None:
        self.name = name
        self.failures = dict(failures or {})
        self.crash_on = crash_on
        self.calls: List[int] = []
        self.sessions: List[object] = []

    async def _run(self, video: Video, session: object) -> Video:
        self.calls.append(video.id)
        self.sessions.append(session)
        if self.crash_on is not None and len(self.calls) == self.crash_on:
            raise Crash(f"{self.name} crashed on {video.id}")
        if self.failures.get(video.id, 0) > 0:
            self.failures[video.id] -= 1
            raise RuntimeError(f"{self.name} failed for {video.id}")
        if self.name == "acquire":
            video.downloaded_file = f"/downloads/{video.id}.mp4"
            video.title = video.title or f"Video {video.id}"
        elif self.name == "enrich":
            video.details = f"details {video.id}"
            video.tags = ["tag-a", "tag-b"]
        return video

    async def acquire(self, video: Video, session: object) -> Video:
        return await self._run(video, session)

    async def enrich(self, video: Video, session: object) -> Video:
        return await self._run(video, session)

    async def publish(self, video: Video) -> Video:
        return await self._run(video, None)


class FakeCrawler:
    """Returns canned list pages; ``fail_pages`` raise on every attempt."""

    def __init__(self, pages: Dict[int, List[str]], fail_pages: Optional[Set[int]] = None) -> None:
        self.pages = pages
        self.fail_pages = set(fail_pages or ())
        self.calls: List[int] = []

    async def crawl(self, page_num: int, session: object) -> List[Video]:
        self.calls.append(page_num)
        if page_num in self.fail_pages:
            raise RuntimeError(f"page {page_num} did not load")
        return [
            Video(id=0, url=url, page_num=page_num, title=url.rsplit("/", 1)[-1])
            for url in self.pages.get(page_num, [])
        ]


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        name="test",
        general=GeneralConfig(
            cache_path=tmp_path / "cache",
            max_attempts=3,
            browser_restart_delay=0.0,
        ),
    )


@pytest.fixture
def session_factory() -> SessionFactory:
    return SessionFactory()


@pytest.fixture
def sessions(config: AppConfig, session_factory: SessionFactory) -> SessionManager:
    return SessionManager(config, factory=session_factory)


def make_videos(count: int) -> List[Video]:
    return [
        Video(id=i, url=f"https://example.com/videos/{i}", page_num=1, title=f"Video {i}")
        for i in range(1, count + 1)
    ]
