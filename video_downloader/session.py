"""Shared Playwright browser session with invalidate-and-retry support."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import AppConfig

logger = logging.getLogger("video_downloader")

T = TypeVar("T")

SessionFactory = Callable[[], Awaitable[Any]]


@dataclass
class BrowserSession:
    """A live browser with the single page every stage navigates."""

    playwright: Playwright
    browser: Browser
    context: BrowserContext
    page: Page

    async def close(self) -> None:
        try:
            await self.browser.close()
        finally:
            await self.playwright.stop()


async def launch_session(config: AppConfig) -> BrowserSession:
    """Launch Chromium, or attach to a running browser over CDP."""
    general = config.general
    playwright = await async_playwright().start()
    try:
        if general.ws_endpoint:
            logger.info("Connecting to existing browser at %s", general.ws_endpoint)
            browser = await playwright.chromium.connect_over_cdp(general.ws_endpoint)
        else:
            logger.info("Launching Chromium (headless=%s)", general.headless)
            browser = await playwright.chromium.launch(
                headless=general.headless,
                args=["--disable-dev-shm-usage", "--no-sandbox"],
            )

        if general.existing_page and browser.contexts and browser.contexts[0].pages:
            context = browser.contexts[0]
            page = context.pages[0]
        else:
            context = await browser.new_context(
                user_agent=general.user_agent,
                accept_downloads=True,
                no_viewport=True,
            )
            page = await context.new_page()

        if config.cookies:
            await context.add_cookies(
                [
                    {
                        "name": cookie.name,
                        "value": cookie.value,
                        "domain": cookie.domain,
                        "path": cookie.path,
                    }
                    for cookie in config.cookies
                ]
            )
        page.set_default_navigation_timeout(general.navigation_timeout * 1000)
    except BaseException:
        await playwright.stop()
        raise
    return BrowserSession(playwright=playwright, browser=browser, context=context, page=page)


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    """Raise ``asyncio.CancelledError`` once cancellation has been requested."""
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError("Cancellation requested")


async def cancellable_sleep(seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
    """Sleep for ``seconds`` unless cancellation is requested first."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise asyncio.CancelledError("Cancellation requested during backoff")


class SessionManager:
    """Owns the one browser session shared by every stage.

    The session is created on first use, reused while healthy and discarded
    after a failed attempt so the next attempt starts from a fresh browser.
    Callers borrow the session for a single operation and must not keep it.
    """

    def __init__(
        self,
        config: AppConfig,
        factory: Optional[SessionFactory] = None,
    ) -> None:
        self.max_attempts = config.general.max_attempts
        self.backoff_delay = config.general.browser_restart_delay
        self._factory = factory or (lambda: launch_session(config))
        self._session: Any = None

    @property
    def active(self) -> bool:
        return self._session is not None

    async def get_session(self) -> Any:
        if self._session is None:
            self._session = await self._factory()
        return self._session

    async def invalidate(self) -> None:
        """Discard the current session; teardown errors are logged, never raised."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.close()
        except Exception:  # noqa: BLE001 - a dead browser must not block a new one
            logger.warning("Failed to close browser session cleanly", exc_info=True)

    async def close(self) -> None:
        if self._session is not None:
            logger.info("Closing browser session")
        await self.invalidate()

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def with_retry(
        self,
        operation: Callable[[Any], Awaitable[T]],
        *,
        max_attempts: Optional[int] = None,
        backoff_delay: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        borrow_session: bool = True,
    ) -> T:
        """Run ``operation(session)`` with bounded, fixed-delay retries.

        A failed attempt that will be retried invalidates the session first.
        The last failure is re-raised once attempts are exhausted.
        ``asyncio.CancelledError`` is never retried. With
        ``borrow_session=False`` the operation receives ``None`` and the
        browser is left alone.
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay = backoff_delay if backoff_delay is not None else self.backoff_delay

        async def _sleep(seconds: float) -> None:
            await cancellable_sleep(seconds, cancel_event)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
            sleep=_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                raise_if_cancelled(cancel_event)
                session = await self.get_session() if borrow_session else None
                try:
                    return await operation(session)
                except Exception:
                    if borrow_session and attempt.retry_state.attempt_number < attempts:
                        await self.invalidate()
                    raise
        raise RuntimeError("unreachable")  # pragma: no cover - tenacity exhausts attempts


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Attempt %d failed (%s: %s), retrying in %.1fs",
        retry_state.attempt_number,
        type(exc).__name__,
        exc,
        delay,
    )
