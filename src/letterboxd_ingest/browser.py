"""
Browser lifecycle management.

One shared Chromium instance serves ad-hoc single-page scrapes (lazy,
reused while connected, closed after an idle period). Paginated jobs get
a dedicated instance that is closed when the job ends. Pages are always
opened in their own browser context so they never share cookies or
routing with other callers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .config import (
    BLOCKED_RESOURCE_TYPES,
    BROWSER_HEADERS,
    BROWSER_IDLE_TIMEOUT,
    STEALTH_INIT_SCRIPT,
    TRACKING_DOMAINS,
    USER_AGENT,
    ExecutionProfile,
    get_execution_profile,
)
from .errors import ResourceExhaustion

logger = logging.getLogger(__name__)


def _is_tracking_host(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(token in host for token in TRACKING_DOMAINS)


async def _block_nonessential(route) -> None:
    """Route handler for constrained profiles: drop images, fonts, styles, media and trackers."""
    request = route.request
    if request.resource_type in BLOCKED_RESOURCE_TYPES or _is_tracking_host(request.url):
        await route.abort()
    else:
        await route.continue_()


class BrowserManager:
    """
    Owns the Playwright driver, the shared browser and every job browser.

    Use ``page_session()`` for single-page work and ``job_browser()`` for
    paginated jobs; both release what they acquire on every exit path.
    """

    def __init__(self, profile: ExecutionProfile | None = None, idle_timeout: float = BROWSER_IDLE_TIMEOUT):
        self.profile = profile or get_execution_profile()
        self.idle_timeout = idle_timeout
        self._driver = None
        self._driver_lock = asyncio.Lock()
        self._shared = None
        self._launching: asyncio.Future | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._idle_close_task: asyncio.Task | None = None
        self._active_sessions = 0
        self._job_browsers: set = set()
        self.launch_count = 0

    async def _ensure_driver(self):
        async with self._driver_lock:
            if self._driver is None:
                self._driver = await async_playwright().start()
                logger.debug("Playwright driver started")
            return self._driver

    async def _launch(self):
        """Launch Chromium, falling back once to the alternate configuration."""
        driver = await self._ensure_driver()
        last_error: Exception | None = None
        for attempt, options in enumerate(self.profile.launch_options(), start=1):
            try:
                browser = await driver.chromium.launch(**options)
                self.launch_count += 1
                logger.info(f"Launched browser ({self.profile.name} profile, attempt {attempt})")
                return browser
            except PlaywrightError as exc:
                last_error = exc
                logger.warning(f"Browser launch attempt {attempt} failed: {exc}")
        raise ResourceExhaustion(f"Browser launch failed: {last_error}") from last_error

    # Shared browser

    def _on_launch_done(self, future: asyncio.Future) -> None:
        self._launching = None
        if not future.cancelled() and future.exception() is None:
            self._shared = future.result()

    async def acquire_shared_browser(self):
        """
        Return the connected shared browser, launching it if needed.

        Concurrent callers during a launch await the same in-flight launch.
        """
        if self._shared is not None and self._shared.is_connected():
            self._schedule_idle_close()
            return self._shared

        launch = self._launching
        if launch is None:
            self._shared = None
            launch = asyncio.ensure_future(self._launch())
            launch.add_done_callback(self._on_launch_done)
            self._launching = launch

        browser = await asyncio.shield(launch)
        self._schedule_idle_close()
        return browser

    def _schedule_idle_close(self) -> None:
        """(Re)arm the idle timer; stays disarmed while shared-browser pages are open."""
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        if self._active_sessions > 0:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.idle_timeout, self._on_idle_timeout)

    def _on_idle_timeout(self) -> None:
        self._idle_handle = None
        if self._active_sessions == 0:
            self._idle_close_task = asyncio.ensure_future(self.close_shared_browser())

    async def close_shared_browser(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        browser, self._shared = self._shared, None
        if browser is None:
            return
        logger.info("Closing shared browser")
        try:
            await browser.close()
        except PlaywrightError as exc:
            logger.warning(f"Error closing shared browser: {exc}")

    # Job browsers

    async def acquire_job_browser(self):
        """Launch a browser owned by a single paginated job."""
        browser = await self._launch()
        self._job_browsers.add(browser)
        return browser

    async def release_browser(self, browser) -> bool:
        """
        Close a job browser. Returns False (and does nothing) if it was
        already released.
        """
        if browser is self._shared:
            await self.close_shared_browser()
            return True
        if browser not in self._job_browsers:
            logger.debug("Browser already released")
            return False
        self._job_browsers.discard(browser)
        try:
            if browser.is_connected():
                await browser.close()
            logger.info("Job browser closed")
        except PlaywrightError as exc:
            logger.warning(f"Error closing job browser: {exc}")
        return True

    @asynccontextmanager
    async def job_browser(self):
        browser = await self.acquire_job_browser()
        try:
            yield browser
        finally:
            await self.release_browser(browser)

    # Pages

    async def new_page(self, browser, profile: ExecutionProfile | None = None):
        """Open a page in a fresh context with the profile's viewport and countermeasures."""
        profile = profile or self.profile
        context = await browser.new_context(
            user_agent=USER_AGENT,
            viewport=profile.viewport,
            extra_http_headers=BROWSER_HEADERS,
            locale="en-US",
        )
        try:
            await context.add_init_script(STEALTH_INIT_SCRIPT)
            if profile.block_resources:
                await context.route("**/*", _block_nonessential)
            return await context.new_page()
        except BaseException:
            await context.close()
            raise

    async def release_page(self, page) -> None:
        """Close a page together with its context."""
        try:
            await page.close()
        except PlaywrightError as exc:
            logger.warning(f"Error closing page: {exc}")
        try:
            await page.context.close()
        except PlaywrightError as exc:
            logger.warning(f"Error closing browser context: {exc}")

    @asynccontextmanager
    async def page_session(self, browser=None):
        """
        Yield a configured page on ``browser`` (the shared browser by default).

        While a shared-browser page is open the idle timer is held off; it is
        re-armed when the last such page closes.
        """
        shared = browser is None or browser is self._shared
        if shared:
            self._active_sessions += 1
        try:
            if browser is None:
                browser = await self.acquire_shared_browser()
            page = await self.new_page(browser)
            try:
                yield page
            finally:
                await self.release_page(page)
        finally:
            if shared:
                self._active_sessions -= 1
                if self._shared is not None:
                    self._schedule_idle_close()

    async def close(self) -> None:
        """Close every browser and stop the driver."""
        await self.close_shared_browser()
        if self._idle_close_task is not None and not self._idle_close_task.done():
            await self._idle_close_task
        self._idle_close_task = None
        for browser in list(self._job_browsers):
            await self.release_browser(browser)
        if self._driver is not None:
            try:
                await self._driver.stop()
            except PlaywrightError as exc:
                logger.warning(f"Error stopping Playwright driver: {exc}")
            self._driver = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
