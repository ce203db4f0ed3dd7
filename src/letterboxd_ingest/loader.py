"""Navigation with a fixed ladder of wait conditions, and content readiness."""
import asyncio
import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from selectolax.parser import HTMLParser

from .config import CONTENT_SETTLE_DELAY, ELEMENT_WAIT_TIMEOUT, LOADING_STRATEGIES, PageLoadStrategy
from .errors import NavigationTimeout

logger = logging.getLogger(__name__)


def _strategies_for(strategies, preferred_wait: str | None) -> list[PageLoadStrategy]:
    """
    The preferred wait condition replaces the middle ('network idle') rung
    while keeping that rung's timeout.
    """
    ladder = list(strategies)
    if preferred_wait and len(ladder) > 1:
        middle = ladder[1]
        ladder[1] = PageLoadStrategy(preferred_wait, middle.timeout)
    return ladder


async def load_with_retry(page, url: str, preferred_wait: str | None = None, strategies=LOADING_STRATEGIES):
    """
    Navigate ``page`` to ``url``, trying each strategy in order.

    Returns the navigation response of the first strategy that succeeds.
    Raises NavigationTimeout once every strategy has failed.
    """
    ladder = _strategies_for(strategies, preferred_wait)
    for attempt, strategy in enumerate(ladder, start=1):
        try:
            logger.debug(f"Loading {url} (wait_until={strategy.wait_until}, timeout={strategy.timeout}ms)")
            response = await page.goto(url, wait_until=strategy.wait_until, timeout=strategy.timeout)
            logger.debug(f"Loaded {url} with strategy {attempt}/{len(ladder)}")
            return response
        except PlaywrightTimeoutError as exc:
            logger.warning(f"Strategy {attempt}/{len(ladder)} ({strategy.wait_until}) timed out for {url}: {exc}")
        except PlaywrightError as exc:
            logger.warning(f"Strategy {attempt}/{len(ladder)} ({strategy.wait_until}) failed for {url}: {exc}")
    raise NavigationTimeout(url, attempts=len(ladder))


async def await_content_ready(
    page,
    selector: str = "body",
    timeout: int = ELEMENT_WAIT_TIMEOUT,
    settle_delay: float = CONTENT_SETTLE_DELAY,
) -> bool:
    """
    Race a selector wait against a fixed settle delay.

    Returns True when the selector appeared first, False when the delay
    won or the wait failed. Never raises on a missing selector.
    """
    selector_wait = asyncio.ensure_future(page.wait_for_selector(selector, timeout=timeout))
    settle = asyncio.ensure_future(asyncio.sleep(settle_delay))
    try:
        done, _ = await asyncio.wait({selector_wait, settle}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (selector_wait, settle):
            if not task.done():
                task.cancel()

    if selector_wait in done:
        exc = selector_wait.exception()
        if exc is None:
            return True
        logger.debug(f"Waiting for '{selector}' failed: {exc}")
    return False


async def snapshot(page) -> HTMLParser:
    """Detached copy of the page's current DOM."""
    return HTMLParser(await page.content())
