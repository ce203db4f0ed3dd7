import logging

import httpx
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from selectolax.parser import HTMLParser

from .browser import BrowserManager
from .config import (
    LETTERBOXD_BASE,
    MIN_BODY_TEXT_LENGTH,
    PAGINATION_SECTION,
    PAGINATION_TIMEOUT,
    RATINGS_ZERO_FILL,
    USER_AGENT,
    USER_CHECK_TIMEOUT,
)
from .errors import ContentNotFound, ProfileNotFound
from .extraction import (
    SelectorSpec,
    extract_films,
    extract_key_values,
    extract_profile,
    extract_ratings,
    extract_total_pages,
    parse_film_aggregate,
    validate_page,
)
from .loader import await_content_ready, load_with_retry, snapshot
from .models import FilmAggregate, FilmsPage, KeyValueRecord, RatingBucket, UserProfileSnapshot
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)


def build_films_page_url(username: str, page_num: int) -> str:
    if page_num == 1:
        return f"{LETTERBOXD_BASE}/{username}/films/"
    return f"{LETTERBOXD_BASE}/{username}/films/page/{page_num}/"


def check_response(response, subject: str, not_found: type[ContentNotFound] = ProfileNotFound) -> None:
    """Reject HTTP error responses: 404 means the subject is missing, any other 4xx/5xx is a failed load."""
    if response is None or response.status < 400:
        return
    if response.status == 404:
        raise not_found(subject, "HTTP 404")
    raise ContentNotFound(subject, f"HTTP {response.status}")


class LetterboxdScraper:
    """
    Single-page Letterboxd scrapes on top of a BrowserManager.

    Ad-hoc operations (ratings, profile, film stats, generic extraction)
    use a page on the shared browser; ``scrape_films_page`` takes the
    browser explicitly so a paginated job can pass its dedicated one.
    """

    BASE = LETTERBOXD_BASE

    def __init__(self, manager: BrowserManager | None = None, zero_fill: bool = RATINGS_ZERO_FILL):
        self.manager = manager or BrowserManager()
        self.zero_fill = zero_fill

    async def _open(
        self,
        page,
        url: str,
        subject: str,
        not_found: type[ContentNotFound] = ProfileNotFound,
        preferred_wait: str | None = None,
        min_body_length: int = MIN_BODY_TEXT_LENGTH,
    ) -> HTMLParser:
        """Navigate, wait for content, snapshot and validate."""
        profile = self.manager.profile
        response = await load_with_retry(page, url, preferred_wait, profile.loading_strategies)
        check_response(response, subject, not_found)

        await await_content_ready(page, timeout=profile.element_wait_timeout)
        tree = await snapshot(page)
        validate_page(tree, subject, not_found, min_body_length)
        return tree

    async def scrape_user_ratings(self, username: str) -> list[RatingBucket]:
        """Rating histogram from the user's profile page."""
        logger.info(f"Fetching ratings for {username}...")
        async with self.manager.page_session() as page:
            tree = await self._open(page, f"{self.BASE}/{username}/", username)

        ratings = extract_ratings(tree, zero_fill=self.zero_fill)
        logger.info(f"Extracted {len(ratings)} rating buckets for {username}")
        return ratings

    async def scrape_user_profile(self, username: str) -> UserProfileSnapshot:
        logger.info(f"Fetching profile data for {username}...")
        async with self.manager.page_session() as page:
            tree = await self._open(page, f"{self.BASE}/{username}/", username)

        profile = extract_profile(tree, username)
        logger.info(
            f"Profile data extracted: display_name='{profile.display_name}', followers={profile.followers}, "
            f"following={profile.following}, lists={profile.list_count}"
        )
        return profile

    async def scrape_films_page(self, browser, username: str, page_num: int) -> FilmsPage:
        """
        One page of the user's film list, on ``browser``.

        Every page is status-checked and validated before extraction, so an
        error or soft-block page fails instead of reading as an empty page.
        Page 1 also yields the total page count.
        """
        url = build_films_page_url(username, page_num)
        profile = self.manager.profile

        async with self.manager.page_session(browser) as page:
            response = await load_with_retry(page, url, strategies=profile.loading_strategies)
            check_response(response, username)

            if page_num == 1:
                try:
                    await page.wait_for_selector(PAGINATION_SECTION, timeout=PAGINATION_TIMEOUT)
                except PlaywrightTimeoutError:
                    logger.debug("No pagination found, treating as single page")
            else:
                await await_content_ready(page, timeout=profile.element_wait_timeout)
            tree = await snapshot(page)

        validate_page(tree, username)
        total_pages = extract_total_pages(tree) if page_num == 1 else 1

        films = extract_films(tree)
        liked = sum(1 for film in films if film.liked)
        logger.info(f"Fetched {len(films)} films from page {page_num} ({liked} liked)")
        return FilmsPage(page_number=page_num, films=films, total_pages=total_pages)

    async def scrape_film_aggregate(self, slug: str) -> FilmAggregate:
        """Average rating and rating count from the film page's structured data."""
        async with self.manager.page_session() as page:
            tree = await self._open(
                page, f"{self.BASE}/film/{slug}/", slug,
                not_found=ContentNotFound, preferred_wait="networkidle",
            )
        return parse_film_aggregate(tree, slug)

    async def scrape_film_ratings_distribution(self, slug: str) -> list[RatingBucket]:
        # The ratings-summary fragment is tiny, so the body-length check is skipped
        async with self.manager.page_session() as page:
            tree = await self._open(
                page, f"{self.BASE}/csi/film/{slug}/ratings-summary/", slug,
                not_found=ContentNotFound, preferred_wait="networkidle", min_body_length=0,
            )
        return extract_ratings(tree, zero_fill=self.zero_fill)

    async def extract_data(
        self,
        url: str,
        specs: list[SelectorSpec],
        wait_for: str | None = None,
    ) -> list[KeyValueRecord]:
        """Generic extraction of named selectors from an arbitrary page."""
        profile = self.manager.profile
        async with self.manager.page_session() as page:
            await load_with_retry(page, url, strategies=profile.loading_strategies)
            if wait_for:
                await await_content_ready(page, wait_for, timeout=profile.element_wait_timeout)
            tree = await snapshot(page)

        records = extract_key_values(tree, specs)
        logger.info(f"Extracted {len(records)} records from {url}")
        return records

    @async_retry_with_backoff(max_retries=2, exceptions=(httpx.TransportError,))
    async def _head(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        return await client.head(url)

    async def check_user_exists(self, username: str, client: httpx.AsyncClient | None = None) -> bool:
        """
        Cheap existence check via HTTP HEAD; Letterboxd answers 404 for
        unknown users. Network failures count as "does not exist".
        """
        url = f"{self.BASE}/{username}/"
        owns_client = client is None
        if owns_client:
            client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=USER_CHECK_TIMEOUT,
            )
        try:
            resp = await self._head(client, url)
        except httpx.HTTPError as exc:
            logger.error(f"Error verifying user {username}: {exc}")
            return False
        finally:
            if owns_client:
                await client.aclose()

        if resp.status_code >= 500:
            logger.warning(f"Letterboxd returned {resp.status_code} while verifying {username}")
        return resp.status_code == 200
