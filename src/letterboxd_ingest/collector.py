import asyncio
import logging
from enum import Enum

from .config import MEMORY_CLEANUP_INTERVAL
from .errors import PartialPageFailure
from .models import FilmRecord, ScrapeJob
from .progress import EventType, ProgressChannel
from .scraper import LetterboxdScraper
from .utils import force_garbage_collection

logger = logging.getLogger(__name__)


class CollectorState(str, Enum):
    INIT = "init"
    FETCHING_PAGE = "fetching_page"
    PAGE_EXTRACTED = "page_extracted"
    DONE = "done"
    FAILED = "failed"


class FilmListCollector:
    """
    Collects a user's whole film list on a dedicated browser.

    Pages are fetched strictly in order, one at a time, with a fixed delay
    between them. Any page failing aborts the collection: a truncated film
    list is never returned.
    """

    def __init__(
        self,
        scraper: LetterboxdScraper,
        page_delay: float | None = None,
        cleanup_interval: int = MEMORY_CLEANUP_INTERVAL,
    ):
        self.scraper = scraper
        self.manager = scraper.manager
        self.page_delay = self.manager.profile.page_delay if page_delay is None else page_delay
        self.cleanup_interval = max(1, cleanup_interval)
        self.state = CollectorState.INIT
        self.pages_fetched: list[int] = []

    def _transition(self, state: CollectorState, page_num: int | None = None) -> None:
        logger.debug(f"Collector {self.state.value} -> {state.value}" + (f" (page {page_num})" if page_num else ""))
        self.state = state

    async def collect(self, job: ScrapeJob, channel: ProgressChannel) -> list[FilmRecord]:
        """
        Fetch every page of ``job.username``'s films.

        The dedicated browser is released on every exit path.
        """
        self.state = CollectorState.INIT
        self.pages_fetched = []
        channel.emit(EventType.BROWSER_LAUNCH, "Launching browser...")
        try:
            async with self.manager.job_browser() as browser:
                films = await self._collect_pages(browser, job, channel)
        except BaseException:
            self._transition(CollectorState.FAILED)
            raise

        self._transition(CollectorState.DONE)
        logger.info(
            f"Collected {len(films)} films for {job.username} across {job.total_pages} pages "
            f"in {job.elapsed:.1f}s ({sum(1 for f in films if f.liked)} liked)"
        )
        return films

    async def _collect_pages(self, browser, job: ScrapeJob, channel: ProgressChannel) -> list[FilmRecord]:
        username = job.username

        self._transition(CollectorState.FETCHING_PAGE, 1)
        job.current_page = 1
        channel.emit(EventType.FETCHING_FIRST_PAGE, f"Fetching first page for {username}...", current_page=1)
        first = await self.scraper.scrape_films_page(browser, username, 1)
        self.pages_fetched.append(1)

        job.total_pages = first.total_pages
        job.records.extend(first.films)
        self._transition(CollectorState.PAGE_EXTRACTED, 1)
        channel.emit(
            EventType.PAGE_EXTRACTED,
            f"Extracted {len(first.films)} films from page 1",
            current_page=1,
            total_pages=job.total_pages,
            films_on_page=len(first.films),
            total_films=len(job.records),
        )
        channel.emit(
            EventType.PAGES_FOUND,
            f"Found {job.total_pages} pages to scrape",
            total_pages=job.total_pages,
            films_on_first_page=len(first.films),
        )
        channel.raise_if_cancelled()

        for page_num in range(2, job.total_pages + 1):
            await asyncio.sleep(self.page_delay)
            channel.raise_if_cancelled()

            job.current_page = page_num
            self._transition(CollectorState.FETCHING_PAGE, page_num)
            channel.emit(
                EventType.PAGE_START,
                f"Scraping page {page_num} of {job.total_pages}...",
                current_page=page_num,
                total_pages=job.total_pages,
                total_films=len(job.records),
            )

            try:
                page = await self.scraper.scrape_films_page(browser, username, page_num)
            except Exception as exc:
                logger.error(f"Page {page_num}/{job.total_pages} failed for {username}: {exc}")
                raise PartialPageFailure(page_num, job.total_pages, exc) from exc
            self.pages_fetched.append(page_num)

            if not page.films:
                logger.warning(f"Page {page_num} returned no films for {username}")
            job.records.extend(page.films)

            self._transition(CollectorState.PAGE_EXTRACTED, page_num)
            channel.emit(
                EventType.PAGE_EXTRACTED,
                f"Extracted {len(page.films)} films from page {page_num}",
                current_page=page_num,
                total_pages=job.total_pages,
                films_on_page=len(page.films),
                total_films=len(job.records),
            )
            channel.emit(
                EventType.PAGE_COMPLETE,
                f"Page {page_num} of {job.total_pages} complete",
                current_page=page_num,
                total_pages=job.total_pages,
                total_films=len(job.records),
                progress=round(page_num / job.total_pages * 100),
            )

            if page_num % self.cleanup_interval == 0:
                freed = force_garbage_collection()
                channel.emit(
                    EventType.MEMORY_CLEANUP,
                    f"Memory cleanup after page {page_num}",
                    current_page=page_num,
                    objects_freed=freed,
                )
            channel.raise_if_cancelled()

        return list(job.records)
