"""
Top-level entry points: run one scrape job for one user and hand the
results to the persistence collaborator.

A job's primary artifact (the profile, the ratings histogram, or the
film list) must be saved for the job to succeed. Secondary steps, such
as the ratings refresh that follows a film-list scrape, only produce
warnings when they fail.
"""
import asyncio
import logging
from dataclasses import asdict

from .collector import FilmListCollector
from .config import HEARTBEAT_INTERVAL, JOB_TIMEOUT, REFRESH_USER_DELAY
from .database import SqliteStore
from .errors import JobCancelled, JobTimeout, PersistenceError, ScrapeError
from .models import JobKind, JobResult, ScrapeJob
from .progress import EventType, ProgressChannel
from .scraper import LetterboxdScraper

logger = logging.getLogger(__name__)


class IngestionOrchestrator:
    """
    Sequences scrape and save steps for profile, ratings and films jobs.

    ``store`` must provide ``upsert_profile``, ``upsert_ratings`` and
    ``upsert_films`` returning an object with ``success`` and ``error``
    (see SqliteStore); they are called from a worker thread.
    """

    def __init__(self, scraper: LetterboxdScraper | None = None, store=None, collector: FilmListCollector | None = None):
        self.scraper = scraper or LetterboxdScraper()
        self.store = store if store is not None else SqliteStore()
        self.collector = collector or FilmListCollector(self.scraper)

    async def _save(self, method, username: str, payload, label: str) -> None:
        result = await asyncio.to_thread(method, username, payload)
        if not result.success:
            raise PersistenceError(f"Failed to save {label} for {username}: {result.error}")

    async def run(self, username: str, kind: JobKind | str, channel: ProgressChannel | None = None) -> JobResult:
        """
        Run one job to completion and return its result.

        Progress goes to ``channel`` when given (streaming); without one the
        job still gets a private channel so the wall-clock limit applies.
        Failures are emitted as a terminal ``error`` event and re-raised.
        """
        kind = JobKind(kind)
        job = ScrapeJob(username=username, kind=kind)
        result = JobResult(username=username, kind=kind)

        owns_channel = channel is None
        if owns_channel:
            channel = ProgressChannel(heartbeat_interval=None).open()

        # The wall-clock limit interrupts whatever the job is awaiting
        task = asyncio.current_task()

        def _hard_stop(reason: str) -> None:
            if reason == "timeout" and task is not None:
                task.cancel()

        channel.on_cancel(_hard_stop)

        channel.emit(EventType.INIT, f"Starting {kind.value} job for {username}", username=username, kind=kind.value)
        try:
            if kind is JobKind.PROFILE:
                await self._profile_job(job, channel, result)
            elif kind is JobKind.RATINGS:
                await self._refresh_ratings(job, channel, result, primary=True)
            else:
                await self._films_job(job, channel, result)
            channel.raise_if_cancelled()

            result.elapsed = job.elapsed
            channel.complete(
                f"Finished {kind.value} job for {username}",
                username=username,
                kind=kind.value,
                total_films=len(result.films),
                total_pages=job.total_pages,
                ratings_count=len(result.ratings),
                profile=asdict(result.profile) if result.profile else None,
                warnings=list(result.warnings),
                elapsed=round(result.elapsed, 2),
            )
        except asyncio.CancelledError:
            if channel.cancel_reason == "timeout":
                raise JobTimeout(f"{kind.value} job for {username} exceeded {channel.job_timeout:.0f}s") from None
            raise
        except JobCancelled as exc:
            logger.info(f"{kind.value} job for {username} stopped: {exc}")
            channel.fail(exc)
            raise
        except Exception as exc:
            logger.error(f"{kind.value} job for {username} failed: {exc}")
            channel.fail(exc)
            raise
        finally:
            if owns_channel:
                channel.close()

        logger.info(f"{kind.value} job for {username} completed in {result.elapsed:.1f}s")
        return result

    async def _profile_job(self, job: ScrapeJob, channel: ProgressChannel, result: JobResult) -> None:
        username = job.username
        channel.emit(EventType.SCRAPING_PROFILE, f"Fetching profile for {username}...")
        profile = await self.scraper.scrape_user_profile(username)
        channel.raise_if_cancelled()

        channel.emit(EventType.SAVING, "Saving profile...")
        await self._save(self.store.upsert_profile, username, profile, "profile")
        result.profile = profile
        job.records.append(profile)
        channel.emit(
            EventType.PROFILE_COMPLETE,
            f"Saved profile for {profile.display_name}",
            display_name=profile.display_name,
            followers=profile.followers,
            following=profile.following,
            list_count=profile.list_count,
        )

        await self._refresh_ratings(job, channel, result, primary=False)

    async def _films_job(self, job: ScrapeJob, channel: ProgressChannel, result: JobResult) -> None:
        films = await self.collector.collect(job, channel)
        channel.raise_if_cancelled()

        channel.emit(EventType.SAVING, f"Saving {len(films)} films...", total_films=len(films))
        await self._save(self.store.upsert_films, job.username, films, "films")
        result.films = films

        await self._refresh_ratings(job, channel, result, primary=False)

    async def _refresh_ratings(self, job: ScrapeJob, channel: ProgressChannel, result: JobResult, primary: bool) -> None:
        """Scrape and save the ratings histogram; failures are warnings unless ``primary``."""
        username = job.username
        channel.emit(EventType.SCRAPING_RATINGS, f"Fetching ratings for {username}...")
        try:
            ratings = await self.scraper.scrape_user_ratings(username)
            channel.raise_if_cancelled()
            channel.emit(EventType.SAVING_RATINGS, f"Saving {len(ratings)} rating buckets...")
            await self._save(self.store.upsert_ratings, username, ratings, "ratings")
        except Exception as exc:
            if primary or isinstance(exc, (JobCancelled, JobTimeout)):
                raise
            warning = f"Ratings refresh failed: {exc}"
            logger.warning(f"{warning} (user {username})")
            result.warnings.append(warning)
            channel.emit(EventType.RATINGS_WARNING, warning, code=getattr(exc, "code", None))
            return

        result.ratings = ratings
        if primary:
            job.records.extend(ratings)
        channel.emit(
            EventType.RATINGS_COMPLETE,
            f"Saved {len(ratings)} rating buckets",
            ratings_count=len(ratings),
            total_ratings=sum(b.count for b in ratings),
        )

    def start(
        self,
        username: str,
        kind: JobKind | str,
        heartbeat_interval: float | None = HEARTBEAT_INTERVAL,
        job_timeout: float | None = JOB_TIMEOUT,
    ) -> tuple[ProgressChannel, asyncio.Task]:
        """
        Streaming variant: start the job in the background and return its
        channel for the consumer, plus the task running it.
        """
        channel = ProgressChannel(heartbeat_interval=heartbeat_interval, job_timeout=job_timeout).open()
        task = asyncio.create_task(self._run_streaming(username, kind, channel))
        return channel, task

    async def _run_streaming(self, username: str, kind: JobKind | str, channel: ProgressChannel) -> JobResult | None:
        try:
            return await self.run(username, kind, channel)
        except ScrapeError as exc:
            # Already delivered to the consumer as the terminal error event
            logger.info(f"Streaming job for {username} ended: {exc.code}")
            return None
        finally:
            channel.close()

    async def refresh_all_users(
        self,
        kinds: tuple = (JobKind.PROFILE,),
        delay: float = REFRESH_USER_DELAY,
    ) -> dict:
        """
        Refresh every stored user sequentially; one user's failure does not
        stop the batch.
        """
        usernames = await asyncio.to_thread(self.store.list_usernames)
        summary = {'total': len(usernames), 'succeeded': 0, 'failed': 0, 'errors': []}
        logger.info(f"Refreshing {len(usernames)} users")

        for index, username in enumerate(usernames):
            try:
                for kind in kinds:
                    await self.run(username, kind)
                summary['succeeded'] += 1
            except ScrapeError as exc:
                summary['failed'] += 1
                summary['errors'].append({'username': username, 'error': exc.message, 'code': exc.code})
            if index < len(usernames) - 1:
                await asyncio.sleep(delay)

        logger.info(f"Refresh complete: {summary['succeeded']} succeeded, {summary['failed']} failed")
        return summary
