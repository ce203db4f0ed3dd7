import argparse
import asyncio
import atexit
import json
import logging
from dataclasses import asdict

from tqdm import tqdm

from .browser import BrowserManager
from .config import REFRESH_USER_DELAY, get_execution_profile
from .database import (
    SqliteStore, close_pool, get_stats, init_db,
    load_user_films, load_user_profile, load_user_ratings,
)
from .errors import ScrapeError
from .extraction import SelectorSpec
from .ingest import IngestionOrchestrator
from .models import JobKind, JobResult
from .progress import EventType, ProgressEvent
from .scraper import LetterboxdScraper
from .utils import validate_username

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _build_scraper(args: argparse.Namespace) -> LetterboxdScraper:
    constrained = True if getattr(args, 'constrained', False) else None
    manager = BrowserManager(get_execution_profile(constrained))
    zero_fill = not getattr(args, 'omit_empty_buckets', False)
    return LetterboxdScraper(manager, zero_fill=zero_fill)


def _build_orchestrator(args: argparse.Namespace) -> IngestionOrchestrator:
    return IngestionOrchestrator(scraper=_build_scraper(args), store=SqliteStore())


def _username_or_exit(raw: str) -> str:
    try:
        return validate_username(raw)
    except ValueError as exc:
        logger.error(str(exc))
        raise SystemExit(2)


def format_event(event: ProgressEvent, fmt: str) -> str:
    if fmt == "sse":
        return event.to_sse()
    if fmt == "json":
        return json.dumps(event.to_dict(), default=str)
    return f"[{event.type.value}] {event.message}"


async def _stream_job(orchestrator: IngestionOrchestrator, username: str, kind: JobKind, fmt: str) -> JobResult | None:
    """Consume a streaming job's events, with a page progress bar in text mode."""
    channel, task = orchestrator.start(username, kind)
    bar = None
    try:
        async for event in channel.events():
            if fmt == "text":
                if event.type is EventType.PAGES_FOUND and event.data.get('total_pages', 1) > 1:
                    bar = tqdm(total=event.data['total_pages'], initial=1, desc=f"{username} pages", unit="page")
                elif event.type is EventType.PAGE_COMPLETE and bar is not None:
                    bar.update(1)
                elif event.type is not EventType.HEARTBEAT:
                    tqdm.write(format_event(event, fmt))
            else:
                print(format_event(event, fmt), end="\n" if fmt == "json" else "", flush=True)
    finally:
        if bar is not None:
            bar.close()
        if not task.done():
            # Consumer stopped early (e.g. Ctrl-C): let the job clean up
            channel.disconnect()
    return await task


def _log_result(result: JobResult) -> None:
    logger.info(f"\n{result.kind.value.title()} job for {result.username} finished in {result.elapsed:.1f}s")
    if result.profile:
        p = result.profile
        logger.info(f"  {p.display_name}: {p.followers} followers, {p.following} following, {p.list_count} lists")
    if result.ratings:
        logger.info("  Ratings: " + ", ".join(f"{b.rating:g}★={b.count}" for b in result.ratings))
    if result.films:
        liked = sum(1 for f in result.films if f.liked)
        logger.info(f"  Films: {len(result.films)} ({liked} liked)")
    for warning in result.warnings:
        logger.warning(f"  {warning}")


async def _run_jobs(args: argparse.Namespace, username: str, kinds: list[JobKind]) -> list[JobResult | None]:
    orchestrator = _build_orchestrator(args)
    results = []
    try:
        for kind in kinds:
            if getattr(args, 'stream', False):
                results.append(await _stream_job(orchestrator, username, kind, args.format))
            else:
                results.append(await orchestrator.run(username, kind))
    finally:
        await orchestrator.scraper.manager.close()
    return results


def _cmd_jobs(args: argparse.Namespace, kinds: list[JobKind]) -> None:
    init_db()
    username = _username_or_exit(args.username)
    try:
        results = asyncio.run(_run_jobs(args, username, kinds))
    except ScrapeError as exc:
        logger.error(f"{exc.user_message} [{exc.code}] {exc.message}")
        raise SystemExit(1)

    if any(result is None for result in results):
        raise SystemExit(1)
    if not getattr(args, 'stream', False) or args.format == "text":
        for result in results:
            _log_result(result)


def cmd_ratings(args: argparse.Namespace) -> None:
    """Scrape and store a user's ratings histogram."""
    _cmd_jobs(args, [JobKind.RATINGS])


def cmd_profile(args: argparse.Namespace) -> None:
    """Scrape and store a user's profile (and refresh their ratings)."""
    _cmd_jobs(args, [JobKind.PROFILE])


def cmd_films(args: argparse.Namespace) -> None:
    """Scrape and store a user's full film list."""
    _cmd_jobs(args, [JobKind.FILMS])


def cmd_refresh(args: argparse.Namespace) -> None:
    kinds = [JobKind.PROFILE]
    if not args.skip_films:
        kinds.append(JobKind.FILMS)
    _cmd_jobs(args, kinds)


def cmd_refresh_all(args: argparse.Namespace) -> None:
    """Refresh every stored user sequentially."""
    init_db()
    kinds = (JobKind.PROFILE, JobKind.FILMS) if args.with_films else (JobKind.PROFILE,)

    async def run() -> dict:
        orchestrator = _build_orchestrator(args)
        try:
            return await orchestrator.refresh_all_users(kinds=kinds, delay=args.delay)
        finally:
            await orchestrator.scraper.manager.close()

    summary = asyncio.run(run())
    logger.info(f"\nRefreshed {summary['succeeded']}/{summary['total']} users ({summary['failed']} failed)")
    for error in summary['errors']:
        logger.info(f"  {error['username']}: [{error['code']}] {error['error']}")
    if summary['failed']:
        raise SystemExit(1)


def cmd_film_stats(args: argparse.Namespace) -> None:
    """Aggregate rating and rating distribution for one film."""
    init_db()
    scraper = _build_scraper(args)

    async def run():
        try:
            aggregate = await scraper.scrape_film_aggregate(args.slug)
            distribution = await scraper.scrape_film_ratings_distribution(args.slug)
            return aggregate, distribution
        finally:
            await scraper.manager.close()

    try:
        aggregate, distribution = asyncio.run(run())
    except ScrapeError as exc:
        logger.error(f"{exc.user_message} [{exc.code}] {exc.message}")
        raise SystemExit(1)

    if not args.no_save:
        store = SqliteStore(initialize=False)
        for save in (store.upsert_film_aggregate(aggregate), store.upsert_film_ratings(args.slug, distribution)):
            if not save.success:
                logger.warning(f"Could not save film stats for {args.slug}: {save.error}")

    logger.info(f"\n{args.slug}: average {aggregate.avg_rating} from {aggregate.rating_count} ratings")
    for bucket in distribution:
        logger.info(f"  {bucket.rating:>3g}★  {bucket.count}")


def cmd_extract(args: argparse.Namespace) -> None:
    """Generic extraction of named CSS selectors from any page."""
    try:
        specs = [SelectorSpec.parse(raw) for raw in args.select]
    except ValueError as exc:
        logger.error(str(exc))
        raise SystemExit(2)

    scraper = _build_scraper(args)

    async def run():
        try:
            return await scraper.extract_data(args.url, specs, wait_for=args.wait_for)
        finally:
            await scraper.manager.close()

    try:
        records = asyncio.run(run())
    except ScrapeError as exc:
        logger.error(f"{exc.user_message} [{exc.code}] {exc.message}")
        raise SystemExit(1)
    print(json.dumps([asdict(record) for record in records], indent=2, ensure_ascii=False))


def cmd_check_user(args: argparse.Namespace) -> None:
    username = _username_or_exit(args.username)
    exists = asyncio.run(LetterboxdScraper(BrowserManager()).check_user_exists(username))
    logger.info(f"{username}: {'exists' if exists else 'not found'}")
    if not exists:
        raise SystemExit(1)


def cmd_show(args: argparse.Namespace) -> None:
    """Show stored data for a user."""
    init_db()
    username = _username_or_exit(args.username)
    profile = load_user_profile(username)
    ratings = load_user_ratings(username)
    films = load_user_films(username)

    if not (profile or ratings or films):
        logger.info(f"No stored data for {username}")
        return

    if profile:
        logger.info(f"\n{profile.display_name} ({username})")
        logger.info(f"  Followers: {profile.followers}  Following: {profile.following}  Lists: {profile.list_count}")
    if ratings:
        logger.info("\nRatings:")
        total = sum(b.count for b in ratings) or 1
        for bucket in ratings:
            bar = "#" * round(bucket.count / total * 40)
            logger.info(f"  {bucket.rating:>3g}★ {bucket.count:>6} {bar}")
    if films:
        logger.info(f"\nFilms: {len(films)} ({sum(1 for f in films if f.liked)} liked)")
        for film in films[:args.limit]:
            rating = f"{film.rating:g}★" if film.rating else "-"
            logger.info(f"  {film.title} [{film.film_slug}] {rating}{' ♥' if film.liked else ''}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    init_db()
    stats = get_stats()
    logger.info("\nDatabase Statistics:")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  Profiles: {stats['profiles']}")
    logger.info(f"  User films: {stats['user_films']} ({stats['liked_films']} liked)")
    logger.info(f"  Film aggregates: {stats['film_aggregates']}")


def _add_job_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("username", help="Letterboxd username")
    parser.add_argument("--stream", action="store_true", help="Print progress events while the job runs")
    parser.add_argument("--format", choices=["text", "json", "sse"], default="text",
                        help="Event output format with --stream (default: text)")


def main():
    parser = argparse.ArgumentParser(description="Letterboxd ingestion engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--constrained", action="store_true",
                        help="Use the constrained execution profile (same as LETTERBOXD_CONSTRAINED=1)")
    parser.add_argument("--omit-empty-buckets", action="store_true",
                        help="Only report rating buckets with a positive count")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ratings_parser = subparsers.add_parser("ratings", help="Scrape a user's ratings histogram")
    _add_job_options(ratings_parser)
    ratings_parser.set_defaults(func=cmd_ratings)

    profile_parser = subparsers.add_parser("profile", help="Scrape a user's profile and ratings")
    _add_job_options(profile_parser)
    profile_parser.set_defaults(func=cmd_profile)

    films_parser = subparsers.add_parser("films", help="Scrape a user's full film list")
    _add_job_options(films_parser)
    films_parser.set_defaults(func=cmd_films)

    refresh_parser = subparsers.add_parser("refresh", help="Profile, ratings and films for one user")
    _add_job_options(refresh_parser)
    refresh_parser.add_argument("--skip-films", action="store_true", help="Skip the film list")
    refresh_parser.set_defaults(func=cmd_refresh)

    refresh_all_parser = subparsers.add_parser("refresh-all", help="Refresh every stored user")
    refresh_all_parser.add_argument("--with-films", action="store_true", help="Also re-scrape each film list")
    refresh_all_parser.add_argument("--delay", type=float, default=REFRESH_USER_DELAY,
                                    help=f"Seconds between users (default: {REFRESH_USER_DELAY})")
    refresh_all_parser.set_defaults(func=cmd_refresh_all)

    film_stats_parser = subparsers.add_parser("film-stats", help="Aggregate rating and distribution for a film")
    film_stats_parser.add_argument("slug", help="Film slug, e.g. 'perfect-blue'")
    film_stats_parser.add_argument("--no-save", action="store_true", help="Do not store the result")
    film_stats_parser.set_defaults(func=cmd_film_stats)

    extract_parser = subparsers.add_parser("extract", help="Extract named selectors from any page")
    extract_parser.add_argument("url", help="Page URL")
    extract_parser.add_argument("--select", "-s", action="append", required=True, metavar="NAME=CSS[@ATTR]",
                                help="Field to extract (repeatable)")
    extract_parser.add_argument("--wait-for", help="Selector to wait for before extracting")
    extract_parser.set_defaults(func=cmd_extract)

    check_parser = subparsers.add_parser("check-user", help="Check whether a Letterboxd user exists")
    check_parser.add_argument("username", help="Letterboxd username")
    check_parser.set_defaults(func=cmd_check_user)

    show_parser = subparsers.add_parser("show", help="Show stored data for a user")
    show_parser.add_argument("username", help="Letterboxd username")
    show_parser.add_argument("--limit", type=int, default=20, help="Films to list (default: 20)")
    show_parser.set_defaults(func=cmd_show)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
