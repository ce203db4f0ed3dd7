import httpx
import pytest

from conftest import FILLER, films_page_html, profile_page_html
from letterboxd_ingest import scraper
from letterboxd_ingest.errors import ContentNotFound, ExtractionEmpty, ProfileNotFound
from letterboxd_ingest.extraction import SelectorSpec
from letterboxd_ingest.models import RatingBucket

BASE = "https://letterboxd.com"


def test_build_films_page_url():
    assert scraper.build_films_page_url("alice", 1) == f"{BASE}/alice/films/"
    assert scraper.build_films_page_url("alice", 4) == f"{BASE}/alice/films/page/4/"


@pytest.mark.asyncio
async def test_scrape_user_ratings_and_profile(make_manager):
    manager, chromium = make_manager({f"{BASE}/alice/": (200, profile_page_html())})
    lb_scraper = scraper.LetterboxdScraper(manager)
    try:
        ratings = await lb_scraper.scrape_user_ratings("alice")
        profile = await lb_scraper.scrape_user_profile("alice")
    finally:
        await manager.close()

    assert len(ratings) == 10
    assert RatingBucket(rating=5.0, count=500) in ratings
    assert profile.display_name == "Alice A."
    assert profile.followers == 1200

    # Both scrapes reused the shared browser and closed their contexts
    assert len(chromium.browsers) == 1
    contexts = chromium.browsers[0].contexts
    assert len(contexts) == 2
    assert all(context.closed for context in contexts)


@pytest.mark.asyncio
async def test_zero_fill_policy_is_configurable(make_manager):
    manager, _ = make_manager({f"{BASE}/alice/": (200, profile_page_html())})
    lb_scraper = scraper.LetterboxdScraper(manager, zero_fill=False)
    try:
        ratings = await lb_scraper.scrape_user_ratings("alice")
    finally:
        await manager.close()

    assert [b.rating for b in ratings] == [2.5, 5.0]


@pytest.mark.asyncio
async def test_missing_user_raises_profile_not_found(make_manager):
    error_page = (200, "<html><head><title>Sorry, we can’t find the page • Error</title></head><body></body></html>")
    manager, _ = make_manager({f"{BASE}/imposter/": error_page})
    lb_scraper = scraper.LetterboxdScraper(manager)
    try:
        with pytest.raises(ProfileNotFound) as excinfo:
            await lb_scraper.scrape_user_ratings("ghost")
        assert excinfo.value.reason == "HTTP 404"

        with pytest.raises(ProfileNotFound):
            await lb_scraper.scrape_user_profile("imposter")
    finally:
        await manager.close()


@pytest.mark.parametrize("status, html", [
    (429, films_page_html(["alien"])),
    (503, "<html><body>Service Unavailable</body></html>"),
    (200, f"<html><head><title>Too Many Requests</title></head><body>{FILLER}</body></html>"),
    (200, "<html><head><title>Alice’s films • Letterboxd</title></head><body>slow down</body></html>"),
])
@pytest.mark.asyncio
async def test_later_film_pages_are_validated(make_manager, status, html):
    url = scraper.build_films_page_url("alice", 2)
    manager, _ = make_manager({url: (status, html)})
    lb_scraper = scraper.LetterboxdScraper(manager)
    try:
        async with manager.job_browser() as browser:
            with pytest.raises(ContentNotFound) as excinfo:
                await lb_scraper.scrape_films_page(browser, "alice", 2)
    finally:
        await manager.close()

    if status >= 400:
        assert excinfo.value.reason == f"HTTP {status}"
        assert not isinstance(excinfo.value, ProfileNotFound)


@pytest.mark.asyncio
async def test_later_film_page_with_films_passes(make_manager):
    url = scraper.build_films_page_url("alice", 2)
    manager, _ = make_manager({url: (200, films_page_html(["alien", "heat"]))})
    lb_scraper = scraper.LetterboxdScraper(manager)
    try:
        async with manager.job_browser() as browser:
            page = await lb_scraper.scrape_films_page(browser, "alice", 2)
    finally:
        await manager.close()

    assert [film.film_slug for film in page.films] == ["alien", "heat"]
    assert page.total_pages == 1


@pytest.mark.asyncio
async def test_profile_without_histogram_is_extraction_empty(make_manager):
    page = f"<html><head><title>Alice</title></head><body>{FILLER}</body></html>"
    manager, _ = make_manager({f"{BASE}/alice/": (200, page)})
    lb_scraper = scraper.LetterboxdScraper(manager)
    try:
        with pytest.raises(ExtractionEmpty):
            await lb_scraper.scrape_user_ratings("alice")
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_scrape_film_aggregate_and_distribution(make_manager):
    film_page = f"""
    <html><head><title>Alien (1979) • Letterboxd</title>
    <script type="application/ld+json">{{"aggregateRating": {{"ratingValue": 4.3, "ratingCount": 1500}}}}</script>
    </head><body>{FILLER}</body></html>
    """
    summary = """
    <section class="ratings-histogram-chart"><ul>
      <li class="rating-histogram-bar"><a data-original-title="900 ★★★★★ ratings (60%)"></a></li>
      <li class="rating-histogram-bar"><a data-original-title="600 ★★★★ ratings (40%)"></a></li>
    </ul></section>
    """
    manager, _ = make_manager({
        f"{BASE}/film/alien/": (200, film_page),
        f"{BASE}/csi/film/alien/ratings-summary/": (200, summary),
    })
    lb_scraper = scraper.LetterboxdScraper(manager, zero_fill=False)
    try:
        aggregate = await lb_scraper.scrape_film_aggregate("alien")
        distribution = await lb_scraper.scrape_film_ratings_distribution("alien")

        with pytest.raises(ContentNotFound) as excinfo:
            await lb_scraper.scrape_film_aggregate("no-such-film")
        assert not isinstance(excinfo.value, ProfileNotFound)
    finally:
        await manager.close()

    assert aggregate.avg_rating == 4.3
    assert aggregate.rating_count == 1500
    assert distribution == [RatingBucket(4.0, 600), RatingBucket(5.0, 900)]


@pytest.mark.asyncio
async def test_extract_data_generic_records(make_manager):
    page = """
    <html><body><ul>
      <li class="poster-container"><img alt="Alien"><a class="title" href="/film/alien/">Alien</a></li>
      <li class="poster-container"><img alt="Heat"><a class="title" href="/film/heat/">Heat</a></li>
    </ul></body></html>
    """
    manager, _ = make_manager({"https://example.test/list/": (200, page)})
    lb_scraper = scraper.LetterboxdScraper(manager)
    specs = [SelectorSpec.parse("title=a.title"), SelectorSpec.parse("poster=img@alt")]
    try:
        records = await lb_scraper.extract_data("https://example.test/list/", specs, wait_for="a.title")
    finally:
        await manager.close()

    assert [r.fields for r in records] == [
        {"title": "Alien", "poster": "Alien"},
        {"title": "Heat", "poster": "Heat"},
    ]


@pytest.mark.asyncio
async def test_check_user_exists_uses_provided_client():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        if request.url.path == "/alice/":
            return httpx.Response(200)
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    lb_scraper = scraper.LetterboxdScraper()

    async with httpx.AsyncClient(transport=transport) as client:
        assert await lb_scraper.check_user_exists("alice", client=client) is True
        assert await lb_scraper.check_user_exists("ghost", client=client) is False


@pytest.mark.asyncio
async def test_check_user_exists_network_error_is_false():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    transport = httpx.MockTransport(handler)
    lb_scraper = scraper.LetterboxdScraper()

    async with httpx.AsyncClient(transport=transport) as client:
        assert await lb_scraper.check_user_exists("alice", client=client) is False

    # Transport errors are retried once before giving up
    assert len(calls) == 2
