import asyncio
import importlib
import sys
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from selectolax.parser import HTMLParser

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from letterboxd_ingest.browser import BrowserManager  # noqa: E402
from letterboxd_ingest.config import get_execution_profile  # noqa: E402
from letterboxd_ingest.scraper import build_films_page_url  # noqa: E402

FILLER = "<p>" + "Letterboxd is a social network for sharing your taste in film. " * 3 + "</p>"

NOT_FOUND_HTML = "<html><head><title>Page not found • Letterboxd</title></head><body></body></html>"


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LETTERBOXD_DB", str(db_path))
    import letterboxd_ingest.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LETTERBOXD_DB", str(db_path))

    import letterboxd_ingest.config as config
    import letterboxd_ingest.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


# HTML builders

def profile_page_html(display_name="Alice A.", followers="1.2K", following="340", lists="12", bars=None):
    """A profile page with stats and a ratings histogram; ``bars`` are tooltip labels."""
    if bars is None:
        bars = ["500 ★★★★★ ratings (40%)", "0 ★ ratings", "3 ★★½ ratings"]
    bar_items = "".join(
        f'<li class="rating-histogram-bar"><a class="ir tooltip" data-original-title="{label}"></a></li>'
        for label in bars
    )
    return f"""
    <html><head><title>{display_name}’s profile • Letterboxd</title></head>
    <body>
      <section class="profile-summary">
        <h1 class="title-3"><span class="displayname">{display_name}</span></h1>
        <a href="/alice/followers/"><span class="value">{followers}</span> Followers</a>
        <a href="/alice/following/"><span class="value">{following}</span> Following</a>
        <a href="/alice/lists/"><span class="value">{lists}</span> Lists</a>
      </section>
      <section class="section ratings-histogram-chart"><ul>{bar_items}</ul></section>
      {FILLER}
    </body></html>
    """


def film_item_html(slug, title=None, stars=None, liked=False):
    rating = f'<span class="rating">{stars}</span>' if stars else ""
    heart = '<span class="like liked-micro has-icon icon-liked icon-16"></span>' if liked else ""
    name = f' data-item-name="{title}"' if title else ""
    return (
        f'<li class="griditem"><div class="react-component" data-item-slug="{slug}"{name}>'
        f'<img alt="{title or slug}"></div>'
        f'<p class="poster-viewingdata">{rating}{heart}</p></li>'
    )


def films_page_html(slugs, total_pages=1, liked=(), ratings=None):
    ratings = ratings or {}
    items = "".join(
        film_item_html(slug, slug.replace("-", " ").title(), ratings.get(slug), slug in liked)
        for slug in slugs
    )
    pagination = ""
    if total_pages > 1:
        links = "".join(
            f'<li class="paginate-page"><a href="/alice/films/page/{n}/">{n}</a></li>'
            for n in range(1, total_pages + 1)
        )
        pagination = f'<div class="paginate-pages"><ul>{links}</ul></div>'
    return f"""
    <html><head><title>Alice’s films • Letterboxd</title></head>
    <body><ul class="grid">{items}</ul>{pagination}{FILLER}</body></html>
    """


def film_list_site(page_sizes, username="alice"):
    """Site with ``len(page_sizes)`` film pages and globally unique slugs."""
    site = {}
    counter = 0
    for page_num, size in enumerate(page_sizes, start=1):
        slugs = [f"film-{counter + i:03d}" for i in range(size)]
        counter += size
        html = films_page_html(slugs, total_pages=len(page_sizes) if page_num == 1 else 1)
        site[build_films_page_url(username, page_num)] = (200, html)
    return site


# Browser fakes

class FakeResponse:
    def __init__(self, status=200):
        self.status = status


class FakePage:
    def __init__(self, context, site):
        self.context = context
        self.site = site
        self.html = "<html><body></body></html>"
        self.visited = []
        self.closed = False

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append((url, wait_until, timeout))
        entry = self.site.get(url, (404, NOT_FOUND_HTML))
        if callable(entry):
            entry = entry(url, wait_until)
        if isinstance(entry, BaseException):
            raise entry
        status, html = entry
        self.html = html
        return FakeResponse(status)

    async def wait_for_selector(self, selector, timeout=None):
        if HTMLParser(self.html).css_first(selector) is None:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return object()

    async def content(self):
        return self.html

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, browser, options):
        self.browser = browser
        self.options = options
        self.init_scripts = []
        self.routes = []
        self.pages = []
        self.closed = False

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def new_page(self):
        page = FakePage(self, self.browser.site)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, site, options):
        self.site = site
        self.options = options
        self.contexts = []
        self.connected = True
        self.close_calls = 0

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.close_calls += 1
        self.connected = False


class FakeChromium:
    def __init__(self, site, launch_failures=0, launch_delay=0.0):
        self.site = site
        self.launch_failures = launch_failures
        self.launch_delay = launch_delay
        self.attempts = []
        self.browsers = []

    async def launch(self, **options):
        self.attempts.append(options)
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.launch_failures > 0:
            self.launch_failures -= 1
            raise PlaywrightError("Failed to launch chromium: out of memory")
        browser = FakeBrowser(self.site, options)
        self.browsers.append(browser)
        return browser


class FakeDriver:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = False

    async def stop(self):
        self.stopped = True


@pytest.fixture
def make_manager():
    """
    Factory for a BrowserManager wired to an in-memory site instead of Playwright.

    ``site`` maps URLs to ``(status, html)`` tuples, exceptions to raise
    from ``goto``, or callables returning either.
    """
    def factory(site=None, constrained=False, launch_failures=0, launch_delay=0.0, idle_timeout=300):
        chromium = FakeChromium(site if site is not None else {}, launch_failures, launch_delay)
        manager = BrowserManager(get_execution_profile(constrained), idle_timeout=idle_timeout)
        manager._driver = FakeDriver(chromium)
        return manager, chromium

    return factory

