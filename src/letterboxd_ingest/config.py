"""
Configuration constants for the Letterboxd ingestion engine.

This module centralizes timeouts, selectors and tunable parameters.
Values marked as tunable can be overridden via environment variables;
the execution profile (constrained vs. unconstrained) is selected by the
single LETTERBOXD_CONSTRAINED flag.
"""
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    """Parse a boolean flag ('1', 'true', 'yes', 'on' are truthy)."""
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Invalid {key}='{raw}', using default {default}")
    return default


# Database Configuration
DB_PATH = Path(os.environ.get("LETTERBOXD_DB", "data/letterboxd.db"))

# Site
LETTERBOXD_BASE = "https://letterboxd.com"

# Execution profile flag
CONSTRAINED_MODE = _get_bool_env("LETTERBOXD_CONSTRAINED", False)
CHROMIUM_EXECUTABLE = os.environ.get("LETTERBOXD_CHROMIUM_PATH") or None

# Navigation timeouts (milliseconds, as the browser driver expects)
PAGE_LOAD_TIMEOUT_FAST = 45_000
PAGE_LOAD_TIMEOUT = 60_000
PAGE_LOAD_TIMEOUT_SLOW = 90_000
CONSTRAINED_TIMEOUT_FACTOR = 0.5  # Constrained profile gets tighter navigation timeouts
BROWSER_LAUNCH_TIMEOUT = 30_000
PAGINATION_TIMEOUT = 10_000
ELEMENT_WAIT_TIMEOUT = 30_000

# Content settle delay raced against the DOM-ready wait (seconds)
CONTENT_SETTLE_DELAY = 10.0

# Pagination
PAGE_DELAY = _get_float_env("LETTERBOXD_PAGE_DELAY", 1.0, min_val=0.0)  # Delay between film pages (seconds)
CONSTRAINED_PAGE_DELAY = _get_float_env("LETTERBOXD_CONSTRAINED_PAGE_DELAY", 0.75, min_val=0.0)
MEMORY_CLEANUP_INTERVAL = _get_int_env("LETTERBOXD_MEMORY_CLEANUP_INTERVAL", 5, min_val=1)  # Every N pages

# Progress channel
HEARTBEAT_INTERVAL = _get_float_env("LETTERBOXD_HEARTBEAT_INTERVAL", 30.0, min_val=0.1)
JOB_TIMEOUT = _get_float_env("LETTERBOXD_JOB_TIMEOUT", 8 * 60.0, min_val=1.0)  # Wall-clock ceiling per job

# Shared browser is closed after this many idle seconds
BROWSER_IDLE_TIMEOUT = _get_float_env("LETTERBOXD_BROWSER_IDLE_TIMEOUT", 5 * 60.0, min_val=1.0)

# Ratings histogram: emit all ten half-star buckets (zero-filled) or only positive counts
RATINGS_ZERO_FILL = _get_bool_env("LETTERBOXD_RATINGS_ZERO_FILL", True)

# Batch refresh
REFRESH_USER_DELAY = _get_float_env("LETTERBOXD_REFRESH_USER_DELAY", 2.0, min_val=0.0)

# User existence check
USER_CHECK_TIMEOUT = 5.0  # HTTP HEAD timeout in seconds

# Viewports
VIEWPORT_DEFAULT = {"width": 1920, "height": 1080}
VIEWPORT_CONSTRAINED = {"width": 800, "height": 600}

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Upgrade-Insecure-Requests": "1",
}

# Hides the usual automation probes before any page script runs
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = window.chrome || { runtime: {} };
"""

# Chromium arguments
CHROME_ARGS_DEFAULT = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
]
CHROME_ARGS_CONSTRAINED = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--no-zygote",
    "--single-process",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-sync",
    "--aggressive-cache-discard",
]
CHROME_ARGS_FALLBACK = ["--no-sandbox", "--disable-dev-shm-usage"]

# Request interception (constrained profile only)
BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})
TRACKING_DOMAINS = (
    "google-analytics",
    "googletagmanager",
    "facebook.com",
    "twitter.com",
    "doubleclick",
    "analytics",
    "ads",
    "track",
)

# Selector candidates, most specific first
RATINGS_SECTION_SELECTORS = [
    "section.ratings-histogram-chart",
    ".ratings-histogram-chart",
    "[class*='rating-stats']",
    "[class*='rating-distribution']",
    "section[class*='rating']",
    "div[class*='rating']",
    "[class*='rating']",
]
RATING_BAR_SELECTORS = [
    "li.rating-histogram-bar",
    ".rating-histogram-bar",
    "li[class*='rating'][class*='histogram']",
    ".rating-bar",
    "[class*='rating'][class*='bar']",
    "li[class*='histogram']",
    "a[class*='rating']",
    "li[class*='rating']",
    "a[href*='rating']",
]
RATING_LABEL_ATTRIBUTES = ("data-original-title", "title", "aria-label")

FOLLOWERS_SELECTORS = ['a[href*="/followers/"] .value', 'a[href$="/followers/"] span']
FOLLOWING_SELECTORS = ['a[href*="/following/"] .value', 'a[href$="/following/"] span']
LISTS_SELECTORS = ['a[href*="/lists/"] .value', 'a[href$="/lists/"] span']
DISPLAY_NAME_SELECTORS = ["span.displayname", ".profile-name h1", "h1.title-3"]

FILM_CONTAINER_SELECTORS = ["li.griditem", "li.poster-container"]
FILM_DATA_SELECTORS = ["div[data-item-slug]", "div[data-film-slug]", "[data-target-link]"]
FILM_RATING_SELECTORS = ["p.poster-viewingdata span.rating", "span.rating"]
PAGINATION_SELECTORS = [
    "div.paginate-pages > ul > li:last-child > a",
    "div.paginate-pages li.paginate-page a",
    ".pagination .paginate-page a",
]
PAGINATION_SECTION = "div.paginate-pages"

LIKED_EXACT = "span.like.liked-micro.has-icon.icon-liked.icon-16"
LIKED_COMBINATION_SELECTORS = ["span.like.liked-micro", "span.icon-liked", ".liked-micro.icon-liked"]
LIKED_FALLBACK = "[class*='liked']"

ERROR_INDICATORS = ".error-page, .not-found, [class='404'], [class='error-404']"
MIN_BODY_TEXT_LENGTH = 100

# A title segment (split on the separators) must match one of these exactly
ERROR_TITLE_PATTERN = (
    r"(?:(?:error|http):? ?)?(?:\d{3} ?)?"
    r"(?:(?:page )?not found|too many requests|access denied|forbidden|service unavailable"
    r"|bad gateway|gateway timeout|internal server error|just a moment\.*)?"
)
TITLE_SEPARATORS = r"\s+[•|–—-]\s+"

POSTER_CONTAINER = "li.poster-container"
CONTAINER_TYPES = ("li", "div", "article", "section", "tr")
RATING_CONTEXT_SELECTOR = "p.poster-viewingdata > span.rating, .rating"

# Star patterns, longest first. Shorter patterns are substrings of longer ones.
STAR_PATTERNS = [
    ("★★★★★", 5.0),
    ("★★★★½", 4.5),
    ("★★★★", 4.0),
    ("★★★½", 3.5),
    ("★★★", 3.0),
    ("★★½", 2.5),
    ("★★", 2.0),
    ("★½", 1.5),
    ("half-★", 0.5),
    ("★", 1.0),
    ("½", 0.5),
]
ALL_RATINGS = (0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0)


@dataclass(frozen=True)
class PageLoadStrategy:
    wait_until: str
    timeout: int  # milliseconds


LOADING_STRATEGIES = (
    PageLoadStrategy("domcontentloaded", PAGE_LOAD_TIMEOUT_FAST),
    PageLoadStrategy("networkidle", PAGE_LOAD_TIMEOUT),
    PageLoadStrategy("load", PAGE_LOAD_TIMEOUT_SLOW),
)


@dataclass
class ExecutionProfile:
    """
    Everything that differs between the unconstrained and the
    constrained/serverless deployment.
    """
    name: str
    constrained: bool
    viewport: dict
    block_resources: bool
    page_delay: float
    loading_strategies: tuple
    element_wait_timeout: int
    launch_args: list = field(default_factory=list)
    executable_path: str | None = None
    headless: bool = True

    def launch_options(self) -> list[dict]:
        """Primary launch configuration followed by the single fallback."""
        primary = {
            "headless": self.headless,
            "args": list(self.launch_args),
            "timeout": BROWSER_LAUNCH_TIMEOUT,
        }
        if self.executable_path:
            primary["executable_path"] = self.executable_path

        if self.constrained:
            # Bundled Chromium with the bare minimum of flags
            fallback = {"headless": True, "args": list(CHROME_ARGS_FALLBACK), "timeout": BROWSER_LAUNCH_TIMEOUT}
        else:
            # Locally installed Chrome instead of the bundled build
            fallback = {"headless": self.headless, "channel": "chrome", "timeout": BROWSER_LAUNCH_TIMEOUT}
        return [primary, fallback]


def get_execution_profile(constrained: bool | None = None) -> ExecutionProfile:
    """Build the execution profile selected by LETTERBOXD_CONSTRAINED (or the explicit override)."""
    if constrained is None:
        constrained = CONSTRAINED_MODE

    if constrained:
        strategies = tuple(
            PageLoadStrategy(s.wait_until, int(s.timeout * CONSTRAINED_TIMEOUT_FACTOR))
            for s in LOADING_STRATEGIES
        )
        return ExecutionProfile(
            name="constrained",
            constrained=True,
            viewport=dict(VIEWPORT_CONSTRAINED),
            block_resources=True,
            page_delay=CONSTRAINED_PAGE_DELAY,
            loading_strategies=strategies,
            element_wait_timeout=int(ELEMENT_WAIT_TIMEOUT * CONSTRAINED_TIMEOUT_FACTOR),
            launch_args=list(CHROME_ARGS_CONSTRAINED),
            executable_path=CHROMIUM_EXECUTABLE,
        )

    return ExecutionProfile(
        name="default",
        constrained=False,
        viewport=dict(VIEWPORT_DEFAULT),
        block_resources=False,
        page_delay=PAGE_DELAY,
        loading_strategies=LOADING_STRATEGIES,
        element_wait_timeout=ELEMENT_WAIT_TIMEOUT,
        launch_args=list(CHROME_ARGS_DEFAULT),
        executable_path=None,
    )
