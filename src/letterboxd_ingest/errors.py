"""Typed failures raised by the ingestion engine."""


class ScrapeError(Exception):
    """Base class for every failure the engine reports to callers."""

    code: str | None = None
    user_message = "Scraping failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class NavigationTimeout(ScrapeError):
    """Every page-load strategy was exhausted."""

    code = "NAVIGATION_TIMEOUT"
    user_message = "Letterboxd took too long to respond. Please try again in a moment."

    def __init__(self, url: str, attempts: int = 0):
        super().__init__(f"Navigation to {url} timed out after {attempts} strategies")
        self.url = url
        self.attempts = attempts


class ContentNotFound(ScrapeError):
    """The page loaded but failed validation (error markers, empty body, error title)."""

    code = "CONTENT_NOT_FOUND"
    user_message = "The requested page does not exist on Letterboxd."

    def __init__(self, subject: str, reason: str = "page validation failed"):
        super().__init__(f"{subject}: {reason}")
        self.subject = subject
        self.reason = reason


class ProfileNotFound(ContentNotFound):
    code = "PROFILE_NOT_FOUND"
    user_message = "That Letterboxd user does not exist."


class ExtractionEmpty(ScrapeError):
    """Page validated but no records could be parsed from it."""

    code = "EXTRACTION_EMPTY"
    user_message = "No data could be extracted from the page."


class PartialPageFailure(ScrapeError):
    """A page after the first one failed; the whole collection is discarded."""

    code = "PARTIAL_PAGE_FAILURE"
    user_message = "Scraping stopped part-way through the film list."

    def __init__(self, page_number: int, total_pages: int, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Page {page_number} of {total_pages} failed{detail}")
        self.page_number = page_number
        self.total_pages = total_pages
        self.cause = cause


class ResourceExhaustion(ScrapeError):
    """The browser could not be launched with either configuration."""

    code = "BROWSER_LAUNCH_FAILED"
    user_message = "The scraping browser could not be started."


class JobTimeout(ScrapeError):
    code = "JOB_TIMEOUT"
    user_message = "The job exceeded its time limit and was stopped."


class JobCancelled(ScrapeError):
    code = "JOB_CANCELLED"
    user_message = "The job was cancelled because the client disconnected."


class PersistenceError(ScrapeError):
    code = "SAVE_FAILED"
    user_message = "Scraped data could not be saved."


def classify_error(exc: BaseException) -> tuple[str, str | None]:
    """
    Map an exception to a (human-readable message, machine code) pair.

    Known engine errors keep their code; anything else is reported
    generically with no code.
    """
    if isinstance(exc, ScrapeError):
        return f"{exc.user_message} ({exc.message})", exc.code
    return f"Unexpected error: {exc}", None
