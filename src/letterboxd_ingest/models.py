import time
from dataclasses import dataclass, field, asdict
from enum import Enum


class JobKind(str, Enum):
    PROFILE = "profile"
    RATINGS = "ratings"
    FILMS = "films"


@dataclass(frozen=True)
class RatingBucket:
    rating: float
    count: int


@dataclass(frozen=True)
class FilmRecord:
    film_slug: str
    title: str
    rating: float | None  # None means watched but unrated
    liked: bool


@dataclass
class UserProfileSnapshot:
    username: str
    display_name: str
    followers: int = 0
    following: int = 0
    list_count: int = 0


@dataclass
class FilmAggregate:
    slug: str
    avg_rating: float | None
    rating_count: int | None


@dataclass
class KeyValueRecord:
    """Result of the generic ad-hoc extraction entry point only."""
    fields: dict[str, str | float | None]
    container: str | None = None


@dataclass
class FilmsPage:
    page_number: int
    films: list[FilmRecord]
    total_pages: int = 1


@dataclass
class SaveResult:
    success: bool
    error: str | None = None


@dataclass
class ScrapeJob:
    """Ephemeral state of one job; never persisted."""
    username: str
    kind: JobKind
    current_page: int = 0
    total_pages: int = 1
    records: list = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class JobResult:
    username: str
    kind: JobKind
    profile: UserProfileSnapshot | None = None
    ratings: list[RatingBucket] = field(default_factory=list)
    films: list[FilmRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["total_films"] = len(self.films)
        return data
