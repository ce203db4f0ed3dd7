"""
Field extraction for Letterboxd markup.

Every function here works on a detached selectolax document (the
snapshot returned by ``page.content()``), so parsing is synchronous and
bounded. Selector lookups go through ordered candidate lists in
``config`` so the extractor keeps working when the site's markup drifts.
"""
import json
import logging
import re
from dataclasses import dataclass

from selectolax.parser import HTMLParser, Node

from .config import (
    ALL_RATINGS,
    CONTAINER_TYPES,
    DISPLAY_NAME_SELECTORS,
    ERROR_INDICATORS,
    ERROR_TITLE_PATTERN,
    FILM_CONTAINER_SELECTORS,
    FILM_DATA_SELECTORS,
    FILM_RATING_SELECTORS,
    FOLLOWERS_SELECTORS,
    FOLLOWING_SELECTORS,
    LIKED_COMBINATION_SELECTORS,
    LIKED_EXACT,
    LIKED_FALLBACK,
    LISTS_SELECTORS,
    MIN_BODY_TEXT_LENGTH,
    PAGINATION_SELECTORS,
    POSTER_CONTAINER,
    RATING_BAR_SELECTORS,
    RATING_CONTEXT_SELECTOR,
    RATING_LABEL_ATTRIBUTES,
    RATINGS_SECTION_SELECTORS,
    RATINGS_ZERO_FILL,
    STAR_PATTERNS,
    TITLE_SEPARATORS,
)
from .errors import ContentNotFound, ExtractionEmpty, ProfileNotFound
from .models import FilmAggregate, FilmRecord, KeyValueRecord, RatingBucket, UserProfileSnapshot

logger = logging.getLogger(__name__)

_NUMBER_MULTIPLIERS = {'k': 1_000, 'm': 1_000_000, 'b': 1_000_000_000}
_FILM_LINK_RE = re.compile(r"/film/([^/]+)/?")
_ERROR_TITLE_RE = re.compile(ERROR_TITLE_PATTERN, re.IGNORECASE)
_TITLE_SEPARATOR_RE = re.compile(TITLE_SEPARATORS)


def _clean_text(text: str | None) -> str:
    if not text:
        return ""
    return text.replace("&nbsp;", " ").replace("\xa0", " ").strip()


def parse_star_rating(text: str | None) -> float:
    """
    Parse a star-glyph label such as '★★★½' into a half-integer rating.

    Patterns are checked longest first; returns 0 when nothing matches.
    """
    cleaned = _clean_text(text)
    if not cleaned:
        return 0
    for pattern, rating in STAR_PATTERNS:
        if pattern in cleaned:
            return rating
    return 0


def parse_rating_count(text: str | None) -> int:
    """Parse the leading, possibly comma-grouped integer of a label like '12,345 ratings'."""
    match = re.match(r"^([\d,]+)", _clean_text(text))
    if not match:
        return 0
    digits = match.group(1).replace(",", "")
    return int(digits) if digits else 0


def parse_number_from_text(text: str | None) -> int:
    """
    Parse follower-style counts: '1.2K' -> 1200, '3M' -> 3000000, '1,234' -> 1234.

    Returns 0 for empty or unparseable text.
    """
    cleaned = _clean_text(text).replace(",", "").lower()
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmb])?(?![a-z])", cleaned)
    if not match:
        return 0
    value = float(match.group(1))
    multiplier = _NUMBER_MULTIPLIERS.get(match.group(2), 1)
    return int(round(value * multiplier))


def validate_slug(slug: str | None) -> str | None:
    """
    Validate film slug format to prevent injection or malformed data.

    Returns cleaned slug or None if invalid. Namespaced slugs such as
    'film:482919' are accepted.
    """
    if not slug:
        return None

    cleaned = slug.strip().lower()
    prefix = ""
    core = cleaned
    if core.startswith("film:"):
        prefix = "film:"
        core = core.split(":", 1)[1]

    if not core or not re.match(r'^[a-z0-9-]+$', core):
        logger.warning(f"Invalid slug format (contains disallowed characters): '{slug}'")
        return None

    full_slug = prefix + core
    if len(full_slug) > 200:
        logger.warning(f"Slug exceeds maximum length: '{slug[:50]}...'")
        return None
    return full_slug


def _classes(node: Node) -> set[str]:
    return set((node.attributes.get("class") or "").split())


def resolve_selector(root: HTMLParser | Node, candidates: list[str]) -> tuple[str | None, list[Node]]:
    """
    Return the first candidate selector matching at least one element, with its matches.

    ``(None, [])`` means the field is absent.
    """
    for selector in candidates:
        nodes = root.css(selector)
        if nodes:
            logger.debug(f"Selector '{selector}' matched {len(nodes)} element(s)")
            return selector, nodes
    return None, []


def is_error_title(title: str | None) -> bool:
    """
    True when a segment of the page title is an error phrase on its own,
    e.g. 'Page not found • Letterboxd' or 'Error 429'. Titles that merely
    contain such words ('Terror Train', '404 (2011)') are not errors.
    """
    title = _clean_text(title)
    if not title:
        return False
    segments = (segment.strip() for segment in _TITLE_SEPARATOR_RE.split(title))
    return any(segment and _ERROR_TITLE_RE.fullmatch(segment) for segment in segments)


def validate_page(
    tree: HTMLParser,
    subject: str,
    not_found: type[ContentNotFound] = ProfileNotFound,
    min_body_length: int = MIN_BODY_TEXT_LENGTH,
) -> None:
    """
    Reject error pages before extracting from them.

    Raises ``not_found`` when error markers are present, the title reads
    like an error page, or the body is too short to be real content.
    """
    if tree.css_first(ERROR_INDICATORS) is not None:
        raise not_found(subject, "error page markers present")

    title_el = tree.css_first("title")
    title = title_el.text() if title_el else ""
    if is_error_title(title):
        raise not_found(subject, f"page title indicates an error ('{title.strip()}')")

    body = tree.body
    body_text = body.text() if body is not None else ""
    if len(body_text.strip()) < min_body_length:
        raise not_found(subject, "insufficient page content")

    logger.debug(f"Page validation passed for {subject}")


def _label_for(node: Node) -> str | None:
    """Tooltip text of a histogram bar, from the bar itself or its link."""
    link = node.css_first("a")
    for attr in RATING_LABEL_ATTRIBUTES:
        value = node.attributes.get(attr) or (link.attributes.get(attr) if link is not None else None)
        if value:
            return value

    text = node.text(strip=True)
    if text and ("★" in text or "½" in text or "star" in text or "rating" in text):
        return text
    return None


def find_ratings_section(tree: HTMLParser) -> list[Node]:
    _, sections = resolve_selector(tree, RATINGS_SECTION_SELECTORS)
    return sections


def extract_ratings(tree: HTMLParser, zero_fill: bool = RATINGS_ZERO_FILL) -> list[RatingBucket]:
    """
    Extract the rating histogram as buckets sorted by rating.

    With ``zero_fill`` every one of the ten half-star ratings is present
    (count 0 when no bar matched it); otherwise only buckets with a
    positive count are returned. Raises ExtractionEmpty when no bar
    could be parsed at all.
    """
    sections = find_ratings_section(tree)
    if not sections:
        raise ExtractionEmpty("No ratings section found on page")

    bars: list[Node] = []
    for selector in RATING_BAR_SELECTORS:
        for section in sections:
            bars.extend(section.css(selector))
        if bars:
            logger.debug(f"Found {len(bars)} rating bars with selector: {selector}")
            break

    counts: dict[float, int] = {}
    for bar in bars:
        label = _label_for(bar)
        if not label:
            continue
        rating = parse_star_rating(label)
        if rating <= 0:
            continue
        if rating in counts:
            # Nested fallback selectors can match the same bar twice
            continue
        counts[rating] = parse_rating_count(label)

    if not counts:
        raise ExtractionEmpty("No rating bars could be parsed from the ratings section")

    if zero_fill:
        return [RatingBucket(rating=r, count=counts.get(r, 0)) for r in ALL_RATINGS]
    return [RatingBucket(rating=r, count=c) for r, c in sorted(counts.items()) if c > 0]


def detect_liked_status(container: Node) -> bool:
    """
    Whether a film container carries the 'liked' heart.

    Tries the exact class combination, then any of the looser selectors
    with both class tokens present, then any liked-ish element.
    """
    if container.css_first(LIKED_EXACT) is not None:
        return True

    for selector in LIKED_COMBINATION_SELECTORS:
        node = container.css_first(selector)
        if node is not None:
            classes = _classes(node)
            if "liked-micro" in classes and "icon-liked" in classes:
                return True
            break

    for node in container.css(LIKED_FALLBACK):
        if "icon-liked" in _classes(node):
            return True
    return False


def _film_slug(attrs: dict) -> str | None:
    raw = attrs.get("data-item-slug") or attrs.get("data-film-slug")
    if not raw:
        link = attrs.get("data-target-link") or attrs.get("data-item-link") or ""
        match = _FILM_LINK_RE.search(link)
        raw = match.group(1) if match else None
    return validate_slug(raw)


def extract_films(tree: HTMLParser) -> list[FilmRecord]:
    """Film records of one list page, in page order."""
    selector, containers = resolve_selector(tree, FILM_CONTAINER_SELECTORS)
    if not containers:
        return []

    films = []
    for index, container in enumerate(containers):
        _, data_nodes = resolve_selector(container, FILM_DATA_SELECTORS)
        if not data_nodes:
            logger.debug(f"Film {index}: no data element inside '{selector}'")
            continue

        attrs = data_nodes[0].attributes
        slug = _film_slug(attrs)
        if not slug:
            continue

        title = attrs.get("data-item-name") or attrs.get("data-film-name")
        if not title:
            img = container.css_first("img")
            title = (img.attributes.get("alt") if img is not None else None) or slug

        rating = None
        _, rating_nodes = resolve_selector(container, FILM_RATING_SELECTORS)
        if rating_nodes:
            rating = parse_star_rating(rating_nodes[0].text(strip=True)) or None

        films.append(FilmRecord(
            film_slug=slug,
            title=title.strip(),
            rating=rating,
            liked=detect_liked_status(container),
        ))
    return films


def extract_total_pages(tree: HTMLParser) -> int:
    """Highest page number in the pagination control; 1 when there is none."""
    for selector in PAGINATION_SELECTORS:
        numbers = []
        for node in tree.css(selector):
            text = node.text(strip=True).replace(",", "")
            if text.isdigit():
                numbers.append(int(text))
        if numbers:
            return max(numbers)
    return 1


def extract_profile(tree: HTMLParser, username: str) -> UserProfileSnapshot:
    """
    Display name and follower/following/list counts from a profile page.

    Raises ExtractionEmpty when none of the profile blocks are present.
    """
    found = False

    def _stat(candidates: list[str]) -> int:
        nonlocal found
        _, nodes = resolve_selector(tree, candidates)
        if not nodes:
            return 0
        found = True
        return parse_number_from_text(nodes[0].text(strip=True))

    followers = _stat(FOLLOWERS_SELECTORS)
    following = _stat(FOLLOWING_SELECTORS)
    list_count = _stat(LISTS_SELECTORS)

    display_name = username
    _, name_nodes = resolve_selector(tree, DISPLAY_NAME_SELECTORS)
    if name_nodes:
        found = True
        display_name = name_nodes[0].text(strip=True) or username

    if not found:
        raise ExtractionEmpty(f"No profile fields could be extracted for {username}")

    return UserProfileSnapshot(
        username=username,
        display_name=display_name,
        followers=followers,
        following=following,
        list_count=list_count,
    )


def parse_film_aggregate(tree: HTMLParser, slug: str) -> FilmAggregate:
    """
    Average rating and rating count from the film page's JSON-LD block.

    Letterboxd wraps the JSON in /* <![CDATA[ */ ... /* ]]> */ comments.
    A film nobody has rated yet has no aggregateRating; both values are
    None then.
    """
    ldjson = tree.css_first("script[type='application/ld+json']")
    if ldjson is None or not ldjson.text().strip():
        raise ExtractionEmpty(f"No JSON-LD data found on film page for {slug}")

    raw = ldjson.text()
    cleaned = re.sub(r"/\*.*?\*/", "", raw, flags=re.S).strip()

    aggregate_rating: dict = {}
    for candidate in (raw.strip(), cleaned):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            logger.debug(f"Failed to parse ld+json for {slug}: {exc}")
            continue
        if isinstance(parsed, list):
            parsed = parsed[0] if parsed else {}
        if isinstance(parsed, dict):
            aggregate_rating = parsed.get("aggregateRating") or {}
            break
    else:
        value_match = re.search(r'"ratingValue"\s*:\s*([0-9.]+)', raw)
        count_match = re.search(r'"ratingCount"\s*:\s*([\d,]+)', raw)
        if value_match:
            aggregate_rating["ratingValue"] = value_match.group(1)
        if count_match:
            aggregate_rating["ratingCount"] = count_match.group(1).replace(",", "")

    avg_rating = None
    rating_count = None
    if aggregate_rating.get("ratingValue") is not None:
        try:
            avg_rating = round(float(aggregate_rating["ratingValue"]), 2)
        except (TypeError, ValueError):
            logger.warning(f"Unexpected ratingValue for {slug}: {aggregate_rating['ratingValue']!r}")
    if aggregate_rating.get("ratingCount") is not None:
        try:
            rating_count = int(str(aggregate_rating["ratingCount"]).replace(",", ""))
        except ValueError:
            logger.warning(f"Unexpected ratingCount for {slug}: {aggregate_rating['ratingCount']!r}")

    if avg_rating is None and rating_count is None:
        logger.info(f"No aggregate rating published for {slug}")
    return FilmAggregate(slug=slug, avg_rating=avg_rating, rating_count=rating_count)


@dataclass(frozen=True)
class SelectorSpec:
    """One named field for generic extraction, optionally read from an attribute."""
    name: str
    css: str
    attribute: str | None = None

    @classmethod
    def parse(cls, spec: str) -> "SelectorSpec":
        """Parse 'name=css' or 'name=css@attribute'."""
        if "=" not in spec:
            raise ValueError(f"Selector spec must look like name=css[@attr]: '{spec}'")
        name, css = spec.split("=", 1)
        attribute = None
        if "@" in css:
            css, attribute = css.rsplit("@", 1)
        name, css = name.strip(), css.strip()
        if not name or not css:
            raise ValueError(f"Selector spec must look like name=css[@attr]: '{spec}'")
        return cls(name=name, css=css, attribute=(attribute or "").strip() or None)


def _container_selector(node: Node) -> str:
    classes = (node.attributes.get("class") or "").split()
    return f"{node.tag}.{classes[0]}" if classes else node.tag


def _holds_all(node: Node, selectors: list[str]) -> bool:
    return all(node.css_first(selector) is not None for selector in selectors)


def infer_parent_container(tree: HTMLParser, selectors: list[str]) -> str | None:
    """
    Find a repeating container type whose instance holds a match for every selector.

    Known poster containers win; otherwise the nearest ancestor of the
    first match with a container tag is used. Returns None when no
    common container exists.
    """
    if not selectors:
        return None

    poster = tree.css_first(POSTER_CONTAINER)
    if poster is not None and _holds_all(poster, selectors):
        return POSTER_CONTAINER

    first = tree.css_first(selectors[0])
    if first is None:
        return None

    node = first.parent
    while node is not None and node.tag not in ("html", "body"):
        if node.tag in CONTAINER_TYPES and _holds_all(node, selectors):
            candidate = _container_selector(node)
            logger.debug(f"Inferred parent container '{candidate}'")
            return candidate
        node = node.parent
    return None


def _field_value(node: Node, spec: SelectorSpec) -> str | float | None:
    if spec.attribute:
        return node.attributes.get(spec.attribute)
    text = node.text(strip=True)
    if "★" in text or "½" in text:
        return parse_star_rating(text)
    return text


def extract_key_values(tree: HTMLParser, specs: list[SelectorSpec]) -> list[KeyValueRecord]:
    """
    Generic extraction: correlated records per inferred container, or flat
    one-field records when no common container exists.
    """
    container = infer_parent_container(tree, [spec.css for spec in specs])
    if container is None:
        logger.info("No common parent container; falling back to flat extraction")
        return [
            KeyValueRecord(fields={spec.name: _field_value(node, spec)})
            for spec in specs
            for node in tree.css(spec.css)
        ]

    records = []
    for element in tree.css(container):
        fields: dict[str, str | float | None] = {}
        for spec in specs:
            node = element.css_first(spec.css)
            fields[spec.name] = _field_value(node, spec) if node is not None else None
        if "rating" not in fields:
            rating_node = element.css_first(RATING_CONTEXT_SELECTOR)
            if rating_node is not None and parse_star_rating(rating_node.text(strip=True)):
                fields["rating"] = parse_star_rating(rating_node.text(strip=True))
        if any(value is not None for value in fields.values()):
            records.append(KeyValueRecord(fields=fields, container=container))
    return records
