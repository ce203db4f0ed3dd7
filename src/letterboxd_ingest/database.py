import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime

from .config import DB_PATH
from .models import FilmAggregate, FilmRecord, RatingBucket, SaveResult, UserProfileSnapshot
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    SQLite connections may not be shared between threads, so the pool keeps
    one connection per thread and tracks transaction nesting per thread.
    Store calls run in worker threads via ``asyncio.to_thread``.
    """

    def __init__(self, db_path, health_check_interval: int = 300):
        self._db_path = db_path
        self._health_check_interval = health_check_interval
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating or replacing it if needed."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._is_healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    conn = None

            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")

    def stats(self) -> dict:
        with self._lock:
            return {'active_connections': len(self._connections)}


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Only the outermost context commits or rolls back; nested contexts
    join the outer transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_ratings (
                username TEXT NOT NULL,
                rating REAL NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (username, rating)
            );

            CREATE TABLE IF NOT EXISTS user_profiles (
                username TEXT PRIMARY KEY,
                display_name TEXT,
                followers INTEGER DEFAULT 0,
                following INTEGER DEFAULT 0,
                list_count INTEGER DEFAULT 0,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS user_films (
                username TEXT NOT NULL,
                film_slug TEXT NOT NULL,
                title TEXT,
                rating REAL,
                liked INTEGER DEFAULT 0,
                scraped_at TEXT,
                PRIMARY KEY (username, film_slug)
            );

            CREATE TABLE IF NOT EXISTS film_aggregates (
                film_slug TEXT PRIMARY KEY,
                avg_rating REAL,
                rating_count INTEGER,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS film_ratings (
                film_slug TEXT NOT NULL,
                rating REAL NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (film_slug, rating)
            );

            CREATE INDEX IF NOT EXISTS idx_user_films_user ON user_films(username);
            CREATE INDEX IF NOT EXISTS idx_user_films_slug ON user_films(film_slug);
            CREATE INDEX IF NOT EXISTS idx_user_films_liked ON user_films(liked);
        """)


_write_retry = retry_with_backoff(max_retries=3, initial_delay=0.2, exceptions=(sqlite3.OperationalError,))


class SqliteStore:
    """
    Persistence collaborator for the ingestion engine.

    Every upsert returns a SaveResult instead of raising, so the caller
    decides whether a failed save is fatal for the job.
    """

    def __init__(self, initialize: bool = True):
        if initialize:
            init_db()

    def _save(self, label: str, func, *args) -> SaveResult:
        try:
            _write_retry(func)(*args)
        except sqlite3.Error as exc:
            logger.error(f"Database operation failed ({label}): {exc}")
            return SaveResult(success=False, error=str(exc))
        return SaveResult(success=True)

    def upsert_ratings(self, username: str, ratings: list[RatingBucket]) -> SaveResult:
        def write():
            now = datetime.now().isoformat()
            with get_db() as conn:
                # Replace the whole histogram so stale buckets never survive
                conn.execute("DELETE FROM user_ratings WHERE username = ?", (username,))
                conn.executemany(
                    "INSERT INTO user_ratings (username, rating, count, updated_at) VALUES (?, ?, ?, ?)",
                    [(username, b.rating, b.count, now) for b in ratings],
                )
            logger.info(f"Saved {len(ratings)} rating buckets for {username}")

        return self._save(f"ratings for {username}", write)

    def upsert_profile(self, username: str, profile: UserProfileSnapshot) -> SaveResult:
        def write():
            with get_db() as conn:
                conn.execute("""
                    INSERT INTO user_profiles (username, display_name, followers, following, list_count, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(username) DO UPDATE SET
                        display_name = excluded.display_name,
                        followers = excluded.followers,
                        following = excluded.following,
                        list_count = excluded.list_count,
                        updated_at = excluded.updated_at
                """, (
                    username, profile.display_name, profile.followers,
                    profile.following, profile.list_count, datetime.now().isoformat(),
                ))
            logger.info(f"Saved profile for {username}")

        return self._save(f"profile for {username}", write)

    def upsert_films(self, username: str, films: list[FilmRecord]) -> SaveResult:
        def write():
            now = datetime.now().isoformat()
            with get_db() as conn:
                conn.executemany("""
                    INSERT INTO user_films (username, film_slug, title, rating, liked, scraped_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(username, film_slug) DO UPDATE SET
                        title = excluded.title,
                        rating = excluded.rating,
                        liked = excluded.liked,
                        scraped_at = excluded.scraped_at
                """, [
                    (username, f.film_slug, f.title, f.rating, int(f.liked), now)
                    for f in films
                ])
            logger.info(f"Saved {len(films)} films for {username}")

        return self._save(f"films for {username}", write)

    def upsert_film_aggregate(self, aggregate: FilmAggregate) -> SaveResult:
        def write():
            with get_db() as conn:
                conn.execute("""
                    INSERT INTO film_aggregates (film_slug, avg_rating, rating_count, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(film_slug) DO UPDATE SET
                        avg_rating = excluded.avg_rating,
                        rating_count = excluded.rating_count,
                        updated_at = excluded.updated_at
                """, (aggregate.slug, aggregate.avg_rating, aggregate.rating_count, datetime.now().isoformat()))

        return self._save(f"aggregate for {aggregate.slug}", write)

    def upsert_film_ratings(self, slug: str, ratings: list[RatingBucket]) -> SaveResult:
        def write():
            now = datetime.now().isoformat()
            with get_db() as conn:
                conn.execute("DELETE FROM film_ratings WHERE film_slug = ?", (slug,))
                conn.executemany(
                    "INSERT INTO film_ratings (film_slug, rating, count, updated_at) VALUES (?, ?, ?, ?)",
                    [(slug, b.rating, b.count, now) for b in ratings],
                )

        return self._save(f"distribution for {slug}", write)

    def list_usernames(self) -> list[str]:
        return list_usernames()


def list_usernames() -> list[str]:
    """Every user with a stored profile, ratings or films."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT username FROM user_profiles
            UNION SELECT username FROM user_ratings
            UNION SELECT username FROM user_films
            ORDER BY username
        """).fetchall()
    return [row['username'] for row in rows]


def load_user_ratings(username: str) -> list[RatingBucket]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT rating, count FROM user_ratings WHERE username = ? ORDER BY rating", (username,)
        ).fetchall()
    return [RatingBucket(rating=row['rating'], count=row['count']) for row in rows]


def load_user_profile(username: str) -> UserProfileSnapshot | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM user_profiles WHERE username = ?", (username,)).fetchone()
    if row is None:
        return None
    return UserProfileSnapshot(
        username=row['username'],
        display_name=row['display_name'],
        followers=row['followers'],
        following=row['following'],
        list_count=row['list_count'],
    )


def load_user_films(username: str) -> list[FilmRecord]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT film_slug, title, rating, liked FROM user_films WHERE username = ? ORDER BY rowid",
            (username,),
        ).fetchall()
    return [
        FilmRecord(film_slug=row['film_slug'], title=row['title'], rating=row['rating'], liked=bool(row['liked']))
        for row in rows
    ]


def get_stats() -> dict:
    with get_db(read_only=True) as conn:
        return {
            'users': len(list_usernames()),
            'profiles': conn.execute("SELECT COUNT(*) FROM user_profiles").fetchone()[0],
            'user_films': conn.execute("SELECT COUNT(*) FROM user_films").fetchone()[0],
            'liked_films': conn.execute("SELECT COUNT(*) FROM user_films WHERE liked = 1").fetchone()[0],
            'film_aggregates': conn.execute("SELECT COUNT(*) FROM film_aggregates").fetchone()[0],
        }
