import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from config import settings
from errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Database file used by every connection helper below.
# Library(db_file=...) overrides it at runtime, which is how tests get an isolated database.
DATABASE_FILE = settings.database_file


def get_db_connection() -> sqlite3.Connection:
    """Open a new connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()`` which manages BEGIN/COMMIT explicitly.
    """
    try:
        conn = sqlite3.connect(
            DATABASE_FILE,
            timeout=settings.database_busy_timeout,
            isolation_level=None,
        )
    except sqlite3.OperationalError as exc:
        raise StoreUnavailableError(f"Could not open database {DATABASE_FILE}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    """Read-only helper: yields a connection and always closes it."""
    conn = get_db_connection()
    try:
        yield conn
    except sqlite3.OperationalError as exc:
        raise StoreUnavailableError(str(exc)) from exc
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Atomic scope for writes.

    BEGIN IMMEDIATE takes the database write lock up front, so two scopes never
    interleave their read-check-write sequences. Everything done on the yielded
    connection commits together or is rolled back together.
    """
    conn = get_db_connection()
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"Could not start transaction: {exc}") from exc

        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(exc, sqlite3.OperationalError):
                raise StoreUnavailableError(str(exc)) from exc
            raise
    finally:
        conn.close()


# ------------------------- Timestamps ------------------------- #
def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Store every timestamp as fixed-width UTC ISO-8601 so SQL string comparison is chronological."""
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------- Schema ------------------------- #
def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection()
    try:
        # WAL lets catalog reads proceed while a lending transaction holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                isbn TEXT,
                description TEXT,
                publish_date TEXT,
                stock INTEGER NOT NULL CHECK(stock >= 0),
                available_stock INTEGER NOT NULL
                    CHECK(available_stock >= 0 AND available_stock <= stock),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Authors and categories are shared by name across books
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS authors (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE COLLATE NOCASE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE COLLATE NOCASE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_authors (
                book_id TEXT NOT NULL,
                author_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (book_id, author_id),
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (author_id) REFERENCES authors(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_categories (
                book_id TEXT NOT NULL,
                category_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (book_id, category_id),
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (category_id) REFERENCES categories(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('ADMIN', 'LIBRARIAN', 'MEMBER')),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrow_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'BORROWED'
                    CHECK(status IN ('BORROWED', 'OVERDUE', 'RETURNED')),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (book_id) REFERENCES books(id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_is_deleted ON books(is_deleted)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_authors_author ON book_authors(author_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_categories_category ON book_categories(category_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_is_deleted ON users(is_deleted)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_user_id ON borrow_transactions(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_book_id ON borrow_transactions(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_status_due ON borrow_transactions(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_borrow_date ON borrow_transactions(borrow_date DESC)")

        # At most one active loan per (user, book)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_borrow_active_loan
            ON borrow_transactions(user_id, book_id)
            WHERE status IN ('BORROWED', 'OVERDUE') AND is_deleted = 0
        """)
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating tables if needed."""
    try:
        create_tables()
    except sqlite3.OperationalError as exc:
        raise StoreUnavailableError(f"Could not initialize database {DATABASE_FILE}: {exc}") from exc
    logger.debug(f"Database ready at {DATABASE_FILE}")
