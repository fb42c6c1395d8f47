import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from library_lending.config import settings
from library_lending.errors import ConflictError, StoreError

logger = logging.getLogger(__name__)


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement work goes through
    ``transaction()`` which issues its own BEGIN/COMMIT.
    """
    conn = sqlite3.connect(
        db_file,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while a borrow/return holds the write lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def connection(db_file: str, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Yield ``conn`` when given (caller owns it), otherwise a short-lived connection."""
    if conn is not None:
        yield conn
        return
    own = get_db_connection(db_file)
    try:
        yield own
    finally:
        own.close()


@contextmanager
def transaction(db_file: str) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

    BEGIN IMMEDIATE takes the database write lock before the first read, so
    every check-then-mutate sequence inside the block is serialized against
    all other writers, in this process or any other. Any exception rolls the
    whole block back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def store_error(exc: sqlite3.Error) -> StoreError:
    """Translate a sqlite3 failure into the lending error taxonomy."""
    if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower():
        logger.warning(f"Write lock not acquired in time: {exc}")
        return ConflictError()
    logger.error(f"Database failure: {exc}", exc_info=exc)
    return StoreError()


def create_tables(db_file: str) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                isbn TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                publication_date TEXT NOT NULL,
                genre TEXT NOT NULL,
                total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL COLLATE NOCASE,
                role TEXT NOT NULL CHECK(role IN ('Admin', 'Member')),
                api_key_hash TEXT UNIQUE NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        # book_id and user_id are non-owning references: no foreign keys, a
        # borrowing outlives the book it points to.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrowings (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL CHECK(status IN ('Borrowed', 'Returned')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # At most one open borrowing per (user, book)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_borrowings_open
            ON borrowings(user_id, book_id) WHERE status = 'Borrowed'
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_user ON borrowings(user_id, borrow_date DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_book ON borrowings(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_status_due ON borrowings(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_active_created ON books(is_active, created_at DESC)")
    finally:
        conn.close()


def initialize_database(db_file: str) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready: {db_file}")
