import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from library_lending import database
from library_lending.book import Book
from library_lending.borrowing import BorrowStatus
from library_lending.errors import DuplicateKeyError, InvalidBookError, NotFoundError
from library_lending.pagination import Page, normalize_page, offset_for
from library_lending.timeutil import to_iso, utc_now
from library_lending.validators import BookValidator, ISBNValidator

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = """
    id, isbn, title, author, publication_date, genre,
    total_copies, available_copies, is_active, created_at, updated_at
"""

UPDATABLE_FIELDS = ("title", "author", "isbn", "publication_date", "genre", "total_copies", "available_copies")


class Catalog:
    """Owns the book records. Books are never hard-deleted."""

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    # ------------------------- Core operations ------------------------- #
    def create(self, book: Book) -> Book:
        """Add a book. ISBNs are unique across active and inactive books."""
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        BookValidator.validate(book)
        if self.find_by_isbn(book.isbn):
            raise DuplicateKeyError(f"Book with ISBN {book.isbn} already exists.")

        now = to_iso(utc_now())
        book.id = book.id or uuid.uuid4().hex
        book.created_at = now
        book.updated_at = now
        book.is_active = True
        try:
            with database.connection(self.db_file) as conn:
                conn.execute(f"""
                    INSERT INTO books ({_BOOK_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    book.id, book.isbn, book.title, book.author, book.publication_date.isoformat(),
                    book.genre, book.total_copies, book.available_copies, 1, now, now,
                ))
        except sqlite3.IntegrityError as e:
            # Lost a race with a concurrent create of the same ISBN
            raise DuplicateKeyError(f"Book with ISBN {book.isbn} already exists.") from e
        logger.info(f"Book added: {book.id} ({book.isbn})")
        return book

    def get(self, book_id: str, *, include_inactive: bool = False,
            conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        """Return the book, or None. Inactive books are only visible with include_inactive."""
        with database.connection(self.db_file, conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        if not row:
            return None
        book = Book.from_dict(dict(row))
        if not book.is_active and not include_inactive:
            return None
        return book

    def get_many(self, book_ids: List[str]) -> Dict[str, Book]:
        """Books by id, active or not. Used to resolve borrowing history for display."""
        ids = list(set(book_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with database.connection(self.db_file) as conn:
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: Book.from_dict(dict(row)) for row in rows}

    def find_by_isbn(self, isbn: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        with database.connection(self.db_file, conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (norm,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list(self, *, genre: Optional[str] = None, author: Optional[str] = None, title: Optional[str] = None,
             page: Optional[int] = None, limit: Optional[int] = None) -> Page:
        """Active books, newest first, with case-insensitive substring filters."""
        page, limit = normalize_page(page, limit)
        clauses = ["is_active = 1"]
        params: List[Any] = []
        for column, value in (("genre", genre), ("author", author), ("title", title)):
            if value:
                clauses.append(f"{column} LIKE ? COLLATE NOCASE")
                params.append(f"%{value.strip()}%")
        where = " AND ".join(clauses)

        with database.connection(self.db_file) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM books WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset_for(page, limit)],
            ).fetchall()
        return Page(items=[Book.from_dict(dict(row)) for row in rows], total=total, page=page, page_size=limit)

    def update(self, book_id: str, **patch: Any) -> Book:
        """Admin edit of any book, active or not.

        Copy counts are checked against the open borrowings inside the same
        write transaction the lending core uses: total_copies cannot drop
        below the copies on loan, and available_copies plus the copies on
        loan cannot exceed total_copies. When only total_copies changes, the
        shelf count moves by the same amount.
        """
        unknown = set(patch) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidBookError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        patch = {k: v for k, v in patch.items() if v is not None}
        if not patch:
            raise InvalidBookError("Nothing to update.")
        if "isbn" in patch:
            patch["isbn"] = ISBNValidator.normalize_isbn(patch["isbn"])

        try:
            with database.transaction(self.db_file) as conn:
                existing = self.get(book_id, include_inactive=True, conn=conn)
                if not existing:
                    raise NotFoundError("Book not found")

                if "isbn" in patch and patch["isbn"] != existing.isbn:
                    other = self.find_by_isbn(patch["isbn"], conn=conn)
                    if other and other.id != book_id:
                        raise DuplicateKeyError("Another book with this ISBN already exists")

                if "total_copies" in patch or "available_copies" in patch:
                    self._reconcile_counts(existing, patch, self.open_loans(book_id, conn))

                # Validate the book as it would look after the patch
                candidate = Book.from_dict({**existing.to_dict(), **patch})
                BookValidator.validate(candidate)

                values = candidate.to_dict()
                values["updated_at"] = to_iso(utc_now())
                fields = list(patch) + ["updated_at"]
                set_clause = ", ".join(f"{field} = ?" for field in fields)
                params = [values[field] for field in fields] + [book_id]
                conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", params)
        except sqlite3.IntegrityError as e:
            if "isbn" in str(e).lower():
                raise DuplicateKeyError("Another book with this ISBN already exists") from e
            raise InvalidBookError("Available copies cannot exceed total copies") from e
        except sqlite3.Error as e:
            raise database.store_error(e) from e
        logger.info(f"Book updated: {book_id} fields={sorted(patch)}")
        return self.get(book_id, include_inactive=True)

    @staticmethod
    def _reconcile_counts(existing: Book, patch: Dict[str, Any], on_loan: int) -> None:
        """Fill in or check available_copies so that available + on loan <= total."""
        total = patch.get("total_copies", existing.total_copies)
        if total < 0:
            # Reported by BookValidator
            return
        if total < on_loan:
            raise InvalidBookError(f"Total copies cannot be less than the {on_loan} copies on loan")
        shelf_limit = total - on_loan
        if "available_copies" in patch:
            if patch["available_copies"] > shelf_limit:
                raise InvalidBookError(
                    f"Available copies cannot exceed {shelf_limit}: {on_loan} of {total} copies are on loan"
                )
        else:
            shifted = existing.available_copies + (total - existing.total_copies)
            patch["available_copies"] = min(max(shifted, 0), shelf_limit)

    def open_loans(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Number of copies of the book currently on loan."""
        with database.connection(self.db_file, conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM borrowings WHERE book_id = ? AND status = ?",
                (book_id, BorrowStatus.BORROWED.value),
            ).fetchone()[0]

    def delete(self, book_id: str) -> None:
        """Soft delete. Copy counts and borrowing records are left untouched."""
        with database.connection(self.db_file) as conn:
            cursor = conn.execute(
                "UPDATE books SET is_active = 0, updated_at = ? WHERE id = ?",
                (to_iso(utc_now()), book_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info(f"Book deactivated: {book_id}")

    # ------------------------- Lending primitives ------------------------- #
    # These run on the caller's transaction connection.
    def decrement_available(self, book_id: str, conn: sqlite3.Connection) -> bool:
        """Take one copy off the shelf if the book is active and has one. True if applied."""
        cursor = conn.execute("""
            UPDATE books
            SET available_copies = available_copies - 1, updated_at = ?
            WHERE id = ? AND is_active = 1 AND available_copies > 0
        """, (to_iso(utc_now()), book_id))
        return cursor.rowcount == 1

    def increment_available(self, book_id: str, conn: sqlite3.Connection) -> bool:
        """Put one copy back if the book is active and not already full. True if applied."""
        cursor = conn.execute("""
            UPDATE books
            SET available_copies = available_copies + 1, updated_at = ?
            WHERE id = ? AND is_active = 1 AND available_copies < total_copies
        """, (to_iso(utc_now()), book_id))
        return cursor.rowcount == 1
