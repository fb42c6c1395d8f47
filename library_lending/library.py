import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, List, Optional

from library_lending import database
from library_lending.auth import ADMIN_ROLE, AccessPolicy
from library_lending.book import Book
from library_lending.borrowing import Borrowing, BorrowStatus
from library_lending.catalog import Catalog
from library_lending.config import settings
from library_lending.errors import (
    AlreadyReturnedError,
    BookUnavailableError,
    DuplicateBorrowError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
)
from library_lending.ledger import BorrowingLedger
from library_lending.pagination import Page, normalize_page, offset_for
from library_lending.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)


def parse_status(value: Any) -> Optional[BorrowStatus]:
    """Accept None, a BorrowStatus, or its wire value ("Borrowed", "returned", ...)."""
    if value is None or value == "":
        return None
    if isinstance(value, BorrowStatus):
        return value
    for status in BorrowStatus:
        if status.value.lower() == str(value).strip().lower():
            return status
    allowed = ", ".join(s.value for s in BorrowStatus)
    raise InvalidRequestError(f"Invalid status '{value}'. Allowed: {allowed}")


class Library:
    """Lending core: borrow and return transactions over the catalog and the ledger.

    Every borrow/return is one database transaction opened with BEGIN
    IMMEDIATE, so the availability check, the duplicate check and both
    writes happen under the database write lock. The copy decrement is a
    conditional update and the ledger carries a unique index on open
    (user, book) pairs, so a lost race can only roll back, never
    double-lend. No state is kept between calls besides the database path.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.db_file = db_file or settings.database_file
        database.initialize_database(self.db_file)
        self.catalog = Catalog(self.db_file)
        self.ledger = BorrowingLedger(self.db_file)
        self.access = AccessPolicy(self.db_file)
        self.clock = clock

    # ------------------------- Catalog passthrough ------------------------- #
    def add_book(self, book: Book) -> Book:
        return self.catalog.create(book)

    def find_book(self, book_id: str, *, include_inactive: bool = False) -> Optional[Book]:
        return self.catalog.get(book_id, include_inactive=include_inactive)

    def list_books(self, **filters: Any) -> Page:
        return self.catalog.list(**filters)

    def update_book(self, book_id: str, **patch: Any) -> Book:
        return self.catalog.update(book_id, **patch)

    def remove_book(self, book_id: str) -> None:
        self.catalog.delete(book_id)

    # ------------------------- Transactions ------------------------- #
    def borrow_book(self, user_id: str, book_id: str) -> Borrowing:
        """Lend one copy of ``book_id`` to ``user_id``.

        Checks, in order: the book exists and is active (NotFoundError), a
        copy is available (BookUnavailableError), the user has no open
        borrowing of it (DuplicateBorrowError). Then inserts the borrowing
        and decrements available_copies, both or neither.
        """
        try:
            with database.transaction(self.db_file) as conn:
                book = self.catalog.get(book_id, conn=conn)
                if book is None:
                    raise NotFoundError("Book not found")
                if book.available_copies <= 0:
                    raise BookUnavailableError("Book is currently not available: no copies left")
                if self.ledger.find_open(user_id, book_id, conn=conn):
                    raise DuplicateBorrowError()

                if not self.catalog.decrement_available(book_id, conn):
                    # Only reachable if another writer got in despite the lock
                    logger.warning(f"Lost the race for the last copy of book {book_id}")
                    raise BookUnavailableError("Book is currently not available: no copies left")
                borrowing = self.ledger.insert(
                    Borrowing(user_id=user_id, book_id=book_id, borrow_date=self.clock()), conn
                )
        except sqlite3.IntegrityError as e:
            # ux_borrowings_open: a concurrent borrow of the same (user, book) committed first
            logger.warning(f"Duplicate open borrowing rejected by the store: user={user_id} book={book_id}")
            raise DuplicateBorrowError() from e
        except sqlite3.Error as e:
            raise database.store_error(e) from e

        logger.info(f"Book borrowed: borrowing={borrowing.id} user={user_id} book={book_id} "
                    f"due={to_iso(borrowing.due_date)}")
        return self._resolve([borrowing])[0]

    def return_book(self, borrowing_id: str, acting_user_id: str, acting_role: str) -> Borrowing:
        """Close a borrowing and put the copy back on the shelf.

        Only the borrower or an admin may return. A second return fails with
        AlreadyReturnedError. If the book was soft-deleted (or is gone) the
        copy count is left alone and the return still completes.
        """
        try:
            with database.transaction(self.db_file) as conn:
                borrowing = self.ledger.get(borrowing_id, conn=conn)
                if borrowing is None:
                    raise NotFoundError("Borrowing record not found")
                if borrowing.user_id != acting_user_id and acting_role != ADMIN_ROLE:
                    raise ForbiddenError("Not authorized to return this book")
                if borrowing.status == BorrowStatus.RETURNED:
                    raise AlreadyReturnedError()

                now = self.clock()
                if not self.ledger.mark_returned(borrowing_id, now, conn):
                    raise AlreadyReturnedError()
                restocked = self.catalog.increment_available(borrowing.book_id, conn)
        except sqlite3.Error as e:
            raise database.store_error(e) from e

        if not restocked:
            logger.warning(f"Return {borrowing_id}: book {borrowing.book_id} missing, inactive or full; "
                           f"copy count not incremented")
        borrowing.status = BorrowStatus.RETURNED
        borrowing.return_date = now
        borrowing.updated_at = to_iso(now)
        logger.info(f"Book returned: borrowing={borrowing_id} by={acting_user_id} book={borrowing.book_id}")
        return self._resolve([borrowing])[0]

    # ------------------------- Read projections ------------------------- #
    def get_borrowing(self, borrowing_id: str) -> Borrowing:
        borrowing = self.ledger.get(borrowing_id)
        if borrowing is None:
            raise NotFoundError("Borrowing record not found")
        return self._resolve([borrowing])[0]

    def get_borrow_history(self, user_id: str, status: Any = None,
                           page: Optional[int] = None, limit: Optional[int] = None) -> Page:
        """A user's own borrowings, newest first."""
        return self._page(user_id=user_id, status=parse_status(status), page=page, limit=limit)

    def get_all_borrowings(self, status: Any = None, user_id: Optional[str] = None,
                           page: Optional[int] = None, limit: Optional[int] = None) -> Page:
        """Every borrowing, optionally filtered by status and user. Admin only at the adapters."""
        return self._page(user_id=user_id, status=parse_status(status), page=page, limit=limit)

    def _page(self, *, user_id: Optional[str], status: Optional[BorrowStatus],
              page: Optional[int], limit: Optional[int]) -> Page:
        page, limit = normalize_page(page, limit)
        now = self.clock()
        total = self.ledger.count(user_id=user_id, status=status, now=now)
        items = self.ledger.find(user_id=user_id, status=status, now=now,
                                 offset=offset_for(page, limit), limit=limit)
        return Page(items=self._resolve(items), total=total, page=page, page_size=limit)

    def _resolve(self, borrowings: List[Borrowing]) -> List[Borrowing]:
        """Attach book and user summaries for display. Missing references stay None."""
        books = self.catalog.get_many([b.book_id for b in borrowings])
        users = self.access.get_users([b.user_id for b in borrowings])
        for borrowing in borrowings:
            book = books.get(borrowing.book_id)
            user = users.get(borrowing.user_id)
            borrowing.book = book.summary() if book else None
            borrowing.user = user.summary() if user else None
        return borrowings

    # ------------------------- Consistency ------------------------- #
    def audit(self) -> List[str]:
        """Describe every violated lending invariant. Empty when the store is consistent."""
        problems: List[str] = []
        with database.connection(self.db_file) as conn:
            for row in conn.execute("""
                SELECT id, total_copies, available_copies FROM books
                WHERE is_active = 1 AND (available_copies < 0 OR available_copies > total_copies)
            """):
                problems.append(
                    f"book {row['id']}: available_copies={row['available_copies']} "
                    f"outside 0..{row['total_copies']}"
                )
            # Copies on the shelf plus copies on loan can never exceed the copies owned
            for row in conn.execute("""
                SELECT b.id, b.total_copies, b.available_copies, COUNT(br.id) AS on_loan
                FROM books b
                LEFT JOIN borrowings br ON br.book_id = b.id AND br.status = ?
                WHERE b.is_active = 1
                GROUP BY b.id, b.total_copies, b.available_copies
                HAVING b.available_copies + COUNT(br.id) > b.total_copies
            """, (BorrowStatus.BORROWED.value,)):
                problems.append(
                    f"book {row['id']}: available_copies={row['available_copies']} + "
                    f"on_loan={row['on_loan']} exceeds total_copies={row['total_copies']}"
                )
            for row in conn.execute("""
                SELECT user_id, book_id, COUNT(*) AS open_count FROM borrowings
                WHERE status = ? GROUP BY user_id, book_id HAVING COUNT(*) > 1
            """, (BorrowStatus.BORROWED.value,)):
                problems.append(
                    f"user {row['user_id']} holds {row['open_count']} open borrowings of book {row['book_id']}"
                )
        return problems

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
