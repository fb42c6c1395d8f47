import sqlite3
import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from library_lending import database
from library_lending.borrowing import Borrowing, BorrowStatus
from library_lending.timeutil import to_iso

_BORROWING_COLUMNS = """
    id, user_id, book_id, borrow_date, due_date, return_date, status, created_at, updated_at
"""


class BorrowingLedger:
    """Record store for borrowings.

    No business validation happens here; the lending core decides what may
    be written. Records are inserted and updated in place, never deleted.
    """

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    def insert(self, borrowing: Borrowing, conn: sqlite3.Connection) -> Borrowing:
        now = to_iso(borrowing.borrow_date)
        borrowing.id = borrowing.id or uuid.uuid4().hex
        borrowing.created_at = now
        borrowing.updated_at = now
        conn.execute(f"""
            INSERT INTO borrowings ({_BORROWING_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            borrowing.id, borrowing.user_id, borrowing.book_id,
            to_iso(borrowing.borrow_date), to_iso(borrowing.due_date),
            to_iso(borrowing.return_date) if borrowing.return_date else None,
            borrowing.status.value, now, now,
        ))
        return borrowing

    def get(self, borrowing_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Borrowing]:
        with database.connection(self.db_file, conn) as c:
            row = c.execute(
                f"SELECT {_BORROWING_COLUMNS} FROM borrowings WHERE id = ?", (borrowing_id,)
            ).fetchone()
        return Borrowing.from_row(dict(row)) if row else None

    def find_open(self, user_id: str, book_id: str,
                  conn: Optional[sqlite3.Connection] = None) -> Optional[Borrowing]:
        """The user's Borrowed record for this book, if any."""
        with database.connection(self.db_file, conn) as c:
            row = c.execute(
                f"SELECT {_BORROWING_COLUMNS} FROM borrowings WHERE user_id = ? AND book_id = ? AND status = ?",
                (user_id, book_id, BorrowStatus.BORROWED.value),
            ).fetchone()
        return Borrowing.from_row(dict(row)) if row else None

    def mark_returned(self, borrowing_id: str, return_date: datetime, conn: sqlite3.Connection) -> bool:
        """Close an open record. False when it was not open (already returned or missing)."""
        stamp = to_iso(return_date)
        cursor = conn.execute("""
            UPDATE borrowings
            SET status = ?, return_date = ?, updated_at = ?
            WHERE id = ? AND status = ?
        """, (BorrowStatus.RETURNED.value, stamp, stamp, borrowing_id, BorrowStatus.BORROWED.value))
        return cursor.rowcount == 1

    # ------------------------- Queries ------------------------- #
    @staticmethod
    def _where(user_id: Optional[str], book_id: Optional[str], status: Optional[BorrowStatus],
               now: Optional[datetime]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if status == BorrowStatus.OVERDUE:
            # Derived: open and past due as of `now`
            if now is None:
                raise ValueError("Filtering by Overdue needs the current time")
            clauses.append("status = ? AND due_date < ?")
            params.extend([BorrowStatus.BORROWED.value, to_iso(now)])
        elif status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = " AND ".join(clauses) if clauses else "1 = 1"
        return where, params

    def find(self, *, user_id: Optional[str] = None, book_id: Optional[str] = None,
             status: Optional[BorrowStatus] = None, now: Optional[datetime] = None,
             offset: int = 0, limit: Optional[int] = None) -> List[Borrowing]:
        """Records matching all given filters, newest borrow first."""
        where, params = self._where(user_id, book_id, status, now)
        sql = f"SELECT {_BORROWING_COLUMNS} FROM borrowings WHERE {where} ORDER BY borrow_date DESC, id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + [limit, offset]
        with database.connection(self.db_file) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Borrowing.from_row(dict(row)) for row in rows]

    def count(self, *, user_id: Optional[str] = None, book_id: Optional[str] = None,
              status: Optional[BorrowStatus] = None, now: Optional[datetime] = None) -> int:
        where, params = self._where(user_id, book_id, status, now)
        with database.connection(self.db_file) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM borrowings WHERE {where}", params).fetchone()[0]
