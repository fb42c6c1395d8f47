from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from library_lending.timeutil import from_iso, to_iso

# Fixed lending policy, not configurable per call
LOAN_PERIOD = timedelta(days=14)


class BorrowStatus(str, Enum):
    BORROWED = "Borrowed"
    RETURNED = "Returned"
    # Never stored. Only used to filter and display open loans past their due date.
    OVERDUE = "Overdue"


class Borrowing:
    """One lend transaction linking a user and a book."""

    def __init__(self, user_id: str, book_id: str, borrow_date: datetime,
                 due_date: datetime | None = None, return_date: datetime | None = None,
                 status: BorrowStatus | str = BorrowStatus.BORROWED, id: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.borrow_date = borrow_date
        self.due_date = due_date or borrow_date + LOAN_PERIOD
        self.return_date = return_date
        self.status = BorrowStatus(status)
        self.created_at = created_at
        self.updated_at = updated_at
        # Display data resolved by the lending core, not persisted
        self.book: Optional[dict] = None
        self.user: Optional[dict] = None

    def __repr__(self) -> str:  # pragma: no cover
        return f"Borrowing(id={self.id!r}, user={self.user_id!r}, book={self.book_id!r}, status={self.status.value})"

    @property
    def is_open(self) -> bool:
        return self.status == BorrowStatus.BORROWED

    def is_overdue(self, now: datetime) -> bool:
        """True while the loan is open and past its due date."""
        return self.is_open and self.due_date < now

    def to_dict(self, now: datetime | None = None) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": to_iso(self.borrow_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date) if self.return_date else None,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "book": self.book,
            "user": self.user,
        }
        if now is not None:
            data["is_overdue"] = self.is_overdue(now)
        return data

    @staticmethod
    def from_row(data: dict) -> "Borrowing":
        return Borrowing(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            borrow_date=from_iso(data["borrow_date"]),
            due_date=from_iso(data["due_date"]),
            return_date=from_iso(data["return_date"]) if data.get("return_date") else None,
            status=data["status"],
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
