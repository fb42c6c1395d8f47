from __future__ import annotations

from datetime import date


class Book:
    """A catalog entry: one title with its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, publication_date: date | str, genre: str,
                 total_copies: int = 1, available_copies: int | None = None,
                 id: str | None = None, is_active: bool = True,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        if isinstance(publication_date, str):
            publication_date = date.fromisoformat(publication_date[:10])
        self.publication_date = publication_date
        self.genre = genre.strip()
        self.total_copies = total_copies
        # A new title is fully on the shelf unless told otherwise
        self.available_copies = total_copies if available_copies is None else available_copies
        self.is_active = is_active
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, isbn={self.isbn!r}, available={self.available_copies}/{self.total_copies})"

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publication_date": self.publication_date.isoformat(),
            "genre": self.genre,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self) -> dict:
        """The subset shown next to a borrowing record."""
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite stores is_active as 0/1
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            publication_date=data["publication_date"],
            genre=data["genre"],
            total_copies=int(data["total_copies"]),
            available_copies=int(data["available_copies"]),
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
