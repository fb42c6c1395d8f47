import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from library_lending.api import app, get_library
from library_lending.auth import ADMIN_ROLE, MEMBER_ROLE
from library_lending.book import Book
from library_lending.config import settings
from library_lending.library import Library


class FakeClock:
    """Settable clock so due dates and overdue checks are deterministic."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name[:40]}.db")


@pytest.fixture
def lib(db_file, clock):
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def make_book(lib):
    counter = {"n": 0}

    def _make(total_copies=1, **fields):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "title": f"Book {n}",
            "author": "Test Author",
            "isbn": f"978000000{n:04d}",
            "publication_date": "2020-01-01",
            "genre": "Fiction",
        }
        data.update(fields)
        return lib.add_book(Book(total_copies=total_copies, **data))

    return _make


@pytest.fixture
def member(lib):
    user, api_key = lib.access.create_user("Alice Member", "alice@example.com", MEMBER_ROLE)
    user.api_key = api_key
    return user


@pytest.fixture
def other_member(lib):
    user, api_key = lib.access.create_user("Bob Member", "bob@example.com", MEMBER_ROLE)
    user.api_key = api_key
    return user


@pytest.fixture
def admin(lib):
    user, api_key = lib.access.create_user("Carol Admin", "carol@example.com", ADMIN_ROLE)
    user.api_key = api_key
    return user


@pytest.fixture
def client(lib):
    app.dependency_overrides[get_library] = lambda: lib
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-API-Key": settings.api_key}


@pytest.fixture
def headers():
    def _headers(user):
        return {"X-API-Key": user.api_key}
    return _headers
