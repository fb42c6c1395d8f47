import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from library_lending import database
from library_lending.auth import MEMBER_ROLE
from library_lending.borrowing import BorrowStatus
from library_lending.config import settings
from library_lending.errors import (
    AlreadyReturnedError,
    BookUnavailableError,
    ConflictError,
    DuplicateBorrowError,
    LendingError,
)

pytestmark = pytest.mark.concurrency


def _members(lib, count):
    return [lib.access.create_user(f"Member {i}", f"m{i}@example.com", MEMBER_ROLE)[0] for i in range(count)]


def _run_all(fn, args_list):
    """Start every call at the same moment and collect results or errors."""
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        try:
            return fn(*args)
        except LendingError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        return list(pool.map(call, args_list))


def test_two_members_race_for_last_copy(lib, make_book, member, other_member):
    book = make_book(total_copies=1)

    results = _run_all(lib.borrow_book, [(member.id, book.id), (other_member.id, book.id)])

    successes = [r for r in results if not isinstance(r, LendingError)]
    failures = [r for r in results if isinstance(r, LendingError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (BookUnavailableError, ConflictError))
    assert lib.find_book(book.id).available_copies == 0
    assert lib.audit() == []


def test_slow_checks_do_not_let_two_borrows_through(lib, make_book, monkeypatch):
    book = make_book(total_copies=1)
    users = _members(lib, 8)
    original = lib.ledger.find_open

    def slow_find_open(*args, **kwargs):
        # Widen the window between the availability check and the decrement
        time.sleep(0.05)
        return original(*args, **kwargs)

    monkeypatch.setattr(lib.ledger, "find_open", slow_find_open)

    results = _run_all(lib.borrow_book, [(u.id, book.id) for u in users])

    successes = [r for r in results if not isinstance(r, LendingError)]
    assert len(successes) == 1
    assert all(isinstance(r, BookUnavailableError) for r in results if isinstance(r, LendingError))
    assert lib.ledger.count(book_id=book.id) == 1
    assert lib.audit() == []


def test_copies_never_oversubscribed(lib, make_book):
    book = make_book(total_copies=3)
    users = _members(lib, 10)

    results = _run_all(lib.borrow_book, [(u.id, book.id) for u in users])

    successes = [r for r in results if not isinstance(r, LendingError)]
    assert len(successes) == 3
    stored = lib.find_book(book.id)
    assert stored.available_copies == 0
    assert lib.ledger.count(book_id=book.id, status=BorrowStatus.BORROWED) == 3
    assert lib.audit() == []


def test_same_member_double_borrow_race(lib, make_book, member):
    book = make_book(total_copies=5)

    results = _run_all(lib.borrow_book, [(member.id, book.id)] * 4)

    successes = [r for r in results if not isinstance(r, LendingError)]
    assert len(successes) == 1
    assert all(isinstance(r, DuplicateBorrowError) for r in results if isinstance(r, LendingError))
    assert lib.find_book(book.id).available_copies == 4


def test_concurrent_returns_increment_once(lib, make_book, member):
    book = make_book(total_copies=1)
    borrowing = lib.borrow_book(member.id, book.id)

    results = _run_all(lib.return_book, [(borrowing.id, member.id, MEMBER_ROLE)] * 4)

    successes = [r for r in results if not isinstance(r, LendingError)]
    assert len(successes) == 1
    assert all(isinstance(r, AlreadyReturnedError) for r in results if isinstance(r, LendingError))
    assert lib.find_book(book.id).available_copies == 1


def test_unique_open_index_backs_up_duplicate_check(lib, make_book, member, monkeypatch):
    book = make_book(total_copies=2)
    lib.borrow_book(member.id, book.id)
    # Pretend the duplicate check missed the open record
    monkeypatch.setattr(lib.ledger, "find_open", lambda *args, **kwargs: None)

    with pytest.raises(DuplicateBorrowError):
        lib.borrow_book(member.id, book.id)

    # The decrement was rolled back with the failed insert
    assert lib.find_book(book.id).available_copies == 1
    assert lib.ledger.count(user_id=member.id) == 1


def test_conditional_decrement_refuses_empty_shelf(lib, make_book):
    book = make_book(total_copies=1, available_copies=0)
    with database.transaction(lib.db_file) as conn:
        assert lib.catalog.decrement_available(book.id, conn) is False
    assert lib.find_book(book.id).available_copies == 0


def test_lock_timeout_surfaces_as_conflict(lib, make_book, member, monkeypatch):
    book = make_book(total_copies=1)
    monkeypatch.setattr(settings, "database_timeout", 0.1)
    holder = database.get_db_connection(lib.db_file)
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(ConflictError) as excinfo:
            lib.borrow_book(member.id, book.id)
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert excinfo.value.retry_safe is False
    assert lib.find_book(book.id).available_copies == 1
    assert lib.ledger.count() == 0
