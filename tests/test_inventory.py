import pytest

import database
from errors import BookDeletedError, ConflictError, NotFoundError, OutOfStockError
from inventory import InventoryLedger

ledger = InventoryLedger()


def test_reserve_decrements_available_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    with database.transaction() as conn:
        ledger.reserve(conn, book.id)
    assert lib.find_book(book.id).available_stock == 1


def test_reserve_out_of_stock_leaves_counter(lib):
    book = lib.add_book("Dune", "Frank Herbert", 0)
    with pytest.raises(OutOfStockError):
        with database.transaction() as conn:
            ledger.reserve(conn, book.id)
    assert lib.find_book(book.id).available_stock == 0


def test_reserve_unknown_book(lib):
    with pytest.raises(NotFoundError):
        with database.transaction() as conn:
            ledger.reserve(conn, "missing")


def test_reserve_deleted_book(lib):
    book = lib.add_book("Dune", "Frank Herbert", 3)
    lib.remove_book(book.id)
    with pytest.raises(BookDeletedError):
        with database.transaction() as conn:
            ledger.reserve(conn, book.id)
    assert lib.find_book(book.id, include_deleted=True).available_stock == 3


def test_release_increments_available_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    with database.transaction() as conn:
        ledger.reserve(conn, book.id)
        ledger.release(conn, book.id)
    assert lib.find_book(book.id).available_stock == 1


def test_release_never_exceeds_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    with pytest.raises(ConflictError):
        with database.transaction() as conn:
            ledger.release(conn, book.id)
    assert lib.find_book(book.id).available_stock == 1


def test_release_unknown_book(lib):
    with pytest.raises(NotFoundError):
        with database.transaction() as conn:
            ledger.release(conn, "missing")


def test_rollback_undoes_reserve(lib):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    with pytest.raises(RuntimeError):
        with database.transaction() as conn:
            ledger.reserve(conn, book.id)
            raise RuntimeError("boom")
    assert lib.find_book(book.id).available_stock == 1
