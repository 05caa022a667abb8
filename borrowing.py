"""Lending workflow: keeps book stock and borrow records consistent.

Each operation runs inside one ``database.transaction()`` scope. The scope
holds SQLite's write lock from its first statement, so the check-then-write
sequences below behave as if serialized even when many requests for the same
book arrive at once. Any error raised inside a scope rolls back every change
made in it.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

import database
from borrow_store import BorrowTransactionStore
from borrow_transaction import BorrowTransaction, TransactionStatus
from catalog import CatalogStore
from database import as_utc, utcnow
from errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OutOfStockError,
    UnauthenticatedError,
    ValidationFailedError,
)
from inventory import InventoryLedger
from pagination import page_window, paginate
from user import Caller, User

logger = logging.getLogger(__name__)


class BorrowingCoordinator:
    """Creates, returns, corrects and removes loans."""

    def __init__(self, ledger: Optional[InventoryLedger] = None,
                 store: Optional[BorrowTransactionStore] = None,
                 catalog: Optional[CatalogStore] = None) -> None:
        self.ledger = ledger or InventoryLedger()
        self.store = store or BorrowTransactionStore()
        self.catalog = catalog or CatalogStore()

    # ------------------------- Lending ------------------------- #
    def create_borrow(self, caller: Optional[Caller], book_id: str, due_date: datetime,
                      now: Optional[datetime] = None) -> BorrowTransaction:
        """Lend one copy of ``book_id`` to the caller."""
        if caller is None:
            raise UnauthenticatedError("User not authenticated")

        with database.transaction() as conn:
            book = self.ledger.get_book(conn, book_id)
            if book is None or book.is_deleted:
                logger.info(f"Borrow rejected: book {book_id} not found")
                raise NotFoundError("Book not found")
            if book.available_stock < 1:
                logger.info(f"Borrow rejected: book {book_id} is out of stock")
                raise OutOfStockError("Book is out of stock")
            if self.store.has_active_loan(conn, caller.id, book_id):
                logger.info(f"Borrow rejected: user {caller.id} already holds book {book_id}")
                raise ConflictError("You already have this book borrowed")

            self.ledger.reserve(conn, book_id)
            record = self.store.create(conn, caller.id, book_id, due_date, now=now)
            self._attach_context(conn, record)

        logger.info(f"User {caller.id} borrowed book {book_id} (transaction {record.id})")
        return record

    def update_borrow(self, transaction_id: str, status: Optional[TransactionStatus] = None,
                      return_date: Optional[datetime] = None,
                      now: Optional[datetime] = None) -> BorrowTransaction:
        """Administrative correction of a loan's status and/or return date.

        Moving a loan to RETURNED puts its copy back on the shelf exactly once;
        repeating the call leaves stock alone.
        """
        now = as_utc(now) if now else utcnow()
        with database.transaction() as conn:
            current = self.store.get(conn, transaction_id)
            if current is None:
                raise NotFoundError("Borrow transaction not found")

            target = TransactionStatus(status) if status is not None else current.status
            self._check_transition(current, target, return_date, now)

            if target == TransactionStatus.RETURNED and current.is_active:
                self.ledger.release(conn, current.book_id)
                record = self.store.transition_to_returned(conn, transaction_id, return_date=return_date, now=now)
                logger.info(f"Transaction {transaction_id} returned, book {current.book_id} released")
            else:
                record = self.store.update_fields(
                    conn,
                    transaction_id,
                    status=target if target != current.status else None,
                    return_date=return_date,
                )
            self._attach_context(conn, record)
        return record

    def return_borrow(self, transaction_id: str, return_date: Optional[datetime] = None,
                      now: Optional[datetime] = None) -> BorrowTransaction:
        return self.update_borrow(transaction_id, status=TransactionStatus.RETURNED,
                                  return_date=return_date, now=now)

    def remove_borrow(self, transaction_id: str) -> BorrowTransaction:
        """Soft-delete a record. Stock is left as it is; use a return to release a copy."""
        with database.transaction() as conn:
            record = self.store.soft_delete(conn, transaction_id)
        logger.info(f"Transaction {transaction_id} soft-deleted")
        return record

    # ------------------------- Reads ------------------------- #
    def get_borrow(self, transaction_id: str) -> BorrowTransaction:
        with database.connection() as conn:
            record = self.store.get(conn, transaction_id)
            if record is None:
                raise NotFoundError("Borrow transaction not found")
            self._attach_context(conn, record)
        return record

    def list_borrows(self, status: Optional[TransactionStatus] = None, user_id: Optional[str] = None,
                     book_id: Optional[str] = None, page: Optional[int] = 1,
                     limit: Optional[int] = None) -> Dict[str, Any]:
        window = page_window(page, limit)
        with database.connection() as conn:
            total = self.store.count(conn, status=status, user_id=user_id, book_id=book_id)
            records = self.store.list(conn, status=status, user_id=user_id, book_id=book_id,
                                      offset=window.offset, limit=window.limit)
            for record in records:
                self._attach_context(conn, record)
        return paginate(records, total, window)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _check_transition(current: BorrowTransaction, target: TransactionStatus,
                          return_date: Optional[datetime], now: datetime) -> None:
        if current.status == TransactionStatus.RETURNED and target != TransactionStatus.RETURNED:
            raise InvalidTransitionError("A returned loan cannot be reopened")
        if current.status == TransactionStatus.OVERDUE and target == TransactionStatus.BORROWED:
            raise InvalidTransitionError("An overdue loan can only be returned")
        if (target == TransactionStatus.OVERDUE and current.status == TransactionStatus.BORROWED
                and current.due_date >= now):
            raise InvalidTransitionError("Loan is not past its due date")
        if return_date is not None:
            if target != TransactionStatus.RETURNED:
                raise InvalidTransitionError("A return date can only be set on a returned loan")
            if as_utc(return_date) < current.borrow_date:
                raise ValidationFailedError("Return date cannot be before the borrow date")

    def _attach_context(self, conn: sqlite3.Connection, record: BorrowTransaction) -> None:
        record.book = self.catalog.get_book(conn, record.book_id)
        row = conn.execute("SELECT * FROM users WHERE id = ?", (record.user_id,)).fetchone()
        record.user = User.from_dict(dict(row)) if row else None
