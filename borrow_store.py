import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from borrow_transaction import ACTIVE_STATUSES, BorrowTransaction, TransactionStatus
from database import format_timestamp, utcnow
from errors import ConflictError, NotFoundError


class BorrowTransactionStore:
    """Persistence and state transitions of borrow records.

    Records are never physically deleted; ``is_deleted`` hides them from every
    lookup except ``get(..., include_deleted=True)``.
    """

    # ------------------------- Queries ------------------------- #
    def get(self, conn: sqlite3.Connection, transaction_id: str,
            include_deleted: bool = False) -> Optional[BorrowTransaction]:
        query = "SELECT * FROM borrow_transactions WHERE id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        row = conn.execute(query, (transaction_id,)).fetchone()
        return BorrowTransaction.from_row(row) if row else None

    def has_active_loan(self, conn: sqlite3.Connection, user_id: str, book_id: str) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM borrow_transactions
            WHERE user_id = ? AND book_id = ? AND is_deleted = 0 AND status IN (?, ?)
            LIMIT 1
            """,
            (user_id, book_id, *[s.value for s in ACTIVE_STATUSES]),
        ).fetchone()
        return row is not None

    def list(self, conn: sqlite3.Connection, status: Optional[TransactionStatus] = None,
             user_id: Optional[str] = None, book_id: Optional[str] = None,
             offset: int = 0, limit: int = -1) -> List[BorrowTransaction]:
        where, params = self._filters(status, user_id, book_id)
        rows = conn.execute(
            f"SELECT * FROM borrow_transactions WHERE {where} "
            "ORDER BY borrow_date DESC, id LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
        return [BorrowTransaction.from_row(row) for row in rows]

    def count(self, conn: sqlite3.Connection, status: Optional[TransactionStatus] = None,
              user_id: Optional[str] = None, book_id: Optional[str] = None) -> int:
        where, params = self._filters(status, user_id, book_id)
        return conn.execute(f"SELECT COUNT(*) FROM borrow_transactions WHERE {where}", params).fetchone()[0]

    @staticmethod
    def _filters(status: Optional[TransactionStatus], user_id: Optional[str],
                 book_id: Optional[str]) -> Tuple[str, tuple]:
        clauses = ["is_deleted = 0"]
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(TransactionStatus(status).value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        return " AND ".join(clauses), tuple(params)

    # ------------------------- Mutations ------------------------- #
    def create(self, conn: sqlite3.Connection, user_id: str, book_id: str, due_date: datetime,
               now: Optional[datetime] = None) -> BorrowTransaction:
        record = BorrowTransaction(
            id=uuid.uuid4().hex,
            user_id=user_id,
            book_id=book_id,
            borrow_date=now or utcnow(),
            due_date=due_date,
        )
        try:
            conn.execute(
                """
                INSERT INTO borrow_transactions (id, user_id, book_id, borrow_date, due_date, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (record.id, user_id, book_id, format_timestamp(record.borrow_date),
                 format_timestamp(due_date), record.status.value),
            )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise NotFoundError("Borrower not found") from exc
            # idx_borrow_active_loan
            raise ConflictError("You already have this book borrowed") from exc
        return self.get(conn, record.id)

    def transition_to_returned(self, conn: sqlite3.Connection, transaction_id: str,
                               return_date: Optional[datetime] = None,
                               now: Optional[datetime] = None) -> BorrowTransaction:
        """Mark a loan returned. Returning an already returned loan changes nothing."""
        record = self.get(conn, transaction_id)
        if record is None:
            raise NotFoundError("Borrow transaction not found")
        if record.status == TransactionStatus.RETURNED:
            return record

        conn.execute(
            "UPDATE borrow_transactions SET status = ?, return_date = ? WHERE id = ?",
            (TransactionStatus.RETURNED.value, format_timestamp(return_date or now or utcnow()), transaction_id),
        )
        return self.get(conn, transaction_id)

    def update_fields(self, conn: sqlite3.Connection, transaction_id: str,
                      status: Optional[TransactionStatus] = None,
                      return_date: Optional[datetime] = None) -> BorrowTransaction:
        """Persist administrative field changes as given; callers validate the transition."""
        assignments = []
        params: list = []
        if status is not None:
            assignments.append("status = ?")
            params.append(TransactionStatus(status).value)
        if return_date is not None:
            assignments.append("return_date = ?")
            params.append(format_timestamp(return_date))
        if assignments:
            conn.execute(
                f"UPDATE borrow_transactions SET {', '.join(assignments)} WHERE id = ? AND is_deleted = 0",
                (*params, transaction_id),
            )
        record = self.get(conn, transaction_id)
        if record is None:
            raise NotFoundError("Borrow transaction not found")
        return record

    def sweep_overdue(self, conn: sqlite3.Connection, as_of: datetime) -> int:
        """Flag every BORROWED loan due before ``as_of`` as OVERDUE and return how many changed."""
        cursor = conn.execute(
            """
            UPDATE borrow_transactions
            SET status = ?
            WHERE status = ? AND is_deleted = 0 AND due_date < ?
            """,
            (TransactionStatus.OVERDUE.value, TransactionStatus.BORROWED.value, format_timestamp(as_of)),
        )
        return cursor.rowcount

    def soft_delete(self, conn: sqlite3.Connection, transaction_id: str) -> BorrowTransaction:
        cursor = conn.execute(
            "UPDATE borrow_transactions SET is_deleted = 1 WHERE id = ? AND is_deleted = 0",
            (transaction_id,),
        )
        if cursor.rowcount == 0:
            raise NotFoundError("Borrow transaction not found")
        return self.get(conn, transaction_id, include_deleted=True)
