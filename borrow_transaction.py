from __future__ import annotations

from datetime import datetime
from enum import Enum

from book import Book
from database import format_timestamp, parse_timestamp
from user import User


class TransactionStatus(str, Enum):
    BORROWED = "BORROWED"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


ACTIVE_STATUSES = (TransactionStatus.BORROWED, TransactionStatus.OVERDUE)


class BorrowTransaction:
    """One loan of one book to one user.

    ``book`` and ``user`` are only populated when the record is loaded with its
    context attached.
    """

    def __init__(self, id: str, user_id: str, book_id: str, borrow_date: datetime, due_date: datetime,
                 return_date: datetime | None = None,
                 status: TransactionStatus | str = TransactionStatus.BORROWED,
                 is_deleted: bool = False, book: Book | None = None, user: User | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = TransactionStatus(status)
        self.is_deleted = is_deleted
        self.book = book
        self.user = user

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": format_timestamp(self.borrow_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date) if self.return_date else None,
            "status": self.status.value,
            "is_deleted": self.is_deleted,
            "book": self.book.to_dict() if self.book else None,
            "user": self.user.to_dict() if self.user else None,
        }

    @staticmethod
    def from_row(row) -> "BorrowTransaction":
        data = dict(row)
        return BorrowTransaction(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            borrow_date=parse_timestamp(data["borrow_date"]),
            due_date=parse_timestamp(data["due_date"]),
            return_date=parse_timestamp(data.get("return_date")),
            status=data["status"],
            is_deleted=bool(data.get("is_deleted", False)),
        )
