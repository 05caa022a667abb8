import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import database
from borrow_transaction import BorrowTransaction, TransactionStatus
from config import settings
from errors import (
    ConflictError,
    LibraryError,
    NotFoundError,
    OutOfStockError,
    PermissionDeniedError,
    StoreUnavailableError,
    UnauthenticatedError,
    ValidationFailedError,
)
from library import Library
from sweeper import SweepScheduler
from user import Caller, Role

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.overdue_sweep_enabled:
        scheduler = SweepScheduler(library.sweeper)
        scheduler.start()
    try:
        yield
    finally:
        # Stop the sweep loop so shutdown does not hang on its sleep
        if scheduler is not None:
            await scheduler.stop()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed input is a 400; it never reaches the lending core."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


def get_caller(x_user_id: Optional[str] = Header(None)) -> Optional[Caller]:
    """Identity comes from the upstream auth layer as X-User-Id; unknown or deleted users are anonymous."""
    return library.caller_for(x_user_id)


def require_caller(caller: Optional[Caller] = Depends(get_caller)) -> Caller:
    if caller is None:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return caller


def require_roles(*roles: Role):
    def dependency(caller: Caller = Depends(require_caller)) -> Caller:
        if caller.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role for this operation")
        return caller
    return dependency


_ERROR_STATUS_CODES = (
    (UnauthenticatedError, 401),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (OutOfStockError, 400),
    (ConflictError, 409),
    (ValidationFailedError, 400),
    (StoreUnavailableError, 503),
)


def _http_error(exc: LibraryError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.error(f"Unmapped lending error: {exc!r}")
    return HTTPException(status_code=500, detail="Internal error")


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    authors: List[str]
    categories: List[str] = []
    isbn: str | None = None
    description: str | None = None
    publish_date: date | None = None
    stock: int
    available_stock: int
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    authors: List[str] = Field(min_length=1)
    categories: List[str] = []
    stock: int = Field(ge=0)
    isbn: str | None = None
    description: str | None = Field(default=None, max_length=1000)
    publish_date: date | None = None


class BookUpdateModel(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    authors: List[str] | None = Field(default=None, min_length=1)
    categories: List[str] | None = None
    description: str | None = Field(default=None, max_length=1000)
    publish_date: date | None = None


class AuthorModel(BaseModel):
    id: str
    name: str


class AuthorDetailModel(AuthorModel):
    books: List[BookModel]


class UserModel(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    created_at: str | None = None


class UserCreateModel(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    role: Role = Role.MEMBER


class UserUpdateModel(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, min_length=3, max_length=255)


class BorrowTransactionModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    borrow_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    status: TransactionStatus
    book: BookModel | None = None
    user: UserModel | None = None


class BorrowCreateModel(BaseModel):
    book_id: str = Field(min_length=1)
    due_date: datetime


class BorrowUpdateModel(BaseModel):
    status: TransactionStatus | None = None
    return_date: datetime | None = None


class PaginatedBooks(BaseModel):
    data: List[BookModel]
    total: int
    page: int
    limit: int
    total_pages: int


class PaginatedAuthors(BaseModel):
    data: List[AuthorModel]
    total: int
    page: int
    limit: int
    total_pages: int


class PaginatedUsers(BaseModel):
    data: List[UserModel]
    total: int
    page: int
    limit: int
    total_pages: int


class PaginatedBorrowings(BaseModel):
    data: List[BorrowTransactionModel]
    total: int
    page: int
    limit: int
    total_pages: int


class UserDetailModel(UserModel):
    borrowings: PaginatedBorrowings


class SweepResultModel(BaseModel):
    updated: int


def _borrow_model(record: BorrowTransaction) -> BorrowTransactionModel:
    return BorrowTransactionModel(**record.to_dict())


def _paginated_borrowings(result: dict) -> PaginatedBorrowings:
    return PaginatedBorrowings(**{**result, "data": [_borrow_model(r) for r in result["data"]]})


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        with database.connection() as conn:
            conn.execute("SELECT 1")
    except StoreUnavailableError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": database.utcnow().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats")
def get_library_stats():
    try:
        return library.get_statistics()
    except LibraryError as e:
        raise _http_error(e) from e


# --- Books ---
@app.get("/books", response_model=PaginatedBooks)
def get_books(
    title: Optional[str] = Query(None, max_length=255, description="Title substring filter"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = library.list_books(page=page, limit=limit, title=title)
    result["data"] = [BookModel(**b.to_dict()) for b in result["data"]]
    return result


# Registered before /books/{book_id} so "author" is not taken for a book id
@app.get("/books/author", response_model=PaginatedAuthors)
def get_authors(
    name: Optional[str] = Query(None, min_length=1, max_length=255, description="Name substring filter"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = library.list_authors(page=page, limit=limit, name=name)
    result["data"] = [AuthorModel(**a.to_dict()) for a in result["data"]]
    return result


@app.get("/books/author/{author_id}", response_model=AuthorDetailModel)
def get_author(author_id: str):
    """An author together with their books."""
    try:
        author = library.get_author(author_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return AuthorDetailModel(**author.to_dict())


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return BookModel(**book.to_dict())


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    try:
        book = library.add_book(payload.title, payload.authors, payload.stock, isbn=payload.isbn,
                                description=payload.description, categories=payload.categories,
                                publish_date=payload.publish_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.patch("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, payload: BookUpdateModel):
    try:
        book = library.update_book(book_id, title=payload.title, authors=payload.authors,
                                   categories=payload.categories, description=payload.description,
                                   publish_date=payload.publish_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found")
    return {"message": f"Book {book_id} deleted"}


# --- Users ---
@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel):
    try:
        user = library.add_user(payload.name, payload.email, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserModel(**user.to_dict())


@app.get("/users", response_model=PaginatedUsers,
         dependencies=[Depends(require_roles(Role.ADMIN, Role.LIBRARIAN))])
def get_users(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = library.list_users(page=page, limit=limit)
    result["data"] = [UserModel(**u.to_dict()) for u in result["data"]]
    return result


@app.get("/users/{user_id}", response_model=UserDetailModel, dependencies=[Depends(require_caller)])
def get_user(
    user_id: str,
    page: int = Query(1, ge=1, description="Page of the user's borrowings"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    user = library.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail=f"User with id {user_id} not found")
    borrowings = library.borrowing.list_borrows(user_id=user_id, page=page, limit=limit)
    return UserDetailModel(**user.to_dict(), borrowings=_paginated_borrowings(borrowings))


@app.patch("/users/{user_id}", response_model=UserModel)
def update_user(user_id: str, payload: UserUpdateModel,
                caller: Caller = Depends(require_roles(Role.ADMIN, Role.LIBRARIAN))):
    try:
        user = library.update_user(caller, user_id, name=payload.name, email=payload.email)
    except LibraryError as e:
        raise _http_error(e) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserModel(**user.to_dict())


@app.delete("/users/{user_id}", response_model=UserModel, dependencies=[Depends(require_roles(Role.ADMIN))])
def delete_user(user_id: str):
    try:
        user = library.remove_user(user_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return UserModel(**user.to_dict())


# --- Borrowing ---
@app.post("/borrowing", response_model=BorrowTransactionModel, status_code=201)
def create_borrowing(payload: BorrowCreateModel, caller: Caller = Depends(require_roles(Role.MEMBER))):
    try:
        record = library.borrowing.create_borrow(caller, payload.book_id, payload.due_date)
    except LibraryError as e:
        raise _http_error(e) from e
    return _borrow_model(record)


@app.get("/borrowing", response_model=PaginatedBorrowings,
         dependencies=[Depends(require_roles(Role.ADMIN, Role.LIBRARIAN))])
def get_borrowings(
    status: Optional[TransactionStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    try:
        result = library.borrowing.list_borrows(status=status, user_id=user_id, book_id=book_id,
                                                page=page, limit=limit)
    except LibraryError as e:
        raise _http_error(e) from e
    result["data"] = [_borrow_model(r) for r in result["data"]]
    return result


@app.post("/borrowing/sweep", response_model=SweepResultModel, dependencies=[Depends(get_api_key)])
def run_overdue_sweep():
    """Run the overdue sweep immediately instead of waiting for the daily schedule."""
    count = library.sweeper.run_sweep_now()
    if count is None:
        raise HTTPException(status_code=503, detail="Overdue sweep failed; it will be retried on schedule")
    return SweepResultModel(updated=count)


@app.get("/borrowing/{transaction_id}", response_model=BorrowTransactionModel,
         dependencies=[Depends(require_roles(Role.ADMIN, Role.LIBRARIAN))])
def get_borrowing(transaction_id: str):
    try:
        return _borrow_model(library.borrowing.get_borrow(transaction_id))
    except LibraryError as e:
        raise _http_error(e) from e


@app.patch("/borrowing/{transaction_id}", response_model=BorrowTransactionModel,
           dependencies=[Depends(require_roles(Role.LIBRARIAN))])
def update_borrowing(transaction_id: str, payload: BorrowUpdateModel):
    try:
        record = library.borrowing.update_borrow(transaction_id, status=payload.status,
                                                 return_date=payload.return_date)
    except LibraryError as e:
        raise _http_error(e) from e
    return _borrow_model(record)


@app.delete("/borrowing/{transaction_id}", response_model=BorrowTransactionModel,
            dependencies=[Depends(require_roles(Role.LIBRARIAN, Role.ADMIN))])
def delete_borrowing(transaction_id: str):
    try:
        record = library.borrowing.remove_borrow(transaction_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return _borrow_model(record)
