"""Error taxonomy for the lending core.

Every error reflects business state or a persistence failure; none of them is
retried by the core. The HTTP layer maps them to status codes and the CLI
prints them.
"""


class LibraryError(Exception):
    """Base class for all errors raised by the lending core."""


class UnauthenticatedError(LibraryError):
    pass


class PermissionDeniedError(LibraryError):
    """The caller is authenticated but may not act on this record."""


class NotFoundError(LibraryError, LookupError):
    """A book, user or borrow transaction is absent or soft-deleted."""


class BookDeletedError(NotFoundError):
    pass


class OutOfStockError(LibraryError):
    pass


class ConflictError(LibraryError):
    """The request clashes with current state, e.g. a duplicate active loan."""


class InvalidTransitionError(ConflictError):
    pass


class ValidationFailedError(LibraryError, ValueError):
    pass


class StoreUnavailableError(LibraryError):
    """The underlying SQLite store could not complete the operation."""
