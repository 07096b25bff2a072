"""
Exceptions raised by the ipbandb store.

Storage engine failures are not wrapped: SQLAlchemy errors propagate as-is.
"""


class IPBanDBError(Exception):
    """Base exception for store operations."""
    pass


class TransactionClosedError(IPBanDBError):
    """Raised when a finished transaction scope is used again."""
    pass


class DeltaEnumerationError(IPBanDBError):
    """Raised when a delta enumeration is committed early or reused."""
    pass
