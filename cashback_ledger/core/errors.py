from fastapi import HTTPException, status
from typing import Any, Dict, Optional


class LedgerException(HTTPException):
    """Base exception for the cashback ledger API."""
    error_code = "LEDGER_ERROR"

    def __init__(
        self,
        status_code: int,
        detail: Any = None,
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def __str__(self) -> str:
        return str(self.detail)


class AuthenticationError(LedgerException):
    """Caller identity missing."""
    error_code = "AUTHENTICATION_FAILED"

    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail
        )


class AuthorizationError(LedgerException):
    """Operator privileges required."""
    error_code = "NOT_AUTHORIZED"

    def __init__(self, detail: str = "Not enough permissions"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail
        )


class NotFoundError(LedgerException):
    """Account, transaction, payout, store or click not found."""
    error_code = "NOT_FOUND"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail
        )


class ValidationError(LedgerException):
    """Malformed amount or unknown status transition. Nothing was written."""
    error_code = "VALIDATION_FAILED"

    def __init__(self, detail: str = "Validation failed"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail
        )


class ConsistencyError(LedgerException):
    """The operation would leave the ledger inconsistent. Original state preserved."""
    error_code = "LEDGER_CONSISTENCY"

    def __init__(self, detail: str = "Operation would leave the ledger inconsistent"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail
        )


class DuplicateTransactionError(ConsistencyError):
    """Sale already recorded for this store and order."""
    error_code = "DUPLICATE_TRANSACTION"

    def __init__(self, detail: str = "Duplicate transaction detected"):
        super().__init__(detail=detail)


class ContentionError(LedgerException):
    """Concurrent writers kept conflicting until retries ran out."""
    error_code = "LEDGER_CONTENTION"

    def __init__(self, detail: str = "Concurrent update conflict, please retry"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"}
        )


class LockAcquisitionError(LedgerException):
    """Distributed lock could not be acquired."""
    error_code = "LOCK_UNAVAILABLE"

    def __init__(self, detail: str = "Could not acquire lock"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail
        )


class LockReleaseError(LedgerException):
    """Distributed lock could not be released."""
    error_code = "LOCK_RELEASE_FAILED"

    def __init__(self, detail: str = "Could not release lock"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail
        )
