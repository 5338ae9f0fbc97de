"""
nima/core/exceptions.py
───────────────────────
Custom application exceptions with HTTP status mappings.
Raised inside services; read routes let them propagate to FastAPI,
the start-style routes fold them into a {success: false, error} body.
"""

from fastapi import HTTPException, status


class NimaError(HTTPException):
    """Base class for every domain error the services raise."""


class NotAuthenticatedError(NimaError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )


class UserNotFoundError(NimaError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )


class ResourceNotFoundError(NimaError):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class PreconditionFailedError(NimaError):
    """A check that must pass before any charge or workflow start."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InsufficientCreditsError(NimaError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="insufficient_credits",
        )


class CreditContentionError(NimaError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Credit balance is busy. Please try again.",
        )


class AIServiceError(NimaError):
    def __init__(self, detail: str = "AI service encountered an error.") -> None:
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
        )
