"""Common schemas used across the application."""

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Generic error response."""

    success: bool = False
    error: str
    detail: str | None = None
