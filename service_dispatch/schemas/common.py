from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class APIError(BaseModel):
    code: str
    message: str


class APIResponse(BaseModel, Generic[T]):
    """Envelope for every response: ``data`` on success, ``error`` otherwise."""

    success: bool
    data: T | None = None
    error: APIError | None = None
