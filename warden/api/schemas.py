from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from warden.logging import get_correlation_id
from warden.service.errors import ErrorKind

_VALID_ERROR_CODES = {kind.value for kind in ErrorKind} | {"gone"}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code drawn from ErrorKind")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class PrincipalResponse(BaseModel):
    identity_id: str
    email: str
    session_id: Optional[str] = None


__all__ = ["Envelope", "ErrorBody", "PrincipalResponse"]
