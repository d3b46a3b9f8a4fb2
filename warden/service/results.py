from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from warden.service.errors import ErrorKind, ServiceError, error_for_kind

T = TypeVar("T")


@dataclass(frozen=True)
class Failure:
    """Why an operation did not succeed. ``message`` is safe to show to clients."""

    kind: ErrorKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_exception(self) -> ServiceError:
        return error_for_kind(self.kind, self.message, dict(self.detail))


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a :class:`Failure`; authentication and authorization
    outcomes are returned this way instead of being raised."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **detail: Any) -> "Result[T]":
        return cls(failure=Failure(kind=kind, message=message, detail=detail))

    @classmethod
    def from_failure(cls, failure: Failure) -> "Result[T]":
        return cls(failure=failure)

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.failure.kind if self.failure else None

    def unwrap(self) -> T:
        """Return the value or raise the ServiceError matching the failure kind."""
        if self.failure is not None:
            raise self.failure.to_exception()
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.ok


__all__ = ["Failure", "Result"]
