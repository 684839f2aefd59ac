"""Tagged results for the deal engine.

Expected outcomes (validation failures, missing deals, illegal transitions,
lapsed quotes, upstream outages) travel back to callers as values instead of
exceptions:

    result = await deals.lock_deal(...)
    if not result.ok:
        ... result.error.code ...
    deal = result.value
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class EngineError:
    code: str
    message: str


@dataclass(frozen=True)
class ValidationError(EngineError):
    field: Optional[str] = None


@dataclass(frozen=True)
class NotFound(EngineError):
    pass


@dataclass(frozen=True)
class InvalidTransition(EngineError):
    current: Optional[str] = None
    attempted: Optional[str] = None


@dataclass(frozen=True)
class Expired(EngineError):
    pass


@dataclass(frozen=True)
class Conflict(EngineError):
    pass


@dataclass(frozen=True)
class UpstreamFailure(EngineError):
    pass


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = True


@dataclass(frozen=True)
class Err:
    error: EngineError
    ok: Literal[False] = False


Result = Union[Ok[T], Err]


def validation_error(message: str, field: Optional[str] = None) -> Err:
    return Err(ValidationError(code="validation_error", message=message, field=field))


def not_found(message: str) -> Err:
    return Err(NotFound(code="not_found", message=message))


def invalid_transition(current: str, attempted: str) -> Err:
    return Err(
        InvalidTransition(
            code="invalid_transition",
            message=f"Cannot {attempted} a deal in state {current}",
            current=current,
            attempted=attempted,
        )
    )


def expired(message: str = "Deal TTL has lapsed") -> Err:
    return Err(Expired(code="expired", message=message))


def conflict(message: str) -> Err:
    return Err(Conflict(code="conflict", message=message))


def upstream_failure(message: str) -> Err:
    return Err(UpstreamFailure(code="upstream_failure", message=message))
