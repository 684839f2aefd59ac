import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from otc_desk.config import settings
from otc_desk.core.result import (
    Conflict,
    Err,
    Expired,
    InvalidTransition,
    NotFound,
    UpstreamFailure,
    ValidationError,
)
from otc_desk.runtime import Runtime, get_runtime

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (Conflict, status.HTTP_409_CONFLICT),
    (Expired, status.HTTP_410_GONE),
    (UpstreamFailure, status.HTTP_502_BAD_GATEWAY),
)


def runtime() -> Runtime:
    return get_runtime()


def unwrap(result):
    """Return ``result.value`` or raise the HTTPException matching the error kind."""
    if result.ok:
        return result.value
    raise http_error(result)


def http_error(failed: Err) -> HTTPException:
    error = failed.error
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for kind, mapped in _STATUS_BY_ERROR:
        if isinstance(error, kind):
            code = mapped
            break
    detail = {"code": error.code, "message": error.message}
    if isinstance(error, ValidationError) and error.field:
        detail["field"] = error.field
    if isinstance(error, InvalidTransition):
        detail["current"] = error.current
        detail["attempted"] = error.attempted
    return HTTPException(status_code=code, detail=detail)


def require_ingest_token(x_ingest_token: Optional[str] = Header(default=None)) -> None:
    expected = settings.ingest_token
    if not expected:
        return
    if not x_ingest_token or not hmac.compare_digest(expected, x_ingest_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid ingest token")
