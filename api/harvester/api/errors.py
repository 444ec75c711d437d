from fastapi import HTTPException, status

from harvester.services.errors import (
    AuthorizationError,
    ConflictError,
    HarvesterError,
    NotFoundError,
    RateLimitExceededError,
    StoreUnavailableError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[HarvesterError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: HarvesterError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal service error")


def require_scopes(principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
