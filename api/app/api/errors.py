from fastapi import HTTPException, status

from app.core.config import get_settings
from app.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryInternalError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)


def http_error_from(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        retry_after = get_settings().transient_retry_after_seconds
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.to_detail(),
            headers={"Retry-After": str(retry_after)},
        )
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_detail())
    if isinstance(exc, RepositoryForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.to_detail())
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=exc.to_detail())
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=RepositoryInternalError("internal error").to_detail(),
    )
