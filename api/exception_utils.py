"""
Standardized exception handling for API endpoints.

HTTPExceptions and the engine's typed errors pass through untouched so the
app-level handlers can map them (400, 404, 503). Anything else is logged with
its traceback and turned into a generic error response.
"""

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import InputValidationError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors with a dedicated app-level handler
PASSTHROUGH_ERRORS = (HTTPException, DatabaseRetryableError, InputValidationError, NotFoundError)


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    Place it below the route and limiter decorators so FastAPI still sees the
    endpoint's signature.

    Example:
        @app.delete("/api/tags/{tag_id}")
        @limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
        @handle_api_exceptions("delete_tag", "Failed to delete tag")
        async def delete_tag(request: Request, tag_id: int):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except PASSTHROUGH_ERRORS:
                raise
            except PermissionError as e:
                raise HTTPException(status_code=403, detail=str(e)) from e
            except Exception as e:
                logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e

        return wrapper

    return decorator
