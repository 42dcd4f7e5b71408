import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse

from service_dispatch.schemas.common import APIResponse, APIError
from service_dispatch.core.error_codes import ErrorCode

from service_dispatch.core.domain_exceptions import DomainException, PersistenceError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(
            success=False,
            error=APIError(code=code, message=message),
        ).model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.VALIDATION_ERROR
    return _error_response(exc.status_code, code, str(exc.detail))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    return _error_response(422, ErrorCode.VALIDATION_ERROR, problems or "Invalid request")


async def domain_exception_handler(request: Request, exc: DomainException):
    if isinstance(exc, PersistenceError):
        logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message)
