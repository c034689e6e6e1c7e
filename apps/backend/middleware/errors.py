import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.services.commands.errors import CommandError
from apps.backend.utils.envelope import error

log = logging.getLogger("commander.errors")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CommandError)
    async def _command_error(request: Request, exc: CommandError):
        if exc.status_code >= 500:
            log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return error(exc.message, exc.code, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "Invalid request")
        return error(message, "validation_error", 400)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return error(str(exc.detail), "http_error", exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        # no stack traces in responses
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error("Internal server error", "internal_error", 500)
