from __future__ import annotations

from typing import Any, Optional


class CommandError(Exception):
    status_code = 400
    code = "command_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(CommandError):
    """Malformed action parameters. Raised before any external call."""

    status_code = 400
    code = "validation_error"


class NotFoundError(CommandError):
    status_code = 404
    code = "not_found"


class AuthorizationError(CommandError):
    status_code = 403
    code = "forbidden"


class StateError(CommandError):
    """Lifecycle violation, e.g. undo on a command that is not undoable."""

    status_code = 409
    code = "invalid_state"


class PlatformError(CommandError):
    """
    An external platform call failed.
    status is the HTTP status (None for transport failures / timeouts).
    """

    status_code = 502
    code = "platform_error"

    def __init__(self, status: Optional[int], body: Any = None):
        self.status = status
        self.body = body
        if status is None:
            message = f"Platform request failed: {body}"
        else:
            message = f"Platform API error ({status}): {body}"
        super().__init__(message)
