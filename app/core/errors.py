"""
Error taxonomy for stamp issuance, QR codes and reward redemption.

Every business rejection is raised as a StampError subclass before any data
is mutated. The API layer renders them as
``{"success": false, "error": <message>, "errorType": <kind>}``.
"""

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class StampError(Exception):
    kind = "internal"
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "errorType": self.kind}


class ValidationFailed(StampError):
    kind = "validation"
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(StampError):
    kind = "unauthorized"
    status_code = 401
    default_message = "Authentication required"


class NotFound(StampError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class Forbidden(StampError):
    kind = "forbidden"
    status_code = 403
    default_message = "You don't have permission to perform this action"


class AlreadyUsed(StampError):
    kind = "already_used"
    status_code = 409
    default_message = "This code has already been used"


class Expired(StampError):
    kind = "expired"
    status_code = 410
    default_message = "This code has expired"


class RateLimited(StampError):
    kind = "rate_limited"
    status_code = 429
    default_message = "Too many stamps issued recently. Please try again later."


class Conflict(StampError):
    kind = "conflict"
    status_code = 409
    default_message = "The request conflicts with the current state. Please try again."


class InternalError(StampError):
    pass


ERROR_KINDS: dict[str, type[StampError]] = {
    cls.kind: cls
    for cls in (
        ValidationFailed,
        Unauthorized,
        NotFound,
        Forbidden,
        AlreadyUsed,
        Expired,
        RateLimited,
        Conflict,
        InternalError,
    )
}


def error_from_response(kind: str | None, message: str | None) -> StampError:
    """Rebuild a typed error from an API error body."""
    return ERROR_KINDS.get(kind or "internal", InternalError)(message)


async def stamp_error_handler(request: Request, exc: StampError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    if field:
        message = f"{field}: {message}"
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(ValidationFailed(message).to_dict()),
    )
