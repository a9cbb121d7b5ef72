import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from database.connection import init_db
from app.api import api_router
from app.core.config import settings
from app.core.errors import StampError, request_validation_handler, stamp_error_handler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

HTTP_ERROR_KINDS = {401: "unauthorized", 403: "forbidden", 404: "not_found"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    yield
    # Shutdown


class DynamicCORSMiddleware(BaseHTTPMiddleware):
    """CORS middleware: any origin in development, the configured pattern in production."""

    def __init__(self, app, origin_pattern: str):
        super().__init__(app)
        self.origin_pattern = re.compile(origin_pattern)

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")

        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            response = await call_next(request)

        if origin:
            if settings.environment != "production" or self.origin_pattern.match(origin):
                response.headers["Access-Control-Allow-Origin"] = origin
                response.headers["Access-Control-Allow-Credentials"] = "true"
            else:
                logger.warning(f"CORS rejected - Origin '{origin}' does not match pattern")

        response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization, X-Requested-With"

        return response


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render auth failures in the same shape as business errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "errorType": HTTP_ERROR_KINDS.get(exc.status_code, "internal"),
        },
        headers=getattr(exc, "headers", None),
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Stamp Card API",
        description="Stamp issuance, QR codes and reward redemption",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(DynamicCORSMiddleware, origin_pattern=settings.cors_origin_pattern)

    app.add_exception_handler(StampError, stamp_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_error_handler)

    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
