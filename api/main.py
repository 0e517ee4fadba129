import os
from datetime import datetime, timezone

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config_validator import ConfigValidator
from console_routes import limiter, router as console_router
from errors import ConsoleError, ValidationError
from keystone_session import SessionManager, get_session_manager
from structured_logging import setup_logging

APP_NAME = "openstack-console-api"

ALLOWED_ORIGINS = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
    os.getenv("CONSOLE_ALLOWED_ORIGIN", ""),
]
ALLOWED_ORIGINS = [origin for origin in ALLOWED_ORIGINS if origin]

# Validate configuration on import
ConfigValidator.validate_and_exit_on_error()

logger = setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
    log_file=os.getenv("LOG_FILE", None),
)

app = FastAPI(title=APP_NAME)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
async def console_error_handler(request: Request, exc: ConsoleError) -> JSONResponse:
    # One diagnostic line per failed request
    logger.error(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        exc.message,
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.http_status,
            "error_type": type(exc).__name__,
        },
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_body())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or "body"
    message = f"{field}: {first.get('msg', 'invalid value')}"
    return await console_error_handler(request, ValidationError(field, message))


app.add_exception_handler(ConsoleError, console_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

app.include_router(console_router)


@app.get("/health")
@limiter.limit("60/minute")
def health(request: Request, sessions: SessionManager = Depends(get_session_manager)):
    return {
        "status": "ok",
        "service": APP_NAME,
        "signed_in": sessions.is_signed_in(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("CONSOLE_HOST", "0.0.0.0"),
        port=int(os.getenv("CONSOLE_PORT", "8000")),
    )
