"""
═══════════════════════════════════════════════════════════════════════════
OCR ENVIRONMENT PROVISIONER - MAIN APPLICATION
═══════════════════════════════════════════════════════════════════════════
Local control API for the OCR runtime (python, cnocr, onnx models)
- Probe, install, cancel and remove each dependency
- Estimated progress over polling and WebSocket
- Clean slate after cancelled or failed installs
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import uuid
import time
from slowapi.errors import RateLimitExceeded

from provisioner.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from provisioner.api.routes import environment, websocket
from provisioner.config import settings
from provisioner.core.exceptions import (
    ApiKeyError,
    EnvironmentNotReadyError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    PrerequisiteMissingError,
    ProvisioningBaseException,
)
from provisioner.logging_config import setup_logging, get_logger, set_request_id, clear_request_id, request_id_var
from provisioner.models.provisioning import DependencyKind
from provisioner.services.provisioning_service import ProvisioningService

VERSION = "1.0.0"

# Initialize logging system
setup_logging(log_level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR)
logger = get_logger(__name__)

CONFLICT_ERRORS = (InvalidStateTransitionError, PrerequisiteMissingError, EnvironmentNotReadyError)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the provisioning service, optionally check the environment, cancel installs on shutdown"""
    logger.info(f"Starting OCR Environment Provisioner v{VERSION}")
    logger.info(
        f"Configuration: interpreter={settings.INTERPRETER_EXECUTABLE}, package={settings.PACKAGE_SPEC}, "
        f"temp dir={settings.TEMP_DIR}, ignore check={settings.IGNORE_ENVIRONMENT_CHECK}"
    )

    # Tests install their own service before startup
    service = getattr(app.state, "provisioning", None)
    if service is None:
        service = ProvisioningService(settings)
        app.state.provisioning = service

    if service.settings.CHECK_ON_STARTUP:
        check_start = time.time()
        snapshot = await service.check_all()
        logger.info(f"Startup check done in {time.time() - check_start:.2f}s: {snapshot.status_message}")

    yield

    logger.info("Shutting down, cancelling running installs...")
    await service.aclose()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="OCR Environment Provisioner",
        version=VERSION,
        description="Detects, installs and cancels the OCR runtime dependencies",
        lifespan=lifespan
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # ═══════════════════════════════════════════════════════════════════════
    # REQUEST ID MIDDLEWARE FOR TRACING
    # ═══════════════════════════════════════════════════════════════════════

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = str(uuid.uuid4())[:8]
        set_request_id(request_id)
        # Outlives clear_request_id for the 500 handler, which runs outside this middleware
        request.state.request_id = request_id

        start_time = time.time()

        try:
            response = await call_next(request)
            process_time = time.time() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{process_time:.3f}s"

            logger.info(
                f"{request.method} {request.url.path} | "
                f"Status: {response.status_code} | "
                f"Time: {process_time:.3f}s"
            )
            return response
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} | Error: {e} | Time: {time.time() - start_time:.3f}s",
                exc_info=True
            )
            raise
        finally:
            clear_request_id()

    # ═══════════════════════════════════════════════════════════════════════
    # EXCEPTION HANDLERS
    # ═══════════════════════════════════════════════════════════════════════

    @app.exception_handler(ProvisioningBaseException)
    async def provisioning_exception_handler(request: Request, exc: ProvisioningBaseException):
        if isinstance(exc, ApiKeyError):
            status_code = exc.status_code
        elif isinstance(exc, CONFLICT_ERRORS):
            status_code = 409
        elif isinstance(exc, PermissionDeniedError):
            status_code = 403
        else:
            status_code = 500
            logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")

        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, **exc.to_dict()}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch all unhandled exceptions"""
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}: {exc}",
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again.",
                "request_id": getattr(request.state, "request_id", None) or request_id_var.get() or "unknown"
            }
        )

    # Local desktop front-ends connect from arbitrary origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"]
    )

    app.include_router(environment.router)
    app.include_router(websocket.router)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": "OCR Environment Provisioner",
            "version": VERSION,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "environment": "/environment",
                "websocket": "/ws/environment"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health(request: Request):
        service: ProvisioningService = request.app.state.provisioning
        snapshot = service.current_snapshot()
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": VERSION,
            "environment": snapshot.model_dump(mode="json"),
            "installs_running": [kind.value for kind in DependencyKind if service.session_for(kind) is not None]
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "provisioner.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,  # Use our custom logging
    )
