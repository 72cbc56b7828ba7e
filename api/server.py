"""
FastAPI server for dualverify.

Exposes the verification endpoint plus the read-only status surface:
health, metrics (JSON and Prometheus), audit trail and configuration.
"""
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables from .env file
dotenv_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=dotenv_path)

from api.routes import audit as audit_routes
from api.routes import health as health_routes
from api.routes import metrics as metrics_routes
from api.routes import verify as verify_routes
from dualverify import VerificationService, __version__
from dualverify.logging_config import get_logger

logger = get_logger(__name__)


def create_app(service: VerificationService | None = None) -> FastAPI:
    """Build the app around one VerificationService.

    Args:
        service: Pre-built service (tests). Built from the environment when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        if app.state.service is None:
            app.state.service = VerificationService.from_config()
        await app.state.service.start()
        logger.info("API server started")
        yield
        await app.state.service.stop()
        logger.info("API server stopped")

    app = FastAPI(
        title="dualverify API",
        description="Dual-provider verification of AI-generated responses",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Must be False when allow_origins is ["*"]
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_routes.router)
    app.include_router(metrics_routes.router)
    app.include_router(audit_routes.router)
    app.include_router(verify_routes.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "api.server:app",
        host=os.environ.get("DUALVERIFY_HOST", "0.0.0.0"),
        port=int(os.environ.get("DUALVERIFY_PORT", "8080")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
