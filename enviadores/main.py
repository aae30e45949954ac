"""
Enviadores Finalizer
FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from enviadores.api.routes import finalization
from enviadores.api.routes.finalization import SessionRegistry, status_for_error
from enviadores.core.config import settings
from enviadores.core.exceptions import EnviadoresError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


async def enviadores_error_handler(request: Request, exc: EnviadoresError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: {exc.code}")
    return JSONResponse(status_code=code, content={"detail": exc.to_dict()})


def create_app(registry: Optional[SessionRegistry] = None) -> FastAPI:
    """Build the app. Tests pass a registry wired to mock clients."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.registry = registry or SessionRegistry.from_settings()
        logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")

        yield

        # Close HTTP clients to prevent connection leaks
        await app.state.registry.aclose()
        logger.info("Finalization sessions closed, HTTP clients released")

    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        debug=settings.DEBUG,
    )
    if registry is not None:
        # Available before startup for transports that skip the lifespan
        app.state.registry = registry

    app.add_exception_handler(EnviadoresError, enviadores_error_handler)
    app.include_router(finalization.router, prefix="/api", tags=["Finalization"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "sessions": len(app.state.registry),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "enviadores.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
