import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loop_engine import __version__
from loop_engine.api import api_router
from loop_engine.core.logging import configure_logging
from loop_engine.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

LOCAL_ORIGINS = ("http://localhost:5173", "http://localhost:3000")


def _collect_cors_origins(settings: Settings) -> list[str]:
    collected: list[str] = []
    for origin in (*LOCAL_ORIGINS, *settings.security.cors_origins):
        origin = origin.strip()
        if origin and origin not in collected:
            collected.append(origin)
    return collected


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(
        title="Loop Engine",
        version=__version__,
        description="Glucose forecasting and insulin dosing recommendations for closed-loop controllers.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_collect_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "POST"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix="/api")

    @app.get("/", include_in_schema=False)
    def root():
        return {"message": "Loop Engine running", "version": __version__}

    return app


configure_logging()
settings = get_settings()
app = create_app(settings)


def serve() -> None:
    import uvicorn

    logger.info("Starting server", extra={"host": settings.server.host, "port": settings.server.port})
    uvicorn.run("loop_engine.main:app", host=settings.server.host, port=settings.server.port, log_config=None)
