import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slidereel.api import render, storage
from slidereel.config import get_settings
from slidereel.exceptions import RenderValidationError, SlideReelError
from slidereel.render.composition import CompositionRenderer, RemotionCliEngine
from slidereel.render.filter_graph import FilterGraphRenderer
from slidereel.render.loudness import LoudnessNormalizer
from slidereel.render.media_engine import EmbeddedMediaEngine
from slidereel.services.asset_fetcher import AssetFetcher
from slidereel.services.asset_resolver import AssetResolver
from slidereel.services.render_service import RenderService
from slidereel.services.storage_service import get_storage_service

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    storage_service = get_storage_service()
    media_engine = EmbeddedMediaEngine()
    renderers = {
        CompositionRenderer.backend_name: CompositionRenderer(RemotionCliEngine()),
        FilterGraphRenderer.backend_name: FilterGraphRenderer(media_engine, AssetFetcher(storage_service)),
    }
    app.state.storage = storage_service
    app.state.media_engine = media_engine
    app.state.render_service = RenderService(
        resolver=AssetResolver(storage_service, settings.public_base_url),
        renderers=renderers,
        normalizer=LoudnessNormalizer(),
    )
    logger.info(f"{settings.app_name} {settings.app_version} started (default backend: {settings.render_backend})")
    yield
    # Shutdown
    await media_engine.shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SlideReelError)
async def slidereel_exception_handler(request: Request, exc: SlideReelError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[{exc.code}] {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_error_body())


def _is_slides_error(loc: tuple) -> bool:
    # A missing body is missing slides too
    return len(loc) >= 1 and loc[0] == "body" and (len(loc) == 1 or loc[1] == "slides")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are reported as 400 with a single message."""
    errors = exc.errors()
    if not errors or any(_is_slides_error(error.get("loc") or ()) for error in errors):
        message = RenderValidationError.message
    else:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []) if x != "body")
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])
app.include_router(storage.router, prefix="/api", tags=["storage"])


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    media_engine: EmbeddedMediaEngine | None = getattr(request.app.state, "media_engine", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "git_hash": settings.git_hash,
        "default_backend": settings.render_backend,
        "media_engine": "busy" if media_engine and media_engine.busy else "idle",
        "media_engine_version": (media_engine.version if media_engine else None) or "not loaded",
    }


def run() -> None:
    uvicorn.run(
        "slidereel.main:app",
        host=settings.host,
        port=settings.port,
        # Renders hold the connection open for many minutes
        timeout_keep_alive=settings.render_request_timeout_s,
    )


if __name__ == "__main__":
    run()
