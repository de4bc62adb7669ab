"""Render API endpoints - synchronous rendering tied to the request's lifetime."""

import asyncio
import logging

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import FileResponse

from slidereel.api.deps import RenderServiceDep
from slidereel.config import get_settings
from slidereel.exceptions import RenderCancelledError
from slidereel.render.cancellation import CancellationToken
from slidereel.render.timeline import compute_timeline
from slidereel.schemas.render import RenderBackend, RenderRequest, TimelineRequest
from slidereel.schemas.storage import ErrorResponse
from slidereel.schemas.timeline import TimelineResponse

router = APIRouter()
logger = logging.getLogger(__name__)

# Status nginx uses for "client closed request"; the client never sees it
CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_INTERVAL_S = 0.5


async def _watch_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            logger.info("[RENDER] Client disconnected, cancelling render")
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL_S)


@router.post(
    "/render",
    responses={
        200: {"content": {"video/mp4": {}}, "description": "The rendered video"},
        400: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def render_video(
    request: Request,
    render_request: RenderRequest,
    service: RenderServiceDep,
    backend: RenderBackend | None = Query(default=None, description="Overrides the configured backend"),
) -> Response:
    """
    Render the slides into one MP4 and return it.

    The render runs for as long as the connection stays open; closing the
    connection cancels it.
    """
    settings = get_settings()
    token = CancellationToken()
    watcher = asyncio.create_task(_watch_disconnect(request, token))
    try:
        artifact = await service.render(
            render_request.to_job(settings.disable_audio_normalization),
            backend=backend,
            cancel_token=token,
        )
    except RenderCancelledError:
        # Nobody is listening any more; no body is written
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    finally:
        watcher.cancel()

    return FileResponse(
        path=str(artifact.path),
        media_type="video/mp4",
        filename="tech-tutorial.mp4",
        headers={
            "X-Render-Backend": artifact.backend,
            "X-Render-Frames": str(artifact.total_frames),
            "X-Audio-Normalized": "true" if artifact.normalized else "false",
        },
    )


@router.post("/timeline", response_model=TimelineResponse)
async def preview_timeline(timeline_request: TimelineRequest) -> TimelineResponse:
    """Frame counts the renderers will use for these slides."""
    result = compute_timeline([slide.to_domain() for slide in timeline_request.slides])
    return TimelineResponse.from_result(result)
