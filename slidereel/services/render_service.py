"""
Render orchestration.

The only component that knows both renderer backends. One render is one
local job: timeline first, then asset resolution, then the chosen
backend, then loudness normalization. Nothing is retried.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from slidereel.config import get_settings
from slidereel.exceptions import (
    LoudnessNormalizationError,
    RenderCancelledError,
    RenderValidationError,
)
from slidereel.render.cancellation import CancellationToken
from slidereel.render.loudness import LoudnessNormalizer
from slidereel.render.media_engine import ProgressCallback
from slidereel.render.plan import RenderPlan, Renderer
from slidereel.render.timeline import MusicTrack, SlideSegment, compute_timeline
from slidereel.services.asset_resolver import AssetResolver

logger = logging.getLogger(__name__)


@dataclass
class RenderJob:
    """What the boundary hands the orchestrator."""

    segments: list[SlideSegment]
    music: Optional[MusicTrack] = None
    tts_volume: float = 1.0
    disable_normalization: bool = False


@dataclass
class RenderArtifact:
    """A finished output file, owned by the orchestrator until delivered."""

    path: Path
    backend: str
    total_frames: int
    duration_s: float
    normalized: bool


class RenderService:
    def __init__(
        self,
        resolver: AssetResolver,
        renderers: dict[str, Renderer],
        normalizer: LoudnessNormalizer,
        default_backend: Optional[str] = None,
    ):
        self.resolver = resolver
        self.renderers = renderers
        self.normalizer = normalizer
        self.default_backend = default_backend or get_settings().render_backend

    def select_renderer(self, backend: Optional[str]) -> Renderer:
        name = backend or self.default_backend
        renderer = self.renderers.get(name)
        if renderer is None:
            raise RenderValidationError(
                f"Unknown render backend '{name}' (available: {', '.join(sorted(self.renderers))})"
            )
        return renderer

    async def render(
        self,
        job: RenderJob,
        backend: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderArtifact:
        """
        Run one render end to end.

        Raises:
            RenderValidationError: Empty slide list or unknown backend; no work was started
            AssetResolutionError: A reference could not be made durable
            RenderFailedError: Backend failure, engine text verbatim
            RenderCancelledError: The token fired; no artifact exists
        """
        if not job.segments:
            raise RenderValidationError()
        renderer = self.select_renderer(backend)
        token = cancel_token or CancellationToken()

        timeline = compute_timeline(job.segments)
        if timeline.rounding_drift:
            logger.debug(
                f"[RENDER] Per-segment rounding differs from aggregate by {timeline.rounding_drift} frames"
            )
        logger.info(
            f"[RENDER] Starting {renderer.backend_name} render: {len(job.segments)} slides, "
            f"{timeline.total_frames} frames ({timeline.total_seconds:.2f}s)"
        )
        started = time.monotonic()

        try:
            segments, music = await self.resolver.resolve(job.segments, job.music)
            token.raise_if_cancelled()

            plan = RenderPlan(
                segments=segments,
                timeline=timeline,
                music=music,
                tts_volume=job.tts_volume,
            )
            output_path = await renderer.render(plan, cancel_token=token, on_progress=on_progress)
        except RenderCancelledError:
            logger.info("[RENDER] Render operation was cancelled.")
            raise

        normalized = False
        if not job.disable_normalization:
            try:
                await self.normalizer.normalize(output_path)
                normalized = True
            except LoudnessNormalizationError as e:
                logger.warning(f"[RENDER] Audio normalization failed, delivering un-normalized file: {e}")

        elapsed = time.monotonic() - started
        logger.info(f"[RENDER] Finished {output_path.name} in {elapsed:.1f}s")
        return RenderArtifact(
            path=output_path,
            backend=renderer.backend_name,
            total_frames=timeline.total_frames,
            duration_s=timeline.total_seconds,
            normalized=normalized,
        )
