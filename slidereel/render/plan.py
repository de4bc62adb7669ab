"""What a renderer backend receives, and the interface it implements."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from slidereel.render.cancellation import CancellationToken
from slidereel.render.media_engine import ProgressCallback
from slidereel.render.timeline import MusicTrack, SlideSegment, TimelineResult


@dataclass
class RenderPlan:
    """Resolved segments plus their precomputed timeline.

    Every ref in ``segments`` and ``music`` is durable by the time a plan
    reaches a renderer.
    """

    segments: list[SlideSegment]
    timeline: TimelineResult
    music: Optional[MusicTrack] = None
    tts_volume: float = 1.0


class Renderer(Protocol):
    backend_name: str

    async def render(
        self,
        plan: RenderPlan,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        ...
