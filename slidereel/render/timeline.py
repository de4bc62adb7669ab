"""
Timeline model: slide segments -> frame-exact durations.

Pure computation, no I/O. Both renderers and the duration preview call
``compute_timeline``; nothing else derives frame counts.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

FPS = 30
DEFAULT_SEGMENT_SECONDS = 5.0


class Transition(str, Enum):
    """Visual transition into a segment. Does not affect duration."""

    FADE = "fade"
    SLIDE = "slide"
    ZOOM = "zoom"
    NONE = "none"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class VisualKind(Enum):
    STILL = "still"
    CLIP = "clip"
    SOLID = "solid"


@dataclass
class SlideSegment:
    """One timeline unit: a visual, optional narration and timing hints."""

    visual_ref: str | None = None
    media_type: MediaType = MediaType.IMAGE
    narration_ref: str | None = None
    narration_duration_s: float | None = None
    post_delay_s: float | None = None
    transition: Transition = Transition.NONE
    narration_disabled: bool = False
    music_disabled: bool = False
    video_music_paused: bool = False

    @property
    def visual_kind(self) -> VisualKind:
        if not self.visual_ref:
            return VisualKind.SOLID
        if self.media_type == MediaType.VIDEO:
            return VisualKind.CLIP
        return VisualKind.STILL

    @property
    def has_narration(self) -> bool:
        """True when a narration clip should be heard for this segment."""
        return bool(self.narration_ref) and not self.narration_disabled


@dataclass
class MusicTrack:
    """Background music, looped forever and cut to the timeline length."""

    ref: str
    volume: float = 1.0


@dataclass
class TimelineResult:
    """Per-segment frame counts and their totals."""

    frames: list[int]
    fps: int = FPS
    start_frames: list[int] = field(default_factory=list)
    aggregate_total_frames: int = 0

    @property
    def total_frames(self) -> int:
        return sum(self.frames)

    @property
    def total_seconds(self) -> float:
        return self.total_frames / self.fps

    def segment_seconds(self, index: int) -> float:
        """Exact length of segment ``index`` in seconds (frames / fps)."""
        return self.frames[index] / self.fps

    def segment_window(self, index: int) -> tuple[float, float]:
        """(start, end) of segment ``index`` in seconds on the output timeline."""
        start = self.start_frames[index] / self.fps
        return start, start + self.segment_seconds(index)

    @property
    def rounding_drift(self) -> int:
        """Frames by which the aggregate-rounded total disagrees with the per-segment sum."""
        return self.aggregate_total_frames - self.total_frames


def round_half_up(value: float) -> int:
    # Half-up, the way the composition engine rounds frame counts
    return math.floor(value + 0.5)


def effective_duration(segment: SlideSegment) -> float:
    """Seconds the segment occupies in the final video."""
    if segment.narration_disabled:
        return segment.post_delay_s if segment.post_delay_s is not None else DEFAULT_SEGMENT_SECONDS
    narration = (
        segment.narration_duration_s
        if segment.narration_duration_s is not None
        else DEFAULT_SEGMENT_SECONDS
    )
    post_delay = segment.post_delay_s if segment.post_delay_s is not None else 0.0
    return narration + post_delay


def segment_frames(segment: SlideSegment, fps: int = FPS) -> int:
    """Frame count of a segment; never below one frame so concatenation stays valid."""
    return max(1, round_half_up(effective_duration(segment) * fps))


def aggregate_frames(segments: list[SlideSegment], fps: int = FPS) -> int:
    """Total frames rounded once over the summed seconds.

    Reported next to the per-segment total so drift between the two can be
    observed; the delivered video always follows the per-segment sum.
    """
    total_seconds = sum(effective_duration(s) for s in segments)
    return max(1, round_half_up(total_seconds * fps))


def compute_timeline(segments: list[SlideSegment], fps: int = FPS) -> TimelineResult:
    frames = [segment_frames(s, fps) for s in segments]
    start_frames: list[int] = []
    offset = 0
    for count in frames:
        start_frames.append(offset)
        offset += count
    return TimelineResult(
        frames=frames,
        fps=fps,
        start_frames=start_frames,
        aggregate_total_frames=aggregate_frames(segments, fps) if segments else 0,
    )
