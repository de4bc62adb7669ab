from pydantic import BaseModel, ConfigDict, Field

from slidereel.render.timeline import TimelineResult


class TimelineResponse(BaseModel):
    """Frame layout of a slide list, as both renderers will use it."""

    model_config = ConfigDict(populate_by_name=True)

    frames: list[int]
    start_frames: list[int] = Field(alias="startFrames")
    total_frames: int = Field(alias="totalFrames")
    aggregate_total_frames: int = Field(
        alias="aggregateTotalFrames",
        description="Total when rounding once over the summed seconds; informational only",
    )
    fps: int
    duration_seconds: float = Field(alias="durationSeconds")

    @classmethod
    def from_result(cls, result: TimelineResult) -> "TimelineResponse":
        return cls(
            frames=result.frames,
            start_frames=result.start_frames,
            total_frames=result.total_frames,
            aggregate_total_frames=result.aggregate_total_frames,
            fps=result.fps,
            duration_seconds=result.total_seconds,
        )
