"""Wire models for the render boundary.

Field names follow the client's camelCase; snake_case input is accepted too.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from slidereel.render.timeline import MediaType, MusicTrack, SlideSegment, Transition
from slidereel.services.render_service import RenderJob


class SlideIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visual_ref: str | None = Field(
        default=None,
        alias="visualRef",
        description="Image or video URL; omitted for a solid-color slide",
    )
    media_type: MediaType = Field(default=MediaType.IMAGE, alias="mediaType")
    narration_ref: str | None = Field(default=None, alias="narrationRef")
    narration_duration_sec: float | None = Field(
        default=None,
        alias="narrationDurationSec",
        ge=0,
        description="Measured narration length; 5s is assumed when unknown",
    )
    post_delay_sec: float | None = Field(default=None, alias="postDelaySec", ge=0)
    transition: Transition = Transition.NONE
    narration_disabled: bool = Field(default=False, alias="narrationDisabled")
    music_disabled: bool = Field(default=False, alias="musicDisabled")
    video_music_paused: bool = Field(default=False, alias="videoMusicPaused")

    def to_domain(self) -> SlideSegment:
        return SlideSegment(
            visual_ref=self.visual_ref or None,
            media_type=self.media_type,
            narration_ref=self.narration_ref or None,
            narration_duration_s=self.narration_duration_sec,
            post_delay_s=self.post_delay_sec,
            transition=self.transition,
            narration_disabled=self.narration_disabled,
            music_disabled=self.music_disabled,
            video_music_paused=self.video_music_paused,
        )


class MusicIn(BaseModel):
    ref: str = Field(min_length=1, description="Music URL; root-relative paths are served by this host")
    volume: float = Field(default=1.0, ge=0, le=4)


class TimelineRequest(BaseModel):
    slides: list[SlideIn] = Field(min_length=1)


class RenderRequest(TimelineRequest):
    model_config = ConfigDict(populate_by_name=True)

    music: MusicIn | None = None
    tts_volume: float = Field(default=1.0, alias="ttsVolume", ge=0, le=4)
    disable_audio_normalization: bool | None = Field(
        default=None,
        alias="disableAudioNormalization",
        description="Defaults to the server setting when omitted",
    )

    def to_job(self, default_disable_normalization: bool = False) -> RenderJob:
        disable = self.disable_audio_normalization
        return RenderJob(
            segments=[slide.to_domain() for slide in self.slides],
            music=MusicTrack(ref=self.music.ref, volume=self.music.volume) if self.music else None,
            tts_volume=self.tts_volume,
            disable_normalization=default_disable_normalization if disable is None else disable,
        )


RenderBackend = Literal["composition", "filter_graph"]
