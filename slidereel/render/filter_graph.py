"""
Filter-graph renderer: one explicit FFmpeg graph over all slides.

Per slide i (length d_i = frames_i / fps):
- video branch  [v{i}]: still (looped) | clip | solid color
  -> scale (keep aspect) -> pad (centered) -> fps -> pixel format
  -> trim to exactly frames_i -> reset timestamps
- audio branch  [a{i}]: narration padded/trimmed to d_i, or d_i of silence

Global assembly:
- concat v0..vN -> [vout_raw], concat a0..aN -> [aout_speech]
- with music: loop it, apply gains, amix with duration=first so the
  narration-driven length always wins -> [aout_mixed]
- without music: narration gain only -> [aout_mixed]
- single encode pass to H.264/AAC MP4

All inputs and the output live in the embedded engine's virtual
filesystem and are removed when the engine session is released.
"""

import io
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from slidereel.config import get_settings
from slidereel.exceptions import AssetFetchError
from slidereel.render.cancellation import CancellationToken
from slidereel.render.media_engine import EmbeddedMediaEngine, EngineSession, ProgressCallback
from slidereel.render.plan import RenderPlan
from slidereel.render.timeline import MusicTrack, SlideSegment, TimelineResult, VisualKind
from slidereel.services.asset_fetcher import AssetFetcher, url_extension

logger = logging.getLogger(__name__)

OUTPUT_NAME = "output.mp4"
MUSIC_INPUT_NAME = "bg_music"

# Pillow format name -> extension FFmpeg's image2 demuxer recognizes
IMAGE_EXTENSIONS = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp", "GIF": "gif", "BMP": "bmp"}


@dataclass
class CanvasSpec:
    """Output geometry and delivery codec pair."""

    width: int = 1920
    height: int = 1080
    fps: int = 30
    sample_rate: int = 44100
    video_codec: str = "libx264"
    video_preset: str = "ultrafast"
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"

    @classmethod
    def from_settings(cls) -> "CanvasSpec":
        settings = get_settings()
        return cls(
            width=settings.render_output_width,
            height=settings.render_output_height,
            fps=settings.render_fps,
            sample_rate=settings.render_audio_sample_rate,
            video_codec=settings.render_video_codec,
            video_preset=settings.render_video_preset,
            audio_codec=settings.render_audio_codec,
            audio_bitrate=settings.render_audio_bitrate,
        )


@dataclass
class SegmentInputs:
    """Virtual file names written for one slide (None = nothing written)."""

    visual_file: Optional[str] = None
    narration_file: Optional[str] = None


@dataclass
class FilterGraph:
    """A fully built graph: input arguments, filter chains and stream labels."""

    input_args: list[list[str]] = field(default_factory=list)
    video_filters: list[str] = field(default_factory=list)
    audio_filters: list[str] = field(default_factory=list)
    video_out: str = "vout_raw"
    speech_out: str = "aout_speech"
    audio_out: str = "aout_mixed"
    output_name: str = OUTPUT_NAME

    @property
    def filter_complex(self) -> str:
        return ";".join([*self.video_filters, *self.audio_filters])

    def to_args(self, canvas: CanvasSpec) -> list[str]:
        args: list[str] = []
        for input_arg in self.input_args:
            args.extend(input_arg)
        return [
            *args,
            "-filter_complex", self.filter_complex,
            "-map", f"[{self.video_out}]",
            "-map", f"[{self.audio_out}]",
            "-c:v", canvas.video_codec,
            "-preset", canvas.video_preset,
            "-pix_fmt", "yuv420p",
            "-r", str(canvas.fps),
            "-c:a", canvas.audio_codec,
            "-b:a", canvas.audio_bitrate,
            "-ar", str(canvas.sample_rate),
            "-movflags", "+faststart",
            self.output_name,
        ]


def _seconds(value: float) -> str:
    return f"{value:.6f}"


def music_mute_windows(
    segments: list[SlideSegment], timeline: TimelineResult
) -> list[tuple[float, float]]:
    """Time windows where the music bed is silenced, adjacent windows merged.

    Music is muted on slides with ``music_disabled`` and on video slides
    with ``video_music_paused``.
    """
    windows: list[tuple[float, float]] = []
    for index, segment in enumerate(segments):
        muted = segment.music_disabled or (
            segment.video_music_paused and segment.visual_kind == VisualKind.CLIP
        )
        if not muted:
            continue
        start, end = timeline.segment_window(index)
        if windows and abs(windows[-1][1] - start) < 1e-9:
            windows[-1] = (windows[-1][0], end)
        else:
            windows.append((start, end))
    return windows


def build_filter_graph(
    segments: list[SlideSegment],
    timeline: TimelineResult,
    inputs: list[SegmentInputs],
    music: Optional[MusicTrack] = None,
    music_file: Optional[str] = None,
    tts_volume: float = 1.0,
    canvas: Optional[CanvasSpec] = None,
) -> FilterGraph:
    """Build the complete graph. Pure: no I/O, file names are given.

    Segment order in the output is exactly the order of ``segments``.
    """
    canvas = canvas or CanvasSpec()
    if len(inputs) != len(segments) or len(timeline.frames) != len(segments):
        raise ValueError("segments, inputs and timeline must have the same length")

    graph = FilterGraph()
    width, height, fps, rate = canvas.width, canvas.height, canvas.fps, canvas.sample_rate
    input_index = 0
    video_labels: list[str] = []
    audio_labels: list[str] = []

    for i, (segment, files) in enumerate(zip(segments, inputs)):
        frames = timeline.frames[i]
        duration_s = frames / fps
        # One spare frame of input; trim cuts the exact length
        input_span = _seconds((frames + 1) / fps)

        # 1. Visual input
        kind = segment.visual_kind if files.visual_file else VisualKind.SOLID
        if kind == VisualKind.STILL:
            graph.input_args.append(
                ["-loop", "1", "-framerate", str(fps), "-t", input_span, "-i", files.visual_file]
            )
        elif kind == VisualKind.CLIP:
            graph.input_args.append(["-i", files.visual_file])
        else:
            graph.input_args.append(
                ["-f", "lavfi", "-t", input_span, "-i", f"color=c=black:s={width}x{height}:r={fps}"]
            )
        visual_index = input_index
        input_index += 1

        # 2. Narration input
        narration_index: Optional[int] = None
        if segment.has_narration and files.narration_file:
            graph.input_args.append(["-i", files.narration_file])
            narration_index = input_index
            input_index += 1

        # 3. Video branch
        v_label = f"v{i}"
        chain = [
            f"scale={width}:{height}:force_original_aspect_ratio=decrease",
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "setsar=1",
            f"fps={fps}",
            "format=yuv420p",
        ]
        if kind == VisualKind.CLIP:
            # Hold the last frame when the clip is shorter than its slot
            chain.append(f"tpad=stop_mode=clone:stop_duration={_seconds(duration_s)}")
        chain.extend([f"trim=end_frame={frames}", "setpts=PTS-STARTPTS"])
        graph.video_filters.append(f"[{visual_index}:v]{','.join(chain)}[{v_label}]")
        video_labels.append(v_label)

        # 4. Audio branch (sample-exact: fps divides the sample rate)
        a_label = f"a{i}"
        samples = frames * rate // fps
        audio_format = f"aformat=sample_rates={rate}:channel_layouts=stereo"
        if narration_index is not None:
            graph.audio_filters.append(
                f"[{narration_index}:a]{audio_format},apad,"
                f"atrim=end_sample={samples},asetpts=PTS-STARTPTS[{a_label}]"
            )
        else:
            graph.audio_filters.append(
                f"anullsrc=r={rate}:cl=stereo,{audio_format},"
                f"atrim=end_sample={samples},asetpts=PTS-STARTPTS[{a_label}]"
            )
        audio_labels.append(a_label)

    # Concatenate in input order
    n = len(segments)
    graph.video_filters.append(
        f"{''.join(f'[{label}]' for label in video_labels)}concat=n={n}:v=1:a=0[{graph.video_out}]"
    )
    graph.audio_filters.append(
        f"{''.join(f'[{label}]' for label in audio_labels)}concat=n={n}:v=0:a=1[{graph.speech_out}]"
    )

    if music is not None and music_file:
        graph.input_args.append(["-stream_loop", "-1", "-i", music_file])
        music_index = input_index

        music_chain = [f"aformat=sample_rates={rate}:channel_layouts=stereo", f"volume={music.volume}"]
        for start, end in music_mute_windows(segments, timeline):
            music_chain.append(f"volume=0:enable='between(t,{_seconds(start)},{_seconds(end)})'")

        graph.audio_filters.append(f"[{graph.speech_out}]volume={tts_volume}[speech_vol]")
        graph.audio_filters.append(f"[{music_index}:a]{','.join(music_chain)}[music_vol]")
        # duration=first: the speech stream decides the length, music never extends it
        graph.audio_filters.append(
            f"[speech_vol][music_vol]amix=inputs=2:duration=first:"
            f"dropout_transition=0.5:normalize=0[{graph.audio_out}]"
        )
    else:
        graph.audio_filters.append(f"[{graph.speech_out}]volume={tts_volume}[{graph.audio_out}]")

    return graph


class FilterGraphRenderer:
    """Client-style renderer executing one graph in the embedded engine."""

    backend_name = "filter_graph"

    def __init__(
        self,
        engine: EmbeddedMediaEngine,
        fetcher: AssetFetcher,
        output_dir: Optional[str] = None,
        canvas: Optional[CanvasSpec] = None,
    ):
        self.engine = engine
        self.fetcher = fetcher
        self.output_dir = Path(output_dir or get_settings().render_output_dir)
        self.canvas = canvas or CanvasSpec.from_settings()

    async def render(
        self,
        plan: RenderPlan,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Render the plan to an MP4 in the output directory.

        Cancellation is only observed between per-slide input loads; once
        the engine runs the graph it completes or fails.

        Raises:
            AssetFetchError: If a slide's media cannot be loaded
            MediaEngineError: With FFmpeg's error text if the graph fails
            RenderCancelledError: If cancelled before execution started
        """
        output_path = self.output_dir / f"tutorial-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.mp4"
        started = time.monotonic()

        async with self.engine.acquire() as session:
            try:
                inputs: list[SegmentInputs] = []
                for i, segment in enumerate(plan.segments):
                    if cancel_token:
                        cancel_token.raise_if_cancelled()
                    inputs.append(await self._load_segment(session, i, segment))

                music_file = None
                if plan.music is not None and plan.music.ref:
                    music_file = await self._load_music(session, plan.music)

                if cancel_token:
                    cancel_token.raise_if_cancelled()

                graph = build_filter_graph(
                    plan.segments,
                    plan.timeline,
                    inputs,
                    music=plan.music,
                    music_file=music_file,
                    tts_volume=plan.tts_volume,
                    canvas=self.canvas,
                )
                logger.debug(f"[FILTER GRAPH] {graph.filter_complex}")
                logger.info(
                    f"[FILTER GRAPH] Executing graph: {len(plan.segments)} slides, "
                    f"{plan.timeline.total_frames} frames, music={music_file is not None}"
                )

                session.track(graph.output_name)
                await session.exec(
                    graph.to_args(self.canvas),
                    expected_duration_s=plan.timeline.total_seconds,
                    on_progress=on_progress,
                )
                await session.export_file(graph.output_name, output_path)
            except BaseException:
                output_path.unlink(missing_ok=True)
                raise

        logger.info(
            f"[FILTER GRAPH] Rendered {output_path.name} in {time.monotonic() - started:.1f}s"
        )
        return output_path

    async def _fetch(self, ref: str, index: Optional[int]) -> bytes:
        try:
            data = await self.fetcher.fetch(ref)
        except Exception as e:
            raise AssetFetchError(index, str(e) or e.__class__.__name__) from e
        if not data:
            raise AssetFetchError(index, "media data is empty")
        return data

    async def _write(self, session: EngineSession, name: str, data: bytes, index: Optional[int]) -> None:
        try:
            await session.write_file(name, data)
        except OSError as e:
            raise AssetFetchError(index, f"could not write {name}: {e}") from e

    async def _load_segment(self, session: EngineSession, index: int, segment: SlideSegment) -> SegmentInputs:
        files = SegmentInputs()

        kind = segment.visual_kind
        if kind == VisualKind.STILL:
            data = await self._fetch(segment.visual_ref, index)
            name = f"visual_{index}.{self._image_extension(data, index)}"
            await self._write(session, name, data, index)
            files.visual_file = name
        elif kind == VisualKind.CLIP:
            data = await self._fetch(segment.visual_ref, index)
            name = f"visual_{index}.{url_extension(segment.visual_ref, 'mp4')}"
            await self._write(session, name, data, index)
            files.visual_file = name

        if segment.has_narration:
            data = await self._fetch(segment.narration_ref, index)
            name = f"speech_{index}.{url_extension(segment.narration_ref, 'mp3')}"
            await self._write(session, name, data, index)
            files.narration_file = name

        return files

    async def _load_music(self, session: EngineSession, music: MusicTrack) -> str:
        data = await self._fetch(music.ref, None)
        name = f"{MUSIC_INPUT_NAME}.{url_extension(music.ref, 'mp3')}"
        await self._write(session, name, data, None)
        return name

    @staticmethod
    def _image_extension(data: bytes, index: int) -> str:
        """Verify a still image and pick the extension its decoder needs."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                image_format = image.format
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise AssetFetchError(index, f"image data is not a readable image ({e})") from e
        return IMAGE_EXTENSIONS.get(image_format or "", "png")
