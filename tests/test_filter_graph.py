"""Tests for filter-graph construction and the filter-graph renderer."""

import pytest

from slidereel.exceptions import AssetFetchError, RenderCancelledError
from slidereel.render.cancellation import CancellationToken
from slidereel.render.filter_graph import (
    CanvasSpec,
    FilterGraphRenderer,
    SegmentInputs,
    build_filter_graph,
    music_mute_windows,
)
from slidereel.render.media_engine import EmbeddedMediaEngine
from slidereel.render.plan import RenderPlan
from slidereel.render.timeline import MediaType, MusicTrack, SlideSegment, compute_timeline

from .conftest import requires_ffmpeg


def _graph(segments, inputs, **kwargs):
    return build_filter_graph(segments, compute_timeline(segments), inputs, **kwargs)


class TestBuildFilterGraph:
    """Tests for the pure graph builder."""

    def test_labels_and_concat_order(self):
        """Test that every slide gets v_i/a_i labels concatenated in input order."""
        segments = [SlideSegment(narration_duration_s=1.0) for _ in range(3)]
        inputs = [SegmentInputs(visual_file=f"visual_{i}.png") for i in range(3)]

        graph = _graph(segments, inputs)

        assert "[v0][v1][v2]concat=n=3:v=1:a=0[vout_raw]" in graph.filter_complex
        assert "[a0][a1][a2]concat=n=3:v=0:a=1[aout_speech]" in graph.filter_complex
        for i in range(3):
            assert f"[v{i}]" in graph.video_filters[i]
            assert f"[a{i}]" in graph.audio_filters[i]

    def test_video_branch_filter_order(self):
        """Test scale -> pad -> fps -> format -> trim -> setpts for a still."""
        segments = [SlideSegment(visual_ref="https://x/1.png", narration_duration_s=2.0)]
        graph = _graph(segments, [SegmentInputs(visual_file="visual_0.png")])

        chain = graph.video_filters[0]
        positions = [chain.index(name) for name in ("scale=", "pad=", "fps=", "format=", "trim=", "setpts=")]
        assert positions == sorted(positions)
        assert "trim=end_frame=60" in chain
        assert graph.input_args[0][:4] == ["-loop", "1", "-framerate", "30"]

    def test_solid_color_when_no_visual(self):
        """Test that a slide with no media gets a synthetic color clip."""
        segments = [SlideSegment(narration_disabled=True, post_delay_s=1.0)]

        graph = _graph(segments, [SegmentInputs()])

        assert graph.input_args[0][:2] == ["-f", "lavfi"]
        assert graph.input_args[0][-1].startswith("color=c=black:s=1920x1080")

    def test_video_clip_is_held_and_trimmed(self):
        """Test that clips are padded with their last frame before the exact trim."""
        segments = [SlideSegment(visual_ref="https://x/clip.mp4", media_type=MediaType.VIDEO)]

        graph = _graph(segments, [SegmentInputs(visual_file="visual_0.mp4")])

        assert graph.input_args[0] == ["-i", "visual_0.mp4"]
        chain = graph.video_filters[0]
        assert "tpad=stop_mode=clone" in chain
        assert chain.index("tpad=") < chain.index("trim=end_frame=150")

    def test_narration_is_padded_and_trimmed_to_slot(self):
        """Test narration audio is exactly frames/fps long in samples."""
        segments = [SlideSegment(narration_ref="https://x/a.mp3", narration_duration_s=3.7)]
        inputs = [SegmentInputs(visual_file="visual_0.png", narration_file="speech_0.mp3")]

        graph = _graph(segments, inputs)

        # 111 frames at 30fps = 3.7s = 163170 samples at 44.1kHz
        assert graph.audio_filters[0].startswith("[1:a]aformat=sample_rates=44100:channel_layouts=stereo,apad,")
        assert "atrim=end_sample=163170" in graph.audio_filters[0]

    def test_silence_without_narration(self):
        """Test that slides without narration get generated silence."""
        segments = [SlideSegment(narration_disabled=True, narration_ref="https://x/a.mp3")]
        inputs = [SegmentInputs(visual_file="visual_0.png")]

        graph = _graph(segments, inputs)

        assert graph.audio_filters[0].startswith("anullsrc=r=44100:cl=stereo")
        assert len(graph.input_args) == 1

    def test_music_mix_duration_follows_speech(self):
        """Test that music is looped, gained and mixed with duration=first."""
        segments = [SlideSegment(narration_duration_s=1.0)]
        graph = _graph(
            segments,
            [SegmentInputs(visual_file="visual_0.png")],
            music=MusicTrack(ref="https://x/music.mp3", volume=0.2),
            music_file="bg_music.mp3",
            tts_volume=0.8,
        )

        assert graph.input_args[-1] == ["-stream_loop", "-1", "-i", "bg_music.mp3"]
        assert "[aout_speech]volume=0.8[speech_vol]" in graph.filter_complex
        assert "[1:a]aformat=sample_rates=44100:channel_layouts=stereo,volume=0.2[music_vol]" in graph.filter_complex
        assert (
            "[speech_vol][music_vol]amix=inputs=2:duration=first:dropout_transition=0.5:normalize=0[aout_mixed]"
            in graph.filter_complex
        )

    def test_no_music_applies_narration_gain_only(self):
        """Test that without music the speech stream becomes the final audio."""
        segments = [SlideSegment()]

        graph = _graph(segments, [SegmentInputs()], tts_volume=1.5)

        assert graph.audio_filters[-1] == "[aout_speech]volume=1.5[aout_mixed]"
        assert "amix" not in graph.filter_complex

    def test_output_args_map_final_streams(self):
        """Test the single encode pass."""
        graph = _graph([SlideSegment()], [SegmentInputs()])

        args = graph.to_args(CanvasSpec())

        assert args[args.index("-map") + 1] == "[vout_raw]"
        assert "[aout_mixed]" in args
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-c:a") + 1] == "aac"
        assert args[-1] == "output.mp4"

    def test_mismatched_inputs_raise(self):
        """Test that input lists must line up with the segments."""
        with pytest.raises(ValueError):
            _graph([SlideSegment(), SlideSegment()], [SegmentInputs()])


class TestMusicMuteWindows:
    """Tests for music mute windows."""

    def test_music_disabled_and_paused_video(self):
        """Test windows from musicDisabled slides and paused video slides, merged when adjacent."""
        segments = [
            SlideSegment(narration_duration_s=1.0),
            SlideSegment(narration_duration_s=1.0, music_disabled=True),
            SlideSegment(
                narration_duration_s=2.0,
                visual_ref="https://x/clip.mp4",
                media_type=MediaType.VIDEO,
                video_music_paused=True,
            ),
            SlideSegment(narration_duration_s=1.0),
        ]

        windows = music_mute_windows(segments, compute_timeline(segments))

        assert windows == [(1.0, 4.0)]

    def test_video_music_paused_ignored_for_images(self):
        """Test that videoMusicPaused only applies to video slides."""
        segments = [SlideSegment(video_music_paused=True)]

        assert music_mute_windows(segments, compute_timeline(segments)) == []


class _StaticFetcher:
    def __init__(self, payloads: dict[str, bytes], on_fetch=None):
        self.payloads = payloads
        self.requested: list[str] = []
        self.on_fetch = on_fetch

    async def fetch(self, ref: str) -> bytes:
        self.requested.append(ref)
        if self.on_fetch:
            self.on_fetch(ref)
        if ref not in self.payloads:
            raise ValueError(f"404 for {ref}")
        return self.payloads[ref]


def _plan(segments, music=None) -> RenderPlan:
    return RenderPlan(segments=segments, timeline=compute_timeline(segments), music=music)


class TestFilterGraphRenderer:
    """Tests for the renderer around the engine."""

    @pytest.fixture
    def engine(self):
        return EmbeddedMediaEngine(ffmpeg_path="ffmpeg")

    @pytest.fixture
    def loaded_engine(self, engine, temp_output_dir, monkeypatch):
        """Engine whose load step does not need a real binary."""
        async def fake_load():
            root = temp_output_dir / "vfs"
            root.mkdir(exist_ok=True)
            engine._root = root

        monkeypatch.setattr(engine, "load", fake_load)
        return engine

    @pytest.mark.asyncio
    async def test_fetch_failure_names_the_slide(self, loaded_engine, temp_output_dir, png_bytes):
        """Test that a failed fetch aborts with the slide number and leaves no files behind."""
        fetcher = _StaticFetcher({"https://x/1.png": png_bytes})
        renderer = FilterGraphRenderer(loaded_engine, fetcher, output_dir=str(temp_output_dir / "out"))
        segments = [
            SlideSegment(visual_ref="https://x/1.png"),
            SlideSegment(visual_ref="https://x/missing.png"),
        ]

        with pytest.raises(AssetFetchError, match="slide 2"):
            await renderer.render(_plan(segments))

        assert loaded_engine.list_files() == []
        assert list((temp_output_dir / "out").glob("*.mp4")) == []

    @pytest.mark.asyncio
    async def test_invalid_image_is_rejected(self, loaded_engine, temp_output_dir):
        """Test that image payloads are verified before entering the engine."""
        fetcher = _StaticFetcher({"https://x/1.png": b"not an image"})
        renderer = FilterGraphRenderer(loaded_engine, fetcher, output_dir=str(temp_output_dir))

        with pytest.raises(AssetFetchError, match="slide 1"):
            await renderer.render(_plan([SlideSegment(visual_ref="https://x/1.png")]))

        assert loaded_engine.list_files() == []

    @pytest.mark.asyncio
    async def test_cancellation_between_slide_loads(self, loaded_engine, temp_output_dir, png_bytes):
        """Test that cancelling stops further fetches and nothing is executed."""
        token = CancellationToken()
        fetcher = _StaticFetcher(
            {"https://x/1.png": png_bytes, "https://x/2.png": png_bytes},
            on_fetch=lambda ref: token.cancel("client disconnected"),
        )
        renderer = FilterGraphRenderer(loaded_engine, fetcher, output_dir=str(temp_output_dir))
        segments = [SlideSegment(visual_ref="https://x/1.png"), SlideSegment(visual_ref="https://x/2.png")]

        with pytest.raises(RenderCancelledError):
            await renderer.render(_plan(segments), cancel_token=token)

        assert fetcher.requested == ["https://x/1.png"]
        assert loaded_engine.list_files() == []

    @pytest.mark.asyncio
    async def test_graph_executes_and_output_is_exported(self, loaded_engine, temp_output_dir, png_bytes, monkeypatch):
        """Test the full call with the engine execution stubbed."""
        executed: list[list[str]] = []

        async def fake_run(args, expected_duration_s=0.0, on_progress=None):
            executed.append(args)
            assert sorted(loaded_engine.list_files()) == ["bg_music.mp3", "visual_0.png"]
            (loaded_engine.root / "output.mp4").write_bytes(b"mp4")
            if on_progress:
                on_progress(100.0)

        monkeypatch.setattr(loaded_engine, "run", fake_run)
        fetcher = _StaticFetcher({"https://x/1.png": png_bytes, "https://x/m.mp3": b"ID3"})
        renderer = FilterGraphRenderer(loaded_engine, fetcher, output_dir=str(temp_output_dir / "out"))
        progress: list[float] = []

        output = await renderer.render(
            _plan([SlideSegment(visual_ref="https://x/1.png")], music=MusicTrack(ref="https://x/m.mp3")),
            on_progress=progress.append,
        )

        assert output.read_bytes() == b"mp4"
        assert output.parent == temp_output_dir / "out"
        assert len(executed) == 1
        assert progress == [100.0]
        # Inputs and the engine-side output are released
        assert loaded_engine.list_files() == []


@requires_ffmpeg
class TestFilterGraphRendererWithFFmpeg:
    """End-to-end graph execution with a real FFmpeg."""

    @pytest.mark.asyncio
    async def test_renders_exact_length(self, temp_output_dir, png_bytes):
        """Test that a two-slide render is exactly the timeline length."""
        from slidereel.utils.media_info import get_media_duration

        engine = EmbeddedMediaEngine(ffmpeg_path="ffmpeg")
        fetcher = _StaticFetcher({"https://x/1.png": png_bytes})
        canvas = CanvasSpec(width=320, height=180)
        renderer = FilterGraphRenderer(engine, fetcher, output_dir=str(temp_output_dir), canvas=canvas)
        segments = [
            SlideSegment(visual_ref="https://x/1.png", narration_disabled=True, post_delay_s=1.0),
            SlideSegment(narration_disabled=True, post_delay_s=0.5),
        ]

        try:
            output = await renderer.render(_plan(segments))
        finally:
            await engine.shutdown()

        assert output.exists()
        assert abs(get_media_duration(str(output)) - 1.5) < 0.1

    @pytest.mark.asyncio
    async def test_long_music_is_cut_to_speech_length(self, temp_output_dir, png_bytes):
        """Test that a music bed longer than the timeline ends with the speech stream."""
        import subprocess

        from slidereel.utils.media_info import _run_ffprobe

        def tone(name: str, seconds: float, frequency: int) -> bytes:
            path = temp_output_dir / name
            subprocess.run(
                [
                    "ffmpeg", "-hide_banner", "-loglevel", "error", "-y",
                    "-f", "lavfi", "-i", f"sine=frequency={frequency}:duration={seconds}",
                    "-ar", "44100", str(path),
                ],
                check=True,
            )
            return path.read_bytes()

        engine = EmbeddedMediaEngine(ffmpeg_path="ffmpeg")
        fetcher = _StaticFetcher({
            "https://x/1.png": png_bytes,
            "https://x/1.wav": tone("speech.wav", 0.8, 440),
            "https://x/music.wav": tone("music.wav", 5.0, 220),
        })
        canvas = CanvasSpec(width=320, height=180)
        renderer = FilterGraphRenderer(engine, fetcher, output_dir=str(temp_output_dir), canvas=canvas)
        segments = [
            SlideSegment(
                visual_ref="https://x/1.png",
                narration_ref="https://x/1.wav",
                narration_duration_s=0.8,
                post_delay_s=0.2,
            ),
            SlideSegment(narration_disabled=True, post_delay_s=0.5),
        ]
        plan = _plan(segments, music=MusicTrack(ref="https://x/music.wav", volume=0.3))

        try:
            output = await renderer.render(plan)
        finally:
            await engine.shutdown()

        streams = _run_ffprobe(str(output), "-show_streams", "-select_streams", "a")["streams"]
        assert len(streams) == 1
        assert plan.timeline.total_seconds == pytest.approx(1.5)
        assert abs(float(streams[0]["duration"]) - plan.timeline.total_seconds) <= 1 / plan.timeline.fps
