"""
Declarative composition renderer (server path).

The timeline and resolved assets are handed to an external engine that
knows a named composition (``TechTutorial``). The engine schedules frames
and renders them in parallel; this module only decides the inputs, the
worker concurrency, the output location and the cancellation wiring.

Engines are adapters behind ``CompositionEngine``; ``RemotionCliEngine``
drives the Remotion CLI.

The composition at ``composition_entry_point`` must read these input props:

    slides[]: visualRef, mediaType ("image" | "video"), narrationRef (null when
        silent), narrationDurationSec, postDelaySec, transition,
        narrationDisabled, musicDisabled, videoMusicPaused, durationInFrames
    music: {ref, volume, loop} or null
    ttsVolume, fps, width, height, durationInFrames

Each slide must last exactly its ``durationInFrames``; the composition does
not derive durations on its own.
"""

import asyncio
import json
import logging
import os
import re
import shlex
import shutil
import signal
import tempfile
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from slidereel.config import get_settings
from slidereel.exceptions import RenderCancelledError, RenderFailedError
from slidereel.render.cancellation import CancellationToken
from slidereel.render.media_engine import ProgressCallback
from slidereel.render.plan import RenderPlan

logger = logging.getLogger(__name__)

_RENDERED_RE = re.compile(r"Rendered\s+(\d+)\s*/\s*(\d+)")
STOP_GRACE_S = 10.0


def compute_render_concurrency(cpu_count: Optional[int]) -> int:
    """Frame-parallel workers: half the cores, exactly one on single-core hosts."""
    if not cpu_count or cpu_count <= 1:
        return 1
    return max(1, cpu_count // 2)


@dataclass
class CompositionInfo:
    """A selected composition instance."""

    id: str
    duration_in_frames: int
    fps: int
    width: int
    height: int


class CompositionEngine(Protocol):
    async def bundle(self, entry_point: str) -> str:
        """Bundle the composition definition; returns a serve URL/location."""
        ...

    async def release_bundle(self, serve_url: str) -> None:
        ...

    async def select_composition(
        self, serve_url: str, composition_id: str, input_props: dict[str, Any]
    ) -> CompositionInfo:
        ...

    async def render_media(
        self,
        composition: CompositionInfo,
        serve_url: str,
        codec: str,
        output_path: Path,
        input_props: dict[str, Any],
        concurrency: int,
        cancel_token: CancellationToken,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        ...


def parse_render_progress(line: str) -> Optional[float]:
    """Percentage from a ``Rendered 120/450`` CLI line."""
    match = _RENDERED_RE.search(line)
    if not match:
        return None
    done, total = int(match.group(1)), int(match.group(2))
    if total <= 0:
        return None
    return max(0.0, min(100.0, done / total * 100))


class RemotionCliEngine:
    """Remotion CLI driven as a subprocess.

    Cancellation is forwarded as SIGINT, which the CLI honors by stopping
    frame rendering; the process is then awaited. If the call itself is
    abandoned (task cancelled, callback error) the CLI gets SIGINT and is
    killed when it is still running after ``stop_grace_s``.
    """

    def __init__(
        self,
        command: Optional[str] = None,
        project_dir: Optional[str] = None,
        stop_grace_s: float = STOP_GRACE_S,
    ):
        settings = get_settings()
        self.command = shlex.split(command or settings.composition_command)
        self.project_dir = project_dir
        self.stop_grace_s = stop_grace_s

    async def bundle(self, entry_point: str) -> str:
        out_dir = tempfile.mkdtemp(prefix="slidereel_bundle_")
        try:
            await self._run(["bundle", entry_point, "--out-dir", out_dir])
        except BaseException:
            shutil.rmtree(out_dir, ignore_errors=True)
            raise
        return out_dir

    async def release_bundle(self, serve_url: str) -> None:
        await asyncio.to_thread(shutil.rmtree, serve_url, True)

    async def select_composition(
        self, serve_url: str, composition_id: str, input_props: dict[str, Any]
    ) -> CompositionInfo:
        with _props_file(input_props) as props_path:
            output = await self._run(
                ["compositions", serve_url, f"--props={props_path}", "--quiet"]
            )
        if composition_id not in output.split():
            raise RenderFailedError(f"Could not find composition with ID {composition_id}")
        return CompositionInfo(
            id=composition_id,
            duration_in_frames=input_props["durationInFrames"],
            fps=input_props["fps"],
            width=input_props["width"],
            height=input_props["height"],
        )

    async def render_media(
        self,
        composition: CompositionInfo,
        serve_url: str,
        codec: str,
        output_path: Path,
        input_props: dict[str, Any],
        concurrency: int,
        cancel_token: CancellationToken,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        def on_line(line: str) -> None:
            percent = parse_render_progress(line)
            if percent is not None and on_progress:
                on_progress(percent)

        with _props_file(input_props) as props_path:
            await self._run(
                [
                    "render",
                    serve_url,
                    composition.id,
                    str(output_path),
                    f"--props={props_path}",
                    f"--codec={codec}",
                    f"--concurrency={concurrency}",
                ],
                cancel_token=cancel_token,
                on_line=on_line,
            )

    async def _run(
        self,
        args: list[str],
        cancel_token: Optional[CancellationToken] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> str:
        cmd = [*self.command, *args]
        logger.debug(f"[COMPOSITION] {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.project_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RenderFailedError(f"Failed to start composition engine: {e}") from e

        unregister: Callable[[], None] = lambda: None
        if cancel_token is not None:
            unregister = cancel_token.register(lambda: _interrupt(proc))

        stderr_task = asyncio.create_task(proc.stderr.read())
        tail: deque[str] = deque(maxlen=200)
        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                tail.append(line)
                if on_line:
                    on_line(line)
            stderr = await stderr_task
            returncode = await proc.wait()
        except BaseException:
            await _stop(proc, stderr_task, self.stop_grace_s)
            raise
        finally:
            unregister()

        if cancel_token is not None and cancel_token.cancelled:
            raise RenderCancelledError("Render aborted by cancel signal")
        if returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or "\n".join(tail)
            raise RenderFailedError(message or f"Composition engine exited with code {returncode}")
        return "\n".join(tail)


def _interrupt(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(signal.SIGINT)
    except ProcessLookupError:
        pass


async def _stop(
    proc: asyncio.subprocess.Process,
    stderr_task: asyncio.Task,
    grace_s: float = STOP_GRACE_S,
) -> None:
    """SIGINT first so the CLI can tear down its workers, then kill."""
    _interrupt(proc)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_s)
    except asyncio.TimeoutError:
        logger.warning("[COMPOSITION] Engine ignored SIGINT, killing it")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
    stderr_task.cancel()


class _props_file:
    """Input props serialized to a temporary JSON file for the CLI."""

    def __init__(self, props: dict[str, Any]):
        self._props = props
        self._path: Optional[str] = None

    def __enter__(self) -> str:
        fd, self._path = tempfile.mkstemp(prefix="slidereel_props_", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(self._props, f)
        return self._path

    def __exit__(self, *exc_info: Any) -> None:
        if self._path:
            Path(self._path).unlink(missing_ok=True)


class CompositionRenderer:
    """Server-side renderer backed by a declarative composition engine."""

    backend_name = "composition"

    def __init__(
        self,
        engine: CompositionEngine,
        output_dir: Optional[str] = None,
        entry_point: Optional[str] = None,
        composition_id: Optional[str] = None,
        codec: Optional[str] = None,
        cpu_count: Callable[[], Optional[int]] = os.cpu_count,
    ):
        settings = get_settings()
        self.engine = engine
        self.output_dir = Path(output_dir or settings.render_output_dir)
        self.entry_point = entry_point or settings.composition_entry_point
        self.composition_id = composition_id or settings.composition_id
        self.codec = codec or settings.composition_codec
        self.width = settings.render_output_width
        self.height = settings.render_output_height
        self._cpu_count = cpu_count

    def build_input_props(self, plan: RenderPlan) -> dict[str, Any]:
        """The full render request plus the frame counts the composition must use."""
        slides = []
        for segment, frames in zip(plan.segments, plan.timeline.frames):
            slides.append(
                {
                    "visualRef": segment.visual_ref,
                    "mediaType": segment.media_type.value,
                    "narrationRef": segment.narration_ref if segment.has_narration else None,
                    "narrationDurationSec": segment.narration_duration_s,
                    "postDelaySec": segment.post_delay_s,
                    "transition": segment.transition.value,
                    "narrationDisabled": segment.narration_disabled,
                    "musicDisabled": segment.music_disabled,
                    "videoMusicPaused": segment.video_music_paused,
                    "durationInFrames": frames,
                }
            )

        music = None
        if plan.music is not None:
            music = {"ref": plan.music.ref, "volume": plan.music.volume, "loop": True}

        return {
            "slides": slides,
            "music": music,
            "ttsVolume": plan.tts_volume,
            "fps": plan.timeline.fps,
            "width": self.width,
            "height": self.height,
            "durationInFrames": plan.timeline.total_frames,
        }

    async def render(
        self,
        plan: RenderPlan,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Render the plan through the composition engine.

        Raises:
            RenderCancelledError: If the token fired before the render finished
            RenderFailedError: With the engine's own message
        """
        token = cancel_token or CancellationToken()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"tutorial-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.mp4"

        cpu_count = self._cpu_count()
        concurrency = compute_render_concurrency(cpu_count)
        logger.info(
            f"[COMPOSITION] Using {concurrency} workers for parallel rendering (Total CPUs: {cpu_count})"
        )

        input_props = self.build_input_props(plan)
        token.raise_if_cancelled()
        serve_url = await self.engine.bundle(self.entry_point)
        try:
            token.raise_if_cancelled()
            composition = await self.engine.select_composition(
                serve_url, self.composition_id, input_props
            )
            token.raise_if_cancelled()
            await self.engine.render_media(
                composition=composition,
                serve_url=serve_url,
                codec=self.codec,
                output_path=output_path,
                input_props=input_props,
                concurrency=concurrency,
                cancel_token=token,
                on_progress=on_progress,
            )
            # Engines are expected to stop cooperatively; a late signal still discards the output
            token.raise_if_cancelled()
        except BaseException:
            output_path.unlink(missing_ok=True)
            raise
        finally:
            await self.engine.release_bundle(serve_url)

        if not output_path.exists():
            raise RenderFailedError(f"Composition engine produced no output at {output_path}")

        logger.info(f"[COMPOSITION] Rendered {output_path.name} ({composition.duration_in_frames} frames)")
        return output_path
