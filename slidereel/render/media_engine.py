"""
Embedded media engine used by the filter-graph renderer.

The engine is a single-threaded FFmpeg executor with a private virtual
filesystem (a directory only the engine writes to). It is an explicitly
owned resource:

- ``load()`` happens once, lazily, on first use
- ``acquire()`` hands out one exclusive session at a time
- every file a session writes is deleted when the session is released,
  whether the work succeeded or failed
- ``shutdown()`` removes the virtual filesystem
"""

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from slidereel.config import get_settings
from slidereel.exceptions import MediaEngineError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def parse_progress_line(line: str, expected_duration_s: float) -> Optional[float]:
    """Turn one ``-progress`` key=value line into a 0-100 percentage.

    Returns None for lines that carry no position information.
    """
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100.0
    # out_time_ms is reported in microseconds as well (long-standing FFmpeg quirk)
    if key not in ("out_time_us", "out_time_ms") or expected_duration_s <= 0:
        return None
    try:
        position_us = int(value)
    except ValueError:
        return None
    percent = position_us / 1_000_000 / expected_duration_s * 100
    return max(0.0, min(100.0, percent))


class EngineSession:
    """Exclusive handle on the engine for one render call."""

    def __init__(self, engine: "EmbeddedMediaEngine"):
        self._engine = engine
        self._files: list[str] = []

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise MediaEngineError(f"Invalid virtual file name: {name!r}")
        return self._engine.root / name

    def track(self, name: str) -> None:
        """Claim a file the engine will create (e.g. an output) for cleanup."""
        self._path(name)
        if name not in self._files:
            self._files.append(name)

    async def write_file(self, name: str, data: bytes) -> None:
        path = self._path(name)
        self.track(name)
        await asyncio.to_thread(path.write_bytes, data)

    async def export_file(self, name: str, destination: Path) -> Path:
        """Copy a virtual file out of the engine."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, self._path(name), destination)
        return destination

    async def exec(
        self,
        args: list[str],
        expected_duration_s: float = 0.0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Run one graph execution inside the engine.

        Raises:
            MediaEngineError: carrying FFmpeg's own error text
        """
        await self._engine.run(args, expected_duration_s, on_progress)

    def cleanup(self) -> None:
        for name in list(self._files):
            try:
                self._path(name).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[ENGINE] Could not delete virtual file {name}: {e}")
                continue
            self._files.remove(name)


class EmbeddedMediaEngine:
    """Lazily loaded, single-session FFmpeg engine."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        threads: Optional[int] = None,
    ):
        settings = get_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.threads = threads or settings.engine_threads
        self._lock = asyncio.Lock()
        self._root: Optional[Path] = None
        self._version: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self._root is not None

    @property
    def root(self) -> Path:
        if self._root is None:
            raise MediaEngineError("Media engine is not loaded")
        return self._root

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def version(self) -> Optional[str]:
        return self._version

    def list_files(self) -> list[str]:
        """Names currently present in the virtual filesystem."""
        if self._root is None or not self._root.exists():
            return []
        return sorted(p.name for p in self._root.iterdir())

    async def load(self) -> None:
        if self.loaded:
            return

        logger.info(f"[ENGINE] Loading media engine ({self.ffmpeg_path})")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                "-hide_banner",
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            raise MediaEngineError(f"Failed to load media engine: {e}") from e

        if proc.returncode != 0:
            raise MediaEngineError(
                f"Failed to load media engine: {stderr.decode('utf-8', errors='replace').strip()}"
            )

        first_line = stdout.decode("utf-8", errors="replace").splitlines()[:1]
        self._version = first_line[0] if first_line else "unknown"
        self._root = Path(tempfile.mkdtemp(prefix="slidereel_engine_"))
        logger.info(f"[ENGINE] Ready: {self._version}")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[EngineSession]:
        """Exclusive session; concurrent callers wait their turn."""
        async with self._lock:
            await self.load()
            session = EngineSession(self)
            try:
                yield session
            finally:
                session.cleanup()
                leftovers = self.list_files()
                if leftovers:
                    logger.warning(f"[ENGINE] Virtual files left after session: {leftovers}")

    async def shutdown(self) -> None:
        async with self._lock:
            if self._root is not None:
                shutil.rmtree(self._root, ignore_errors=True)
                self._root = None
                logger.info("[ENGINE] Virtual filesystem released")

    def build_command(self, args: list[str]) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", "error",
            "-nostats",
            "-progress", "pipe:1",
            "-filter_threads", str(self.threads),
            "-filter_complex_threads", str(self.threads),
            "-y",
            *args,
        ]

    async def run(
        self,
        args: list[str],
        expected_duration_s: float = 0.0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        cmd = self.build_command(args)
        logger.debug(f"[ENGINE] exec: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise MediaEngineError(f"Failed to start media engine: {e}") from e

        stderr_task = asyncio.create_task(proc.stderr.read())
        last_percent = -1.0
        try:
            async for raw_line in proc.stdout:
                percent = parse_progress_line(
                    raw_line.decode("utf-8", errors="replace"), expected_duration_s
                )
                if percent is None or percent <= last_percent:
                    continue
                last_percent = percent
                if on_progress:
                    on_progress(percent)

            stderr = await stderr_task
            returncode = await proc.wait()
        except BaseException:
            # The session must not be released while FFmpeg still writes into it
            await _kill(proc, stderr_task)
            raise
        if returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            logger.error(f"[ENGINE] Graph execution failed: {stderr_text}")
            raise MediaEngineError(stderr_text or f"FFmpeg exited with code {returncode}")


async def _kill(proc: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        logger.warning("[ENGINE] Graph execution interrupted, FFmpeg killed")
    await proc.wait()
    stderr_task.cancel()
