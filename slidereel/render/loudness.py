"""
Post-render loudness normalization.

Two-pass EBU R128 ``loudnorm``: the first pass measures the rendered
audio, the second applies a linear correction using those measurements.
Video is stream-copied; the file is replaced in place.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from slidereel.config import get_settings
from slidereel.exceptions import LoudnessNormalizationError
from slidereel.utils.media_info import has_audio_track

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"\{[^{}]*\"input_i\"[^{}]*\}", re.DOTALL)

MEASURED_KEYS = ("input_i", "input_tp", "input_lra", "input_thresh", "target_offset")


def parse_loudnorm_stats(stderr: str) -> dict[str, str]:
    """Extract the measurement JSON that ``loudnorm=print_format=json`` prints.

    Raises:
        LoudnessNormalizationError: If no complete measurement is found
    """
    match = _JSON_BLOCK_RE.search(stderr)
    if not match:
        raise LoudnessNormalizationError("Loudness analysis printed no measurements")
    try:
        stats = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise LoudnessNormalizationError(f"Failed to parse loudness analysis: {e}") from e

    missing = [key for key in MEASURED_KEYS if key not in stats]
    if missing:
        raise LoudnessNormalizationError(f"Loudness analysis is missing {', '.join(missing)}")
    # ffmpeg reports silence as -inf, which loudnorm cannot take back as a measurement
    if any("inf" in str(stats[key]) for key in MEASURED_KEYS):
        raise LoudnessNormalizationError("Audio track is silent; nothing to normalize")
    return stats


class LoudnessNormalizer:
    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        target_lufs: Optional[float] = None,
        true_peak_db: Optional[float] = None,
        loudness_range_lu: Optional[float] = None,
    ):
        settings = get_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.target_lufs = target_lufs if target_lufs is not None else settings.loudness_target_lufs
        self.true_peak_db = true_peak_db if true_peak_db is not None else settings.loudness_true_peak_db
        self.loudness_range_lu = (
            loudness_range_lu if loudness_range_lu is not None else settings.loudness_range_lu
        )
        self.audio_codec = settings.render_audio_codec
        self.audio_bitrate = settings.render_audio_bitrate
        self.sample_rate = settings.render_audio_sample_rate

    @property
    def _target(self) -> str:
        return f"I={self.target_lufs}:TP={self.true_peak_db}:LRA={self.loudness_range_lu}"

    def analysis_command(self, path: Path) -> list[str]:
        return [
            self.ffmpeg_path, "-hide_banner", "-nostats", "-nostdin",
            "-i", str(path),
            "-af", f"loudnorm={self._target}:print_format=json",
            "-f", "null", "-",
        ]

    def apply_command(self, path: Path, stats: dict[str, str], output: Path) -> list[str]:
        af = (
            f"loudnorm={self._target}"
            f":measured_I={stats['input_i']}:measured_TP={stats['input_tp']}"
            f":measured_LRA={stats['input_lra']}:measured_thresh={stats['input_thresh']}"
            f":offset={stats['target_offset']}:linear=true"
        )
        return [
            self.ffmpeg_path, "-hide_banner", "-nostats", "-nostdin", "-y",
            "-i", str(path),
            "-af", af,
            "-c:v", "copy",
            "-c:a", self.audio_codec, "-b:a", self.audio_bitrate, "-ar", str(self.sample_rate),
            "-movflags", "+faststart",
            str(output),
        ]

    async def normalize(self, path: Path) -> None:
        """Normalize ``path`` in place.

        Raises:
            LoudnessNormalizationError: On any failure; ``path`` is left untouched
        """
        path = Path(path)
        if not path.exists():
            raise LoudnessNormalizationError(f"File not found: {path}")
        if not await asyncio.to_thread(has_audio_track, str(path)):
            raise LoudnessNormalizationError("Rendered file has no audio track")

        logger.info(f"[LOUDNESS] Normalizing {path.name} to {self.target_lufs} LUFS")
        stderr = await self._run(self.analysis_command(path))
        stats = parse_loudnorm_stats(stderr)
        logger.debug(f"[LOUDNESS] Measured I={stats['input_i']} TP={stats['input_tp']}")

        temp_path = path.with_name(f"{path.stem}.normalized{path.suffix}")
        try:
            await self._run(self.apply_command(path, stats, temp_path))
            if not temp_path.exists() or temp_path.stat().st_size == 0:
                raise LoudnessNormalizationError("Normalization produced an empty file")
            os.replace(temp_path, path)
        except OSError as e:
            raise LoudnessNormalizationError(f"Could not replace {path.name}: {e}") from e
        finally:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[LOUDNESS] Could not remove {temp_path.name}: {e}")

        logger.info(f"[LOUDNESS] Normalized {path.name}")

    async def _run(self, cmd: list[str]) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LoudnessNormalizationError(f"FFmpeg could not be started: {e}") from e
        _, stderr = await proc.communicate()
        text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise LoudnessNormalizationError(f"FFmpeg loudnorm failed: {text[-2000:]}")
        return text
