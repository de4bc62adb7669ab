"""Media file information utilities using FFprobe."""

import json
import subprocess

from slidereel.config import get_settings


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise RuntimeError(f"ffprobe could not be started: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def get_media_duration(file_path: str) -> float:
    """
    Get media file duration in seconds.

    Used to report narration durations for uploaded audio, which the
    timeline needs before anything is rendered.

    Raises:
        RuntimeError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format")
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise RuntimeError(f"Duration not found in: {file_path}")

    return float(format_info["duration"])


def has_audio_track(file_path: str) -> bool:
    """True if the file has at least one audio stream."""
    try:
        data = _run_ffprobe(file_path, "-show_streams", "-select_streams", "a")
        return len(data.get("streams", [])) > 0
    except RuntimeError:
        return False
