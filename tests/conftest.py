"""
Pytest fixtures for slidereel tests.

Tests that run a real FFmpeg are marked with @pytest.mark.requires_ffmpeg
and skipped when the binary is not on PATH.
Run `pytest -m "not requires_ffmpeg"` to skip them explicitly.
"""

import io
import os
import shutil
import tempfile
from pathlib import Path

import pytest
from PIL import Image

# Settings are read from the environment once; point every path at a scratch area
_SCRATCH = Path(tempfile.mkdtemp(prefix="slidereel_test_env_"))
os.environ.setdefault("LOCAL_STORAGE_PATH", str(_SCRATCH / "storage"))
os.environ.setdefault("RENDER_OUTPUT_DIR", str(_SCRATCH / "out"))
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")
os.environ.setdefault("USE_LOCAL_STORAGE", "true")


def make_png(width: int = 16, height: int = 16) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(30, 120, 200)).save(buffer, format="PNG")
    return buffer.getvalue()


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe binaries"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


# Skip decorator for tests requiring a real FFmpeg
requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_available(),
    reason="ffmpeg/ffprobe not available"
)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="slidereel_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()

