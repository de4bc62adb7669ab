import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "SlideReel API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    # Base URL the render engines use to reach this server (relative refs are resolved against it)
    public_base_url: str = "http://localhost:8080"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "*"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # Storage (durable hosting of uploaded / resolved media)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/slidereel-storage"
    gcs_bucket_name: str = "slidereel-assets"
    gcs_project_id: str = ""

    # File Upload
    max_upload_size_mb: int = 100
    allowed_upload_types: list[str] = [
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/webp",
        "audio/mpeg",
        "audio/wav",
        "audio/mp3",
        "video/mp4",
    ]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    # The embedded engine runs single-threaded
    engine_threads: int = 1

    # Render settings
    render_backend: Literal["composition", "filter_graph"] = "composition"
    render_output_dir: str = "/tmp/slidereel-out"
    render_output_width: int = 1920
    render_output_height: int = 1080
    render_fps: int = 30
    render_video_codec: str = "libx264"
    render_video_preset: str = "ultrafast"
    render_audio_codec: str = "aac"
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 44100
    # Idle timeout of the HTTP transport; renders can take many minutes
    render_request_timeout_s: int = 900

    # Declarative composition engine (Remotion CLI)
    # Must be a composition that reads CompositionRenderer.build_input_props
    composition_entry_point: str = "src/video/Root.tsx"
    composition_id: str = "TechTutorial"
    composition_command: str = "npx remotion"
    composition_codec: str = "h264"

    # Loudness normalization (YouTube-style target)
    loudness_target_lufs: float = -14.0
    loudness_true_peak_db: float = -1.0
    loudness_range_lu: float = 11.0
    disable_audio_normalization: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
