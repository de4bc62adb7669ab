import mimetypes
import shutil
import uuid
from functools import lru_cache
from pathlib import Path

from slidereel.config import get_settings

FILES_ROUTE = "/api/storage/files/"


def generate_storage_key(extension: str) -> str:
    """Unique key for an uploaded asset, e.g. ``uploads/<uuid>.png``."""
    ext = extension.lstrip(".") or "bin"
    return f"uploads/{uuid.uuid4()}.{ext}"


def extension_for_content_type(content_type: str | None) -> str:
    if not content_type:
        return "bin"
    # mimetypes maps audio/mpeg to .mp2 on some platforms
    overrides = {"audio/mpeg": "mp3", "audio/mp3": "mp3", "audio/wav": "wav", "image/jpeg": "jpg"}
    if content_type in overrides:
        return overrides[content_type]
    guessed = mimetypes.guess_extension(content_type)
    return guessed.lstrip(".") if guessed else "bin"


class LocalStorageService:
    """Local file storage for development without GCS.

    Files are served back by the ``/api/storage/files`` route, so the URLs it
    hands out are reachable by both render engines.
    """

    def __init__(self, base_path: str | None = None, public_base_url: str | None = None) -> None:
        settings = get_settings()
        self.base_path = Path(base_path or settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self.public_base_url}{FILES_ROUTE}{storage_key}"

    def upload_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        """Store bytes and return the durable URL."""
        self._get_full_path(storage_key).write_bytes(data)
        return self.get_public_url(storage_key)

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload from local path."""
        shutil.copy(local_path, str(self._get_full_path(storage_key)))
        return self.get_public_url(storage_key)

    def local_path_for_url(self, url: str) -> Path | None:
        """Map one of our own URLs back to the stored file, if it is one."""
        prefix = f"{self.public_base_url}{FILES_ROUTE}"
        if not url.startswith(prefix):
            return None
        try:
            path = self._get_full_path(url[len(prefix):])
        except ValueError:
            return None
        return path if path.exists() else None

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self) -> None:
        from google.cloud import storage

        settings = get_settings()
        self._storage = storage
        self._bucket_name = settings.gcs_bucket_name
        self._project_id = settings.gcs_project_id
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None

    @property
    def client(self):
        if self._client is None:
            if self._project_id:
                self._client = self._storage.Client(project=self._project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self._bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{self._bucket_name}/{storage_key}"

    def upload_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        """Upload bytes directly to GCS."""
        blob = self.bucket.blob(storage_key)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        return self.get_public_url(storage_key)

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        blob = self.bucket.blob(storage_key)
        if content_type:
            blob.upload_from_filename(local_path, content_type=content_type)
        else:
            blob.upload_from_filename(local_path)
        return self.get_public_url(storage_key)

    def local_path_for_url(self, url: str) -> Path | None:
        return None


StorageService = LocalStorageService | GCSStorageService


@lru_cache
def get_storage_service() -> StorageService:
    # Use LocalStorageService or GCSStorageService based on config
    if get_settings().use_local_storage:
        return LocalStorageService()
    return GCSStorageService()
