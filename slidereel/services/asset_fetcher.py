"""Fetching media references into memory for the filter-graph renderer."""

import asyncio
import base64
import binascii
import logging
from pathlib import Path
from urllib.parse import unquote_to_bytes, urlparse

import httpx

from slidereel.services.storage_service import StorageService

logger = logging.getLogger(__name__)


def parse_data_url(ref: str) -> tuple[str, bytes]:
    """Decode a ``data:`` URL into (content_type, payload).

    Raises:
        ValueError: If the URL is malformed
    """
    if not ref.startswith("data:"):
        raise ValueError("Not a data URL")
    header, sep, payload = ref[5:].partition(",")
    if not sep:
        raise ValueError("Malformed data URL (missing ',')")

    params = header.split(";")
    content_type = params[0] or "text/plain"
    if "base64" in params[1:]:
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Malformed base64 payload: {e}") from e
    else:
        data = unquote_to_bytes(payload)
    return content_type, data


def url_extension(ref: str, default: str) -> str:
    """File extension of a URL's path, without the dot."""
    if ref.startswith("data:"):
        return default
    suffix = Path(urlparse(ref).path).suffix.lstrip(".").lower()
    return suffix if suffix and suffix.isalnum() and len(suffix) <= 5 else default


class AssetFetcher:
    """Loads durable references: our own storage URLs and http(s) URLs."""

    def __init__(self, storage: StorageService, timeout: float = 120.0):
        self._storage = storage
        self._timeout = timeout

    async def fetch(self, ref: str) -> bytes:
        local_path = self._storage.local_path_for_url(ref)
        if local_path is not None:
            return await asyncio.to_thread(local_path.read_bytes)

        scheme = urlparse(ref).scheme
        if scheme in ("http", "https"):
            logger.debug(f"[FETCH] GET {ref}")
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                response = await client.get(ref)
                response.raise_for_status()
                return response.content

        raise ValueError(f"Unsupported media reference: {ref[:80]}")
