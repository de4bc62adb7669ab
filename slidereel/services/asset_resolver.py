"""
Asset resolution: every media reference handed to a renderer must be a
durable URL the renderer can fetch on its own.

- ``data:`` URLs (payloads captured in the client) are decoded and uploaded
- ``blob:`` URLs only exist inside the browser that created them and are rejected
- root-relative refs (``/music/...``) are absolutized against the public base URL
- absolute http(s) URLs pass through

Assets are processed strictly one at a time. Uploads are not parallelized so
the number of open upload connections and buffered payloads stays at one.
"""

import asyncio
import logging
from dataclasses import replace
from urllib.parse import urlparse

from slidereel.exceptions import AssetResolutionError
from slidereel.render.timeline import MusicTrack, SlideSegment
from slidereel.services.asset_fetcher import parse_data_url
from slidereel.services.storage_service import (
    StorageService,
    extension_for_content_type,
    generate_storage_key,
)

logger = logging.getLogger(__name__)

SEGMENT_FIELDS = ("visual_ref", "narration_ref")


def is_ephemeral(ref: str) -> bool:
    return ref.startswith(("data:", "blob:"))


class AssetResolver:
    def __init__(self, storage: StorageService, public_base_url: str):
        self._storage = storage
        self._public_base_url = public_base_url.rstrip("/")

    async def resolve(
        self,
        segments: list[SlideSegment],
        music: MusicTrack | None = None,
    ) -> tuple[list[SlideSegment], MusicTrack | None]:
        """Return copies of ``segments``/``music`` with every ref made durable.

        Raises:
            AssetResolutionError: naming the first segment/field that failed
        """
        resolved: list[SlideSegment] = []
        uploads = 0

        for index, segment in enumerate(segments):
            changes: dict[str, str] = {}
            for field_name in SEGMENT_FIELDS:
                ref = getattr(segment, field_name)
                if not ref:
                    continue
                durable = await self._resolve_ref(ref, index, field_name)
                if durable != ref:
                    changes[field_name] = durable
                    uploads += is_ephemeral(ref)
            resolved.append(replace(segment, **changes) if changes else segment)

        resolved_music = music
        if music is not None and music.ref:
            durable = await self._resolve_ref(music.ref, None, "music.ref")
            resolved_music = replace(music, ref=durable)
            uploads += is_ephemeral(music.ref)

        logger.info(f"[ASSETS] Resolved {len(segments)} slides ({uploads} uploads)")
        return resolved, resolved_music

    async def _resolve_ref(self, ref: str, index: int | None, field_name: str) -> str:
        if ref.startswith("blob:"):
            raise AssetResolutionError(
                index, field_name, "blob: URLs are only valid inside the browser that created them"
            )

        if ref.startswith("data:"):
            try:
                content_type, data = parse_data_url(ref)
            except ValueError as e:
                raise AssetResolutionError(index, field_name, str(e)) from e
            if not data:
                raise AssetResolutionError(index, field_name, "payload is empty")

            storage_key = generate_storage_key(extension_for_content_type(content_type))
            try:
                url = await asyncio.to_thread(
                    self._storage.upload_bytes, storage_key, data, content_type
                )
            except Exception as e:
                raise AssetResolutionError(index, field_name, f"upload failed: {e}") from e
            logger.debug(f"[ASSETS] Uploaded {field_name} ({len(data)} bytes) -> {url}")
            return url

        if ref.startswith("/") and not ref.startswith("//"):
            return f"{self._public_base_url}{ref}"

        if urlparse(ref).scheme in ("http", "https"):
            return ref

        raise AssetResolutionError(index, field_name, f"unsupported reference {ref[:80]!r}")
