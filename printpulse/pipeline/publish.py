"""
Publish boundary — the final side effect of the pipeline.

SupabasePublisher uploads the design and mockups to a Storage bucket and
upserts one listings row per project epoch. Uploads and the row are both
upserts, so publishing the same project twice converges to the same state.

DryRunPublisher only logs; it is used when Supabase is not configured.
"""

import base64
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from supabase import Client, create_client

from .. import config
from ..errors import PublishError
from .models import GeneratedImage, PublishPayload, PublishReceipt

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Publisher(Protocol):
    async def publish(self, payload: PublishPayload) -> PublishReceipt:
        ...


class SupabasePublisher:
    def __init__(
        self,
        url: str = config.SUPABASE_URL,
        service_key: str = config.SUPABASE_SERVICE_ROLE_KEY,
        table: str = config.SUPABASE_LISTINGS_TABLE,
        bucket: str = config.SUPABASE_ASSET_BUCKET,
        client: Optional[Client] = None,
    ):
        self.url = url
        self.service_key = service_key
        self.table = table
        self.bucket = bucket
        self._client = client

    def _get_client(self) -> Client:
        """Lazy-init Supabase client using the service role key."""
        if self._client is None:
            if not self.url or not self.service_key:
                raise PublishError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self.url, self.service_key)
        return self._client

    def _upload(self, sb: Client, path: str, image: GeneratedImage) -> str:
        storage = sb.storage.from_(self.bucket)
        storage.upload(
            path,
            base64.b64decode(image.raw_payload),
            {"content-type": image.mime_type, "upsert": "true"},
        )
        return storage.get_public_url(path)

    async def publish(self, payload: PublishPayload) -> PublishReceipt:
        sb = self._get_client()
        project_id = payload.project_id

        try:
            ext = MIME_EXTENSIONS.get(payload.design.mime_type, ".png")
            design_url = self._upload(sb, f"{project_id}/design{ext}", payload.design)

            mockup_urls = []
            for i, mockup in enumerate(payload.mockups):
                ext = MIME_EXTENSIONS.get(mockup.mime_type, ".png")
                mockup_urls.append(self._upload(sb, f"{project_id}/mockup_{i:02d}{ext}", mockup))

            result = sb.table(self.table).upsert({
                "project_id": project_id,
                "title": payload.listing.title,
                "description": payload.listing.description,
                "tags": payload.listing.tags,
                "design_url": design_url,
                "mockup_urls": mockup_urls,
                "video_url": payload.video_url,
                "published_at": _now_iso(),
            }, on_conflict="project_id").execute()
        except Exception as e:
            logger.error(f"[{project_id}] Publish failed: {e}", exc_info=True)
            raise PublishError(f"Publish failed: {e}", {"project_id": project_id}) from e

        rows = result.data or []
        listing_ref = str(rows[0].get("id", project_id)) if rows else project_id
        logger.info(f"[{project_id}] Published listing {listing_ref} with {len(mockup_urls)} mockup(s)")

        return PublishReceipt(
            project_id=project_id,
            published_at=_now_iso(),
            asset_urls=[design_url, *mockup_urls],
            listing_ref=listing_ref,
        )


class DryRunPublisher:
    """Logs the listing instead of publishing it."""

    def __init__(self):
        self.receipts: list[PublishReceipt] = []

    async def publish(self, payload: PublishPayload) -> PublishReceipt:
        logger.info(
            f"[{payload.project_id}] Dry-run publish: '{payload.listing.title}' "
            f"({len(payload.listing.tags)} tags, {len(payload.mockups)} mockups, "
            f"video={'yes' if payload.video_url else 'no'})"
        )
        receipt = PublishReceipt(
            project_id=payload.project_id,
            published_at=_now_iso(),
            listing_ref=f"dry-run:{payload.project_id}",
        )
        self.receipts.append(receipt)
        return receipt


def build_publisher() -> Publisher:
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        logger.info(f"Publishing to Supabase table '{config.SUPABASE_LISTINGS_TABLE}'")
        return SupabasePublisher()
    logger.info("Supabase not configured; publish runs as a dry run")
    return DryRunPublisher()
