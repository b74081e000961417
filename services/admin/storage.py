import logging
from typing import Optional
from urllib.parse import quote

import httpx

from shared.utils import settings, ObjectStoreException

logger = logging.getLogger(__name__)

PRODUCT_IMAGES_BUCKET = "product-images"
CATEGORY_IMAGES_BUCKET = "category-images"
BUCKETS = {PRODUCT_IMAGES_BUCKET, CATEGORY_IMAGES_BUCKET}


class ObjectStore:
    """Storage REST client: upload bytes under bucket/key, hand back a public URL."""

    def __init__(self, base_url: str, api_key: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "ObjectStore":
        return cls(settings.OBJECT_STORE_URL, settings.OBJECT_STORE_KEY)

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(key)}"

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": content_type,
            "x-upsert": "false",
        }
        async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport, timeout=30.0) as client:
            try:
                response = await client.post(f"/storage/v1/object/{bucket}/{quote(key)}", content=data, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ObjectStoreException(f"Upload rejected: {e.response.status_code}")
            except httpx.RequestError:
                raise ObjectStoreException()

        logger.info(f"Uploaded {bucket}/{key}")
        return self.public_url(bucket, key)
