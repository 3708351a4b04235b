"""Image fetch tool: download, decode, downscale and hand to the model."""

from __future__ import annotations

import asyncio
import base64
from collections import OrderedDict
from io import BytesIO
from typing import Any

import httpx
from loguru import logger
from PIL import Image, UnidentifiedImageError

from emulbot.agent.tools.base import ImageAttachment, Tool, ToolResult
from emulbot.errors import TransportError, ValidationError
from emulbot.utils.helpers import retry_transient

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


class ImageCache:
    """Small LRU of url -> ImageAttachment."""

    def __init__(self, size: int = 20):
        self.size = max(1, size)
        self._items: OrderedDict[str, ImageAttachment] = OrderedDict()

    def get(self, url: str) -> ImageAttachment | None:
        item = self._items.get(url)
        if item is not None:
            self._items.move_to_end(url)
        return item

    def put(self, url: str, item: ImageAttachment) -> None:
        self._items[url] = item
        self._items.move_to_end(url)
        while len(self._items) > self.size:
            self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


def prepare_image(data: bytes, mime_type: str, max_dimension: int) -> tuple[str, bytes]:
    """
    Decode and, if either side exceeds ``max_dimension``, downscale.

    Unscaled images keep their original bytes. Scaled JPEGs stay JPEG,
    everything else is re-encoded as PNG.
    """
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not decode image: {e}") from e

    try:
        if max(img.size) <= max_dimension:
            return mime_type, data
        logger.info(f"Scaling {img.size[0]}x{img.size[1]} image to fit {max_dimension}px")
        img.thumbnail((max_dimension, max_dimension))
        buf = BytesIO()
        if mime_type == "image/jpeg":
            img.convert("RGB").save(buf, format="JPEG", quality=90)
            return "image/jpeg", buf.getvalue()
        if img.mode not in ("RGB", "RGBA", "L", "LA"):
            img = img.convert("RGBA")
        img.save(buf, format="PNG")
        return "image/png", buf.getvalue()
    finally:
        img.close()


class FetchImageTool(Tool):
    """Fetch an image by URL so the model can look at it on the next turn."""

    def __init__(
        self,
        max_bytes: int = 4 * 1024 * 1024,
        fetch_timeout: float = 15.0,
        max_dimension: int = 1024,
        cache_size: int = 20,
        retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_bytes = max_bytes
        self.fetch_timeout = fetch_timeout
        self.max_dimension = max_dimension
        self.retries = retries
        self.cache = ImageCache(cache_size)
        self._transport = transport

    @property
    def name(self) -> str:
        return "fetch_and_prepare_image"

    @property
    def description(self) -> str:
        return (
            "Downloads an image from a URL, encodes it, and prepares it for the AI to process. "
            "Checks a cache first."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The full URL of the image file (e.g., ending in .jpg, .png, .webp).",
                },
            },
            "required": ["url"],
        }

    async def execute(self, url: str, **kwargs: Any) -> ToolResult:
        url = (url or "").strip()
        if not url.startswith(("http://", "https://")):
            raise ValidationError(f"Only http(s) image URLs are supported: {url!r}")

        cached = self.cache.get(url)
        if cached is not None:
            logger.info(f"Image cache hit: {url}")
            return self._result(cached, cached=True)

        logger.info(f"Image cache miss, fetching {url}")
        mime_type, data = await retry_transient(
            lambda: self._download(url),
            attempts=self.retries + 1,
            timeout=self.fetch_timeout,
            label=f"fetch {url}",
        )
        mime_type, data = await asyncio.to_thread(prepare_image, data, mime_type, self.max_dimension)
        attachment = ImageAttachment(mime_type=mime_type, data=base64.b64encode(data).decode("ascii"))
        self.cache.put(url, attachment)
        return self._result(attachment, cached=False)

    @staticmethod
    def _result(attachment: ImageAttachment, cached: bool) -> ToolResult:
        return ToolResult.success(
            "Image fetched successfully. Please refer to the provided image data.",
            payload={"mime_type": attachment.mime_type, "cached": cached},
            attachments=[attachment],
        )

    async def _download(self, url: str) -> tuple[str, bytes]:
        async with httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            timeout=self.fetch_timeout,
        ) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 500:
                    raise TransportError(f"Image URL returned HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise ValidationError(f"Image URL returned HTTP {response.status_code}")

                content_type = response.headers.get("content-type", "")
                mime_type = content_type.split(";", 1)[0].strip().lower()
                if mime_type not in ALLOWED_MIME_TYPES:
                    raise ValidationError(
                        f"Unsupported image Content-Type: {mime_type or 'unknown'}. "
                        f"Supported types are: {', '.join(ALLOWED_MIME_TYPES)}"
                    )

                length = response.headers.get("content-length")
                if length and length.isdigit() and int(length) > self.max_bytes:
                    raise ValidationError(self._too_large(int(length)))

                buf = bytearray()
                async for chunk in response.aiter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.max_bytes:
                        raise ValidationError(self._too_large(len(buf)))
        return mime_type, bytes(buf)

    def _too_large(self, size: int) -> str:
        return (
            f"Image size ({size / (1024 * 1024):.2f} MB) exceeds the limit of "
            f"{self.max_bytes / (1024 * 1024):.2f} MB"
        )
