"""Download trigger: resolve a Nyaa page to a magnet link and hand it off."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from emulbot.agent.tools.base import Tool, ToolResult
from emulbot.errors import TransportError, ValidationError
from emulbot.utils.helpers import retry_transient

SUPPORTED_HOSTS = {"nyaa.si", "sukebei.nyaa.si"}
_VIEW_PATH_RE = re.compile(r"^/view/(\d+)/?$")
USER_AGENT = "Mozilla/5.0 (compatible; emulbot/0.1)"


class JobInitiator(Protocol):
    """Starts a download job without waiting for it."""

    async def start(self, job_id: str, magnet_url: str) -> None: ...


class WatchDirJobInitiator:
    """Drop ``<id>.magnet`` into a directory a torrent client watches."""

    def __init__(self, watch_dir: Path):
        self.watch_dir = Path(watch_dir).expanduser()

    async def start(self, job_id: str, magnet_url: str) -> None:
        def _write() -> Path:
            self.watch_dir.mkdir(parents=True, exist_ok=True)
            target = self.watch_dir / f"{job_id}.magnet"
            tmp = target.with_suffix(".magnet.part")
            tmp.write_text(magnet_url + "\n", encoding="utf-8")
            tmp.replace(target)
            return target

        path = await asyncio.to_thread(_write)
        logger.info(f"Queued download {job_id} at {path}")


def parse_view_url(url: str) -> str:
    """Return the torrent id for a supported view page, or raise ValidationError."""
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Unsupported URL scheme: {url!r}")
    host = (parsed.hostname or "").lower()
    if host not in SUPPORTED_HOSTS:
        raise ValidationError(f"Unsupported download source: {host or url!r} (only nyaa.si view pages)")
    match = _VIEW_PATH_RE.match(parsed.path)
    if not match:
        raise ValidationError(f"Not a Nyaa view page: {url!r} (expected https://nyaa.si/view/<id>)")
    return match.group(1)


def extract_magnet_url(html: str) -> str:
    """Find the first magnet link on a Nyaa view page."""
    soup = BeautifulSoup(html, "html.parser")
    anchor = soup.select_one('a[href^="magnet:?"]')
    if anchor is None:
        raise ValidationError("Could not find a magnet link on the page")
    href = anchor.get("href")
    if not href:
        raise ValidationError("Magnet link tag has no href")
    return str(href)


class DownloadTorrentTool(Tool):
    """Start a torrent download from a Nyaa page; returns as soon as it is queued."""

    def __init__(
        self,
        initiator: JobInitiator,
        fetch_timeout: float = 15.0,
        retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.initiator = initiator
        self.fetch_timeout = fetch_timeout
        self.retries = retries
        self._transport = transport

    @property
    def name(self) -> str:
        return "download_torrent"

    @property
    def description(self) -> str:
        return (
            "Downloads a torrent file from a Nyaa.si URL. "
            "Extracts the magnet link and initiates the download."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "nyaa_url": {
                    "type": "string",
                    "description": "The full URL of the Nyaa.si torrent page (e.g., 'https://nyaa.si/view/123456').",
                },
            },
            "required": ["nyaa_url"],
        }

    async def execute(self, nyaa_url: str, **kwargs: Any) -> ToolResult:
        job_id = parse_view_url(nyaa_url)
        html = await retry_transient(
            lambda: self._fetch_page(nyaa_url),
            attempts=self.retries + 1,
            timeout=self.fetch_timeout,
            label=f"fetch {nyaa_url}",
        )
        magnet = extract_magnet_url(html)
        logger.info(f"Extracted magnet link for {nyaa_url}")
        await self.initiator.start(job_id, magnet)
        return ToolResult.success(
            f"Okay, I found the magnet link for {nyaa_url} and started the download.",
            payload={"job_id": job_id},
        )

    async def _fetch_page(self, url: str) -> str:
        async with httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            timeout=self.fetch_timeout,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            response = await client.get(url)
        if response.status_code >= 500:
            raise TransportError(f"{url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"{url} returned HTTP {response.status_code}")
        return response.text
