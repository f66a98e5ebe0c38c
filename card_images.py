import asyncio
import base64
import logging
import struct
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx
from PIL import Image

log = logging.getLogger(__name__)

# Some hosts (imgur, CDNs behind bot protection) refuse clients without a browser UA.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
}

# (offset, signature, media type) checked in order
SIGNATURES = (
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (8, b"WEBP", "image/webp"),
)

HTML_PREFIXES = (b"<!doctype html", b"<html", b"<head", b"<body")

RASTER_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}

# Anything bigger is scaled down to at most 1200x420 anyway
MAX_IMAGE_PIXELS = 40_000_000

DEFAULT_MAX_BYTES = 8 * 1024 * 1024


@dataclass(frozen=True)
class CardImage:
    """A fetched image whose bytes decoded cleanly as a raster image."""
    mime: str
    data: bytes

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.data).decode('ascii')}"


def sniff_image_type(data: bytes) -> Optional[str]:
    """Return the media type implied by the leading bytes, or None."""
    if not data:
        return None
    for offset, sig, mime in SIGNATURES:
        if data[offset:offset + len(sig)] == sig:
            if mime == "image/webp" and not data.startswith(b"RIFF"):
                continue
            return mime
    return None


def looks_like_html(data: bytes) -> bool:
    head = data[:512].lstrip(b"\xef\xbb\xbf").lstrip().lower()
    return head.startswith(HTML_PREFIXES)


def _declared_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime == "image/jpg":
        mime = "image/jpeg"
    return mime if mime in RASTER_TYPES else None


def decodes_cleanly(data: bytes) -> bool:
    """Fully decode with Pillow, the same decoder the rasterizer uses for embedded images."""
    try:
        with Image.open(BytesIO(data)) as img:
            if img.width * img.height > MAX_IMAGE_PIXELS:
                return False
            img.load()
    except (OSError, SyntaxError, ValueError, EOFError, struct.error, Image.DecompressionBombError):
        return False
    return True


def classify_payload(data: bytes, content_type: Optional[str] = None) -> Optional[CardImage]:
    """
    Decide whether a response body is a usable image.

    HTML bodies are always rejected, even behind an image/* header. Otherwise a
    raster image/* declared type wins and the sniffed type is the fallback.
    Either way the bytes must decode, so a mislabeled or truncated body never
    reaches the rasterizer.
    """
    if not data or looks_like_html(data):
        return None
    mime = _declared_type(content_type) or sniff_image_type(data)
    if not mime or not decodes_cleanly(data):
        return None
    return CardImage(mime=mime, data=data)


def _read_local(asset_root: Path, source: str) -> Optional[bytes]:
    root = asset_root.resolve()
    path = (root / source.lstrip("/")).resolve()
    if root != path and root not in path.parents:
        log.warning("card asset outside root: %s", source)
        return None
    if not path.is_file():
        return None
    return path.read_bytes()


async def _fetch_remote(client: httpx.AsyncClient, url: str, max_bytes: int) -> Tuple[Optional[bytes], Optional[str]]:
    async with client.stream("GET", url) as r:
        if not r.is_success:
            log.info("card image %s returned %s", url, r.status_code)
            return None, None

        declared = r.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_bytes:
            log.info("card image %s too large (Content-Length %s)", url, declared)
            return None, None

        chunks = []
        size = 0
        async for chunk in r.aiter_bytes():
            size += len(chunk)
            if size > max_bytes:
                log.info("card image %s too large (over %d bytes)", url, max_bytes)
                return None, None
            chunks.append(chunk)
        return b"".join(chunks), r.headers.get("content-type")


async def resolve_image(
    source: Optional[str],
    client: httpx.AsyncClient,
    asset_root: Path,
    max_bytes: int = DEFAULT_MAX_BYTES,
    timeout: Optional[float] = None,
) -> Optional[CardImage]:
    """
    Resolve one image slot to a verified payload, or None when unavailable.

    `timeout` bounds the whole fetch, not each read. Never raises: network
    errors, deadlines, bad statuses, empty or oversized bodies, HTML error
    pages and undecodable bytes all come back as None.
    """
    if not source:
        return None

    try:
        if source.startswith("/"):
            data = await asyncio.to_thread(_read_local, asset_root, source)
            content_type = None
        else:
            if urlparse(source).scheme not in ("http", "https"):
                return None
            data, content_type = await asyncio.wait_for(
                _fetch_remote(client, source, max_bytes), timeout
            )
    except asyncio.TimeoutError:
        log.warning("card image fetch timed out for %s", source)
        return None
    except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as e:
        log.warning("card image fetch failed for %s: %s", source, e)
        return None

    if not data:
        return None
    image = await asyncio.to_thread(classify_payload, data, content_type)
    if image is None:
        log.info("card image rejected (not a decodable image): %s", source)
    return image


def image_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=BROWSER_HEADERS)


async def resolve_card_images(
    client: httpx.AsyncClient,
    asset_root: Path,
    background: Optional[str],
    avatar: Optional[str],
    server_icon: Optional[str],
    max_bytes: int = DEFAULT_MAX_BYTES,
    timeout: Optional[float] = None,
) -> Tuple[Optional[CardImage], Optional[CardImage], Optional[CardImage]]:
    """Fetch background, avatar and server icon concurrently."""
    bg, av, icon = await asyncio.gather(
        resolve_image(background, client, asset_root, max_bytes, timeout),
        resolve_image(avatar, client, asset_root, max_bytes, timeout),
        resolve_image(server_icon, client, asset_root, max_bytes, timeout),
    )
    return bg, av, icon
