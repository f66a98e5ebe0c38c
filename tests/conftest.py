"""Shared fixtures for the welcome card tests."""

import struct
import sys
import zlib
from io import BytesIO
from pathlib import Path

import httpx
import pytest
from PIL import Image

# Flat layout: make the top-level modules importable without installing
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

def encode_image(fmt: str, size=(64, 64)) -> bytes:
    """A small real image, so decoding in classify_payload succeeds."""
    img = Image.radial_gradient("L").resize(size).convert("RGB")
    buf = BytesIO()
    img.save(buf, fmt)
    return buf.getvalue()


def png_header(width: int, height: int) -> bytes:
    """A structurally valid PNG that claims `width` x `height` but carries no pixel data."""
    def chunk(tag: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


PNG_BYTES = encode_image("PNG")
JPEG_BYTES = encode_image("JPEG")
GIF_BYTES = encode_image("GIF")
HTML_BYTES = b"<!DOCTYPE html>\n<html><head><title>Login</title></head><body>nope</body></html>"


def cairo_available() -> bool:
    try:
        import cairosvg  # noqa: F401
    except (ImportError, OSError):
        return False
    return True


def route_handler(routes):
    """
    Build an httpx.MockTransport handler from {url: (status, body, content_type)}.

    Unknown URLs answer 404. A callable value is invoked with the request.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        spec = routes.get(str(request.url))
        if spec is None:
            return httpx.Response(404, content=b"not found")
        if callable(spec):
            return spec(request)
        status, body, content_type = spec
        headers = {"content-type": content_type} if content_type else {}
        return httpx.Response(status, content=body, headers=headers)
    return handler


@pytest.fixture
def mock_client():
    """Factory for an AsyncClient whose responses come from a route table."""
    def make(routes):
        return httpx.AsyncClient(transport=httpx.MockTransport(route_handler(routes)))
    return make
