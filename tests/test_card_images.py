"""Tests for image sniffing and remote/local image resolution."""

import asyncio

import httpx
import pytest

from card_images import (
    CardImage,
    classify_payload,
    looks_like_html,
    resolve_card_images,
    resolve_image,
    sniff_image_type,
)
from conftest import GIF_BYTES, HTML_BYTES, JPEG_BYTES, PNG_BYTES, png_header


class TestSniffing:

    def test_known_signatures(self):
        assert sniff_image_type(PNG_BYTES) == "image/png"
        assert sniff_image_type(JPEG_BYTES) == "image/jpeg"
        assert sniff_image_type(b"GIF87a" + b"\x00" * 10) == "image/gif"
        assert sniff_image_type(b"GIF89a" + b"\x00" * 10) == "image/gif"
        assert sniff_image_type(b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 10) == "image/webp"

    def test_unknown_or_empty(self):
        assert sniff_image_type(b"") is None
        assert sniff_image_type(b"hello world") is None
        # RIFF container that is not WEBP (e.g. WAV)
        assert sniff_image_type(b"RIFF\x24\x00\x00\x00WAVEfmt ") is None
        assert sniff_image_type(b"\x89PN") is None

    def test_html_detection(self):
        assert looks_like_html(HTML_BYTES)
        assert looks_like_html(b"  \r\n<HTML lang='en'>")
        assert looks_like_html(b"\xef\xbb\xbf<!doctype html>")
        assert looks_like_html(b"<body>oops</body>")
        assert not looks_like_html(PNG_BYTES)
        assert not looks_like_html(b"<svg xmlns='http://www.w3.org/2000/svg'/>")


class TestClassifyPayload:

    def test_sniffed_type_used_when_declared_type_is_not_an_image(self):
        image = classify_payload(PNG_BYTES, "text/plain; charset=utf-8")
        assert image == CardImage(mime="image/png", data=PNG_BYTES)

    def test_declared_image_type_is_trusted(self):
        image = classify_payload(PNG_BYTES, "image/jpeg")
        assert image.mime == "image/jpeg"
        assert classify_payload(GIF_BYTES, None).mime == "image/gif"

    def test_declared_type_does_not_rescue_garbage(self):
        assert classify_payload(b"\x00\x01\x02 not really a jpeg", "image/jpeg") is None
        assert classify_payload(JPEG_BYTES[:12] + b"\x00" * 32, "image/jpeg") is None

    def test_truncated_image_rejected(self):
        assert classify_payload(PNG_BYTES[:len(PNG_BYTES) // 2], "image/png") is None
        assert classify_payload(JPEG_BYTES[:len(JPEG_BYTES) // 2], "image/jpeg") is None

    def test_huge_dimensions_rejected(self):
        """Header-only images that would expand to hundreds of megapixels."""
        assert classify_payload(png_header(8000, 8000), "image/png") is None
        assert classify_payload(png_header(20000, 20000), None) is None

    def test_image_jpg_alias(self):
        assert classify_payload(JPEG_BYTES, "image/jpg").mime == "image/jpeg"

    def test_html_rejected_even_with_image_header(self):
        assert classify_payload(HTML_BYTES, "image/png") is None

    def test_svg_is_not_trusted(self):
        assert classify_payload(b"<svg xmlns='http://www.w3.org/2000/svg'/>", "image/svg+xml") is None

    def test_unrecognized_bytes_without_image_header(self):
        assert classify_payload(b"plain text", "application/octet-stream") is None
        assert classify_payload(b"", "image/png") is None

    def test_data_uri(self):
        image = CardImage(mime="image/png", data=b"abc")
        assert image.data_uri == "data:image/png;base64,YWJj"


class TestResolveImage:

    @pytest.mark.asyncio
    async def test_png_with_wrong_content_type(self, mock_client, tmp_path):
        url = "https://cdn.example.com/bg"
        async with mock_client({url: (200, PNG_BYTES, "application/octet-stream")}) as client:
            image = await resolve_image(url, client, tmp_path)
        assert image is not None
        assert image.mime == "image/png"
        assert image.data == PNG_BYTES

    @pytest.mark.asyncio
    async def test_html_error_page_is_unavailable(self, mock_client, tmp_path):
        url = "https://imgur.example.com/a.png"
        async with mock_client({url: (200, HTML_BYTES, "text/html")}) as client:
            assert await resolve_image(url, client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_non_2xx_is_unavailable(self, mock_client, tmp_path):
        url = "https://cdn.example.com/gone.png"
        async with mock_client({url: (403, PNG_BYTES, "image/png")}) as client:
            assert await resolve_image(url, client, tmp_path) is None
        async with mock_client({}) as client:
            assert await resolve_image(url, client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self, mock_client, tmp_path):
        url = "https://down.example.com/a.png"

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client({url: refuse}) as client:
            assert await resolve_image(url, client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, mock_client, tmp_path):
        url = "https://slow.example.com/a.png"

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with mock_client({url: slow}) as client:
            assert await resolve_image(url, client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_empty_and_oversized_bodies(self, mock_client, tmp_path):
        empty = "https://cdn.example.com/empty.png"
        big = "https://cdn.example.com/big.png"
        routes = {empty: (200, b"", "image/png"), big: (200, PNG_BYTES, "image/png")}
        async with mock_client(routes) as client:
            assert await resolve_image(empty, client, tmp_path) is None
            assert await resolve_image(big, client, tmp_path, max_bytes=10) is None

    @pytest.mark.asyncio
    async def test_missing_or_unsupported_source(self, mock_client, tmp_path):
        async with mock_client({}) as client:
            assert await resolve_image(None, client, tmp_path) is None
            assert await resolve_image("", client, tmp_path) is None
            assert await resolve_image("ftp://files.example.com/a.png", client, tmp_path) is None
            assert await resolve_image("cards/bg.png", client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_local_asset(self, mock_client, tmp_path):
        root = tmp_path / "public"
        (root / "cards").mkdir(parents=True)
        (root / "cards" / "default.png").write_bytes(PNG_BYTES)
        (tmp_path / "secret.png").write_bytes(PNG_BYTES)

        async with mock_client({}) as client:
            image = await resolve_image("/cards/default.png", client, root)
            assert image is not None and image.mime == "image/png"

            assert await resolve_image("/cards/missing.png", client, root) is None
            assert await resolve_image("/../secret.png", client, root) is None

    @pytest.mark.asyncio
    async def test_local_html_file_rejected(self, mock_client, tmp_path):
        (tmp_path / "index.png").write_bytes(HTML_BYTES)
        async with mock_client({}) as client:
            assert await resolve_image("/index.png", client, tmp_path) is None

    @pytest.mark.asyncio
    async def test_stream_stops_reading_past_cap(self, mock_client, tmp_path):
        url = "https://cdn.example.com/huge.png"
        pulled = []

        async def body():
            for _ in range(1000):
                pulled.append(1)
                yield b"\x00" * 1024

        def huge(request):
            return httpx.Response(200, content=body(), headers={"content-type": "image/png"})

        async with mock_client({url: huge}) as client:
            assert await resolve_image(url, client, tmp_path, max_bytes=4096) is None
        assert len(pulled) <= 5

    @pytest.mark.asyncio
    async def test_declared_length_over_cap(self, mock_client, tmp_path):
        url = "https://cdn.example.com/big.png"

        def big(request):
            return httpx.Response(
                200, content=PNG_BYTES, headers={"content-type": "image/png", "content-length": "999999999"}
            )

        async with mock_client({url: big}) as client:
            assert await resolve_image(url, client, tmp_path, max_bytes=1024 * 1024) is None

    @pytest.mark.asyncio
    async def test_slow_drip_hits_overall_deadline(self, mock_client, tmp_path):
        url = "https://slow.example.com/drip.png"

        async def body():
            yield PNG_BYTES[:16]
            for b in PNG_BYTES[16:]:
                await asyncio.sleep(0.05)
                yield bytes([b])

        def drip(request):
            return httpx.Response(200, content=body(), headers={"content-type": "image/png"})

        async with mock_client({url: drip}) as client:
            assert await resolve_image(url, client, tmp_path, timeout=0.2) is None


@pytest.mark.asyncio
async def test_slots_degrade_independently(mock_client, tmp_path):
    bg = "https://cdn.example.com/bg.jpg"
    avatar = "https://cdn.example.com/avatar.png"
    icon = "https://cdn.example.com/icon.png"
    routes = {
        bg: (200, HTML_BYTES, "text/html"),
        avatar: (200, PNG_BYTES, "image/png"),
        icon: (500, b"", None),
    }
    async with mock_client(routes) as client:
        background, av, server_icon = await resolve_card_images(
            client, tmp_path, background=bg, avatar=avatar, server_icon=icon
        )
    assert background is None
    assert av is not None and av.mime == "image/png"
    assert server_icon is None


@pytest.mark.asyncio
async def test_slots_fetch_concurrently(mock_client, tmp_path):
    """Each origin answers only once all three requests are in flight."""
    urls = [
        "https://cdn.example.com/bg.png",
        "https://cdn.example.com/avatar.png",
        "https://cdn.example.com/icon.png",
    ]
    arrived = []
    all_in = asyncio.Event()

    async def wait_for_others(request):
        arrived.append(str(request.url))
        if len(arrived) == len(urls):
            all_in.set()
        await asyncio.wait_for(all_in.wait(), 1.0)
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    async with mock_client({u: wait_for_others for u in urls}) as client:
        slots = await resolve_card_images(client, tmp_path, *urls)

    assert sorted(arrived) == sorted(urls)
    assert all(s is not None and s.mime == "image/png" for s in slots)
