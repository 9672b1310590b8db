"""Tests for album-art palette extraction"""

from io import BytesIO

from PIL import Image

from tests.conftest import make_artwork
from visualizer.palette import MAX_ARTWORK_BYTES, extract_palette, fetch_palette


class TestExtractPalette:
    def test_gradient_image(self):
        palette = extract_palette(make_artwork(), color_count=5)
        assert palette is not None
        assert 1 <= len(palette.colors) <= 5
        assert palette.dominant == palette.colors[0]
        for color in palette.colors:
            assert len(color) == 3
            assert all(0 <= v <= 255 for v in color)

    def test_non_rgb_image_is_converted(self):
        image = Image.new("RGBA", (32, 32))
        for x in range(32):
            for y in range(32):
                image.putpixel((x, y), (x * 8, 200 - y * 4, 50, 255))
        buf = BytesIO()
        image.save(buf, "PNG")
        assert extract_palette(buf.getvalue(), color_count=3) is not None

    def test_garbage_bytes(self):
        assert extract_palette(b"definitely not an image") is None

    def test_empty_bytes(self):
        assert extract_palette(b"") is None

    def test_to_list(self):
        palette = extract_palette(make_artwork(), color_count=3)
        assert palette.to_list() == [list(c) for c in palette.colors]


class TestFetchPalette:
    async def test_downloads_and_extracts(self, http_session, spotify_server):
        url = str(spotify_server.make_url("/art.png"))
        palette = await fetch_palette(http_session, url, color_count=4)
        assert palette is not None
        assert len(palette.colors) <= 4

    async def test_http_error(self, http_session, spotify_server):
        url = str(spotify_server.make_url("/missing.png"))
        assert await fetch_palette(http_session, url) is None

    async def test_oversized_artwork(self, http_session, spotify_server, fake_spotify):
        fake_spotify.artwork = b"\0" * (MAX_ARTWORK_BYTES + 1)
        url = str(spotify_server.make_url("/art.png"))
        assert await fetch_palette(http_session, url) is None

    async def test_streamed_artwork_without_length(self, http_session, spotify_server):
        url = str(spotify_server.make_url("/art-stream.png"))
        assert await fetch_palette(http_session, url, color_count=3) is not None

    async def test_oversized_stream_stops_at_cap(
            self, http_session, spotify_server, fake_spotify, monkeypatch):
        fake_spotify.artwork = b"\0" * (MAX_ARTWORK_BYTES * 2)
        extracted = []
        monkeypatch.setattr("visualizer.palette.extract_palette",
                            lambda data, n: extracted.append(len(data)))

        url = str(spotify_server.make_url("/art-stream.png"))
        assert await fetch_palette(http_session, url) is None
        assert extracted == []
