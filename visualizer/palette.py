"""
Album-art colour extraction.

extract_palette() is pure: bytes in, Palette (or None) out.  fetch_palette()
downloads the artwork and runs the extraction in a thread pool so the event
loop never blocks on image decoding.  Both are best effort: a failure only
means the snapshot goes out without colours.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from io import BytesIO

import aiohttp
from colorthief import ColorThief
from PIL import Image

log = logging.getLogger(__name__)

DEFAULT_COLOR_COUNT = 5
MAX_ARTWORK_BYTES = 5 * 1024 * 1024
QUALITY = 10  # colorthief sampling step; 1 = every pixel

# Shared thread pool for CPU-bound image processing
_palette_executor = ThreadPoolExecutor(max_workers=2)


@dataclass(frozen=True)
class Palette:
    dominant: tuple
    colors: tuple

    def to_list(self) -> list:
        return [list(c) for c in self.colors]


def extract_palette(image_bytes: bytes, color_count: int = DEFAULT_COLOR_COUNT) -> Palette | None:
    """Compute the dominant colour and a *color_count* palette from image bytes.

    Returns None on any decode or quantisation failure.
    """
    if not image_bytes:
        return None
    try:
        image = Image.open(BytesIO(image_bytes))
        if image.mode != "RGB":
            image = image.convert("RGB")
        buf = BytesIO()
        image.save(buf, "PNG")
        buf.seek(0)

        thief = ColorThief(buf)
        colors = thief.get_palette(color_count=max(color_count, 2), quality=QUALITY)
        if not colors:
            return None
        colors = [tuple(int(v) for v in c) for c in colors[:color_count]]
        return Palette(dominant=colors[0], colors=tuple(colors))
    except Exception as e:
        log.warning("Error extracting palette: %s", e)
        return None


async def fetch_palette(session: aiohttp.ClientSession, url: str,
                        color_count: int = DEFAULT_COLOR_COUNT) -> Palette | None:
    """Download album art from *url* and extract its palette.

    Never buffers more than MAX_ARTWORK_BYTES + 1 bytes of the body.
    """
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            resp.raise_for_status()
            if resp.content_length is not None and resp.content_length > MAX_ARTWORK_BYTES:
                log.warning("Artwork too large (%d bytes), skipping palette",
                            resp.content_length)
                return None

            chunks = []
            size = 0
            async for chunk in resp.content.iter_chunked(64 * 1024):
                size += len(chunk)
                if size > MAX_ARTWORK_BYTES:
                    log.warning("Artwork exceeds %d bytes, skipping palette",
                                MAX_ARTWORK_BYTES)
                    return None
                chunks.append(chunk)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log.warning("Error fetching artwork %s: %s", url, e)
        return None

    image_bytes = b"".join(chunks)
    if not image_bytes:
        log.warning("Artwork URL returned 0 bytes")
        return None

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        _palette_executor, extract_palette, image_bytes, color_count)
