"""Image fetching, decoding and PNG encoding.

Key functions:
- fetch_image(): Raw bytes for an http(s) URL, file:// URL or local path
- decode_image(): Bytes to an RGBA ImageBuffer
- encode_png(): ImageBuffer to lossless PNG bytes
- load_image(): fetch + decode
- ImageLoader: fetch + decode with injectable collaborators
"""

import asyncio
import base64
import io
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from urllib.parse import unquote, urlparse

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from crack_vision.clients.http import HttpImageClient, get_http_client
from crack_vision.models import ImageBuffer
from crack_vision.utils.job_errors import LoadError
from crack_vision.utils.log_utils import log_image_loaded

logger = logging.getLogger(__name__)

FetchFunc = Callable[[str], Awaitable[bytes]]
DecodeFunc = Callable[[bytes], ImageBuffer]


def _read_local_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise LoadError(str(path), f"Cannot read file ({e.strerror or type(e).__name__})") from e


async def fetch_image(source_ref: str, client: HttpImageClient | None = None) -> bytes:
    """Fetch the encoded bytes of an image.

    Args:
        source_ref: http(s) URL, file:// URL or filesystem path
        client: HTTP client to use (defaults to the module singleton)

    Returns:
        Encoded image bytes

    Raises:
        LoadError: If the source is unreachable or empty
    """
    if not source_ref:
        raise LoadError(None, "Image reference is empty")

    parsed = urlparse(source_ref)
    if parsed.scheme in ("http", "https"):
        return await (client or get_http_client()).fetch(source_ref)

    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif not parsed.scheme or len(parsed.scheme) == 1:
        # Plain paths, including Windows drive letters parsed as a scheme
        path = Path(source_ref)
    else:
        raise LoadError(source_ref, f"Unsupported image reference scheme '{parsed.scheme}'")

    data = await asyncio.to_thread(_read_local_file, path)
    if not data:
        raise LoadError(source_ref, "Image file is empty")
    return data


def decode_image(data: bytes, source_ref: str | None = None) -> ImageBuffer:
    """Decode image bytes to an RGBA ImageBuffer.

    EXIF orientation is applied so phone photographs come out upright.

    Args:
        data: Encoded image bytes (JPEG, PNG, WebP, ...)
        source_ref: Reference used in error messages

    Returns:
        ImageBuffer with RGBA pixels

    Raises:
        LoadError: If the bytes are empty or not a decodable image
    """
    if not data:
        raise LoadError(source_ref, "Image data is empty")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            rgba = img.convert("RGBA")
            pixels = np.array(rgba, dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise LoadError(source_ref, f"Failed to decode image ({e})") from e

    if pixels.size == 0:
        raise LoadError(source_ref, "Decoded image has no pixels")

    return ImageBuffer.from_array(pixels)


async def load_image(source_ref: str, *, client: HttpImageClient | None = None) -> ImageBuffer:
    """Fetch and decode one image (decoding runs off the event loop).

    Raises:
        LoadError: If the image cannot be fetched or decoded
    """
    data = await fetch_image(source_ref, client=client)
    return await asyncio.to_thread(decode_image, data, source_ref)


def encode_png(image: ImageBuffer) -> bytes:
    """Encode an ImageBuffer to PNG bytes (lossless, alpha kept)."""
    buffer = io.BytesIO()
    Image.fromarray(image.pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def to_data_url(image: ImageBuffer) -> str:
    """Encode an ImageBuffer as a data:image/png;base64 URL."""
    return "data:image/png;base64," + base64.b64encode(encode_png(image)).decode("ascii")


class ImageLoader:
    """Fetch and decode source images.

    Both collaborators are injectable: `fetch` maps a reference to raw bytes,
    `decode` maps bytes to an ImageBuffer. No caching happens at this layer.
    """

    def __init__(
        self,
        fetch: FetchFunc | None = None,
        decode: DecodeFunc | None = None,
    ) -> None:
        self._fetch = fetch or fetch_image
        self._decode = decode

    async def load(self, source_ref: str) -> ImageBuffer:
        """Load one image.

        Raises:
            LoadError: If the image cannot be fetched or decoded
        """
        start_time = time.time()
        try:
            data = await self._fetch(source_ref)
        except LoadError:
            raise
        except Exception as e:
            raise LoadError(source_ref, f"Fetch failed ({type(e).__name__}: {e})") from e
        if not data:
            raise LoadError(source_ref, "Image data is empty")

        if self._decode is not None:
            try:
                image = self._decode(data)
            except LoadError:
                raise
            except Exception as e:
                raise LoadError(source_ref, f"Failed to decode image ({e})") from e
        else:
            image = await asyncio.to_thread(decode_image, data, source_ref)

        log_image_loaded(
            logger,
            source_ref,
            image.width,
            image.height,
            size_bytes=len(data),
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return image

    async def load_pair(self, baseline_ref: str, current_ref: str) -> tuple[ImageBuffer, ImageBuffer]:
        """Load baseline and current concurrently."""
        baseline, current = await asyncio.gather(self.load(baseline_ref), self.load(current_ref))
        return baseline, current
