"""
Image Sources
Decoded image handles and loading from URLs, data URLs and local files.
"""

import asyncio
import base64
import io
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union
from urllib.parse import unquote, urlparse

import cv2
import numpy as np
import requests
from PIL import Image

from .errors import BadRequestError


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


@dataclass
class LoadedImage:
    """A decoded image together with the URL it was loaded from"""
    image: Image.Image
    url: str = ""

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


ImageSource = Union[LoadedImage, Image.Image, np.ndarray, bytes, str, Path]


def image_url(source: Any) -> str:
    """Best-effort URL for an image handle, used for persisted pair records."""
    if isinstance(source, LoadedImage):
        return source.url
    if isinstance(source, (str, Path)):
        return str(source)
    return getattr(source, 'filename', '') or ''


def require_image_pair(images: Any, purpose: str) -> Sequence:
    """Check that images is a sequence of exactly two handles."""
    if not isinstance(images, Sequence) or isinstance(images, (str, bytes)):
        raise BadRequestError(f"Two images are required for {purpose}, got {type(images).__name__}")
    if len(images) != 2:
        raise BadRequestError(f"Two images are required for {purpose}, got {len(images)}")
    return images


def decode_image(source: ImageSource) -> Image.Image:
    """
    Decode an image handle into an RGB PIL Image.

    Args:
        source: LoadedImage, PIL Image, HxWx3 uint8 RGB array, encoded bytes,
            or a path on disk

    Returns:
        RGB PIL Image
    """
    if isinstance(source, LoadedImage):
        source = source.image

    if isinstance(source, Image.Image):
        return source.convert('RGB')

    if isinstance(source, np.ndarray):
        if source.ndim == 2:
            source = np.stack([source] * 3, axis=-1)
        if source.ndim != 3 or source.shape[2] not in (3, 4):
            raise ValueError(f"Unsupported array shape: {source.shape}")
        return Image.fromarray(source.astype(np.uint8)).convert('RGB')

    if isinstance(source, (bytes, bytearray)):
        image = Image.open(io.BytesIO(source))
        image.load()
        return image.convert('RGB')

    if isinstance(source, (str, Path)):
        return _load_file(str(source))

    raise TypeError(f"Cannot decode image from {type(source).__name__}")


def _load_file(image_path: str) -> Image.Image:
    """Load and convert image to RGB PIL Image."""
    try:
        # Try PIL first
        image = Image.open(image_path)
        image.load()
        return image.convert('RGB')
    except Exception:
        # Fallback to OpenCV
        image = cv2.imread(image_path)
        if image is None:
            raise ValueError(f"Could not load image: {image_path}")

        # Convert BGR to RGB
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        return Image.fromarray(image)


def load_image(url: str) -> LoadedImage:
    """
    Load an image from an http(s) URL, a data URL, a file URL or a local path.

    Args:
        url: Location of the image

    Returns:
        LoadedImage keeping the original URL
    """
    if url.startswith('data:'):
        header, _, payload = url.partition(',')
        if ';base64' in header:
            raw = base64.b64decode(payload)
        else:
            raw = unquote(payload).encode('latin-1')
        return LoadedImage(image=decode_image(raw), url=url)

    parsed = urlparse(url)

    if parsed.scheme in ('http', 'https'):
        response = requests.get(url, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.debug(f"Fetched {len(response.content)} bytes from {url}")
        return LoadedImage(image=decode_image(response.content), url=url)

    if parsed.scheme == 'file':
        return LoadedImage(image=_load_file(unquote(parsed.path)), url=url)

    if not url:
        raise ValueError("Empty image URL")

    return LoadedImage(image=_load_file(url), url=url)


async def fetch_image(url: str) -> LoadedImage:
    """Load an image without blocking the event loop."""
    return await asyncio.to_thread(load_image, url)


def image_to_data_url(image: Image.Image, image_format: str = "PNG") -> str:
    """Encode an image as a base64 data URL (self-contained pair records)."""
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
    return f"data:image/{image_format.lower()};base64,{encoded}"


def record_url(source: Any) -> str:
    """URL that reloads the handle later; in-memory images are embedded as data URLs."""
    return image_url(source) or image_to_data_url(decode_image(source))
