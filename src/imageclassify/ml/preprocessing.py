"""Image preprocessing pipeline.

Decodes any supported input into an RGB ``PIL.Image``, crops it to the
model's declared input size and lays the pixels out as a ``(1, 3, H, W)``
float32 tensor. Pixel values stay in the raw 0-255 range; any normalization
lives in the model graph.
"""

from __future__ import annotations

import io
import os
from typing import IO, TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

ImageSource = bytes | bytearray | memoryview | str | os.PathLike[str] | IO[bytes] | Image.Image


class ImageDecodeError(ValueError):
    """Raised when input cannot be decoded into an image."""


def load_image(source: ImageSource, max_pixels: int | None = None) -> Image.Image:
    """Decode ``source`` into an RGB image.

    Args:
        source: Raw bytes, a binary stream, a filesystem path, or an
            already-decoded ``PIL.Image.Image``.
        max_pixels: Reject images with more pixels than this.

    Raises:
        ImageDecodeError: If the data is not a decodable image or exceeds ``max_pixels``.
        FileNotFoundError: If a path does not exist.
        TypeError: If ``source`` is not a supported type.
    """
    if isinstance(source, Image.Image):
        image = source
    else:
        image = _decode(source)

    if max_pixels is not None and image.width * image.height > max_pixels:
        raise ImageDecodeError(f"Image of {image.width}x{image.height} exceeds the {max_pixels} pixel limit")

    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def _decode(source: ImageSource) -> Image.Image:
    if isinstance(source, (bytes, bytearray, memoryview)):
        fp: str | os.PathLike[str] | IO[bytes] = io.BytesIO(source)
    elif isinstance(source, (str, os.PathLike)):
        fp = source
    elif hasattr(source, "read"):
        fp = source
    else:
        raise TypeError(f"Unsupported image source: {type(source).__name__}")

    try:
        image = Image.open(fp)
        image.load()
    except FileNotFoundError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc
    return image


def fit_to_input(image: Image.Image, height: int, width: int) -> Image.Image:
    """Resize and center-crop to exactly ``height`` x ``width``.

    Aspect ratio is kept while scaling; the overflow is cropped rather than
    padded. Returns a new image.
    """
    if image.size == (width, height):
        return image
    return ImageOps.fit(image, (width, height), method=Image.Resampling.BICUBIC)


def to_tensor(image: Image.Image) -> NDArray[np.float32]:
    """Convert an RGB image into a ``(1, 3, H, W)`` float32 tensor."""
    pixels = np.asarray(image, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis])
