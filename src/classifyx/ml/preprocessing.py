"""Image decoding and preprocessing.

Raw upload bytes are decoded with Pillow, then reduced to the fixed-shape,
[0, 1]-normalized float32 tensor a classifier expects:

    decode -> channel extraction -> nearest-neighbor resize -> /255 -> batch dim
"""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

_CHANNEL_MODES: dict[int, str] = {1: "L", 3: "RGB"}
_UINT16_MAX = 65535


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes cannot be decoded as an image."""


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw image bytes into a fully loaded Pillow image.

    EXIF orientation is applied so the pixels match what a browser displays.

    Raises:
        ImageDecodeError: If the bytes are empty or not a supported image format.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image upload")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            return ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc


def to_data_url(image_bytes: bytes, content_type: str) -> str:
    """Encode upload bytes as a ``data:`` URL usable directly as an <img> source."""
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def _to_8bit(image: Image.Image) -> Image.Image:
    """Rescale 16-bit, 32-bit integer and float images to 8-bit luminance.

    Pillow's own conversion from these modes clips at 255 instead of rescaling.
    """
    if image.mode != "F" and not image.mode.startswith("I"):
        return image

    pixels = np.asarray(image)
    if image.mode == "F":
        values = pixels.astype(np.float64)
        # Floats in [0, 1] are normalized intensities; anything else is treated as 0-255.
        if values.size and values.max() <= 1.0:
            values = values * 255.0
    else:
        values = pixels.astype(np.float64)
        peak = values.max() if values.size else 0.0
        if peak > _UINT16_MAX:
            values = values / np.iinfo(np.int32).max * 255.0
        elif peak > 255 or image.mode.startswith("I;16"):
            values = values / _UINT16_MAX * 255.0
    return Image.fromarray(np.clip(np.rint(values), 0, 255).astype(np.uint8))


def preprocess(
    image: Image.Image | NDArray[np.uint8],
    target_width: int,
    target_height: int,
    channels: int,
) -> NDArray[np.float32]:
    """Convert an image into a model input tensor.

    Args:
        image: Decoded Pillow image, or an HxW / HxWxC uint8 array.
        target_width: Model input width.
        target_height: Model input height.
        channels: 1 for luminance, 3 for RGB.

    Returns:
        float32 array of shape (1, target_height, target_width, channels)
        with values in [0, 1].
    """
    mode = _CHANNEL_MODES.get(channels)
    if mode is None:
        raise ValueError(f"Unsupported channel count: {channels} (expected 1 or 3)")

    if isinstance(image, np.ndarray):
        image = Image.fromarray(image)

    converted = _to_8bit(image).convert(mode)
    resized = converted.resize((target_width, target_height), resample=Image.Resampling.NEAREST)

    pixels = np.asarray(resized, dtype=np.float32) / 255.0
    if pixels.ndim == 2:
        pixels = pixels[..., np.newaxis]
    return np.expand_dims(pixels, axis=0)
