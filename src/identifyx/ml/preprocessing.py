"""Image preprocessing: decoding uploads and preparing classifier input."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    EXIF orientation is applied so photos taken on phones come out upright.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ValueError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ValueError("Empty image")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ValueError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc
    return np.asarray(rgb, dtype=np.uint8)


def preprocess_for_classification(
    image: NDArray[np.uint8],
    *,
    input_size: int,
    resize_size: int,
    mean: tuple[float, float, float],
    std: tuple[float, float, float],
) -> NDArray[np.float32]:
    """Prepare an image for a classifier.

    Resizes the shortest edge to ``resize_size``, center crops to
    ``input_size``, scales to [0, 1] and normalizes per channel.

    Returns:
        Float32 tensor of shape (1, 3, input_size, input_size).
    """
    pil = Image.fromarray(image)
    width, height = pil.size
    scale = resize_size / min(width, height)
    new_w = max(input_size, round(width * scale))
    new_h = max(input_size, round(height * scale))
    pil = pil.resize((new_w, new_h), Image.Resampling.BILINEAR)

    left = (new_w - input_size) // 2
    top = (new_h - input_size) // 2
    pil = pil.crop((left, top, left + input_size, top + input_size))

    arr = np.asarray(pil, dtype=np.float32) / 255.0
    arr = (arr - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(arr.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
