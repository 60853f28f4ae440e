# Module: normalize
# License: MIT (WalVerse project)
# Description: Image decoding and downsampling to the canonical inference size.
# Platform: Both
# Dependencies: Pillow

"""
Image Normalizer
================
Decodes uploaded or captured photos and clamps the longer side to a fixed
maximum (1024 by default) while preserving the aspect ratio. Images already
within bounds keep their dimensions.

Decode failures raise DecodeError, which aborts the pipeline.
"""

import io
import logging
import math
from pathlib import Path
from typing import Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from tryon_pipeline.schema import DecodeError, NormalizedImage

logger = logging.getLogger("walverse.normalize")

MAX_IMAGE_DIMENSION = 1024


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_size(width: int, height: int, max_dimension: int = MAX_IMAGE_DIMENSION) -> Tuple[int, int]:
    """
    Compute the normalized size for an image of the given dimensions.

    Args:
        width: Source width in pixels.
        height: Source height in pixels.
        max_dimension: Maximum length of the longer side.

    Returns:
        (width, height) with the longer side clamped to max_dimension.

    Raises:
        ValueError: If either dimension is not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    if width <= max_dimension and height <= max_dimension:
        return width, height

    if width > height:
        return max_dimension, max(1, _round_half_up(height * max_dimension / width))
    return max(1, _round_half_up(width * max_dimension / height)), max_dimension


def decode_image(data: Union[bytes, str, Path]) -> Image.Image:
    """
    Decode raw bytes or an image file into an RGB Pillow image.

    EXIF orientation is applied so camera photos come out upright.

    Args:
        data: Encoded image bytes or a path to an image file.

    Returns:
        PIL.Image in RGB mode.

    Raises:
        DecodeError: If the data is empty, not an image, or has a zero dimension.
    """
    if isinstance(data, (str, Path)):
        path = Path(data)
        if not path.exists():
            raise DecodeError(f"Image not found: {path}")
        data = path.read_bytes()

    if not data:
        raise DecodeError("Empty image data")

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e

    image = ImageOps.exif_transpose(image)
    if image.width <= 0 or image.height <= 0:
        raise DecodeError(f"Image has no pixels: {image.width}x{image.height}")

    return image.convert("RGB")


def normalize_image(image: Image.Image, max_dimension: int = MAX_IMAGE_DIMENSION) -> NormalizedImage:
    """
    Downsample an oversized image so its longer side equals max_dimension.

    Args:
        image: Decoded image of arbitrary size.
        max_dimension: Maximum length of the longer side.

    Returns:
        NormalizedImage holding the RGB buffer, the original size and the
        normalized/original scale factor.

    Raises:
        DecodeError: If the image has a zero dimension.
    """
    original_size = image.size
    try:
        new_size = target_size(*original_size, max_dimension=max_dimension)
    except ValueError as e:
        raise DecodeError(str(e)) from e

    rgb = image if image.mode == "RGB" else image.convert("RGB")

    if new_size == original_size:
        logger.debug("Image within bounds: %dx%d", *original_size)
        return NormalizedImage(image=rgb.copy(), original_size=original_size, scale=1.0)

    resized = rgb.resize(new_size, Image.LANCZOS)
    scale = new_size[0] / original_size[0] if original_size[0] >= original_size[1] \
        else new_size[1] / original_size[1]

    logger.info(
        "Image resized: %dx%d -> %dx%d",
        original_size[0], original_size[1], new_size[0], new_size[1],
    )
    return NormalizedImage(image=resized, original_size=original_size, scale=scale)
