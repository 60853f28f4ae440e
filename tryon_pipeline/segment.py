# Module: segment
# License: MIT (WalVerse project)
# Description: Background removal — segmentation mask to alpha channel, with unsegmented fallback.
# Platform: Both (CPU + CUDA)
# Dependencies: transformers, torch, Pillow, numpy

"""
Background Segmenter
====================
Runs an image-segmentation capability on the normalized photo and uses the
returned per-pixel background likelihood to clear the alpha channel:

    alpha = 255 × (1 − mask[pixel])

Capability contract:
    segment(image: PIL.Image) -> mask
    mask: array-like of width × height values in [0, 1], 1 = background.

Any failure of the capability (exception, missing mask, wrong length,
out-of-range values) is recoverable: the original image is returned at full
opacity together with a SegmentationFailed warning.
"""

import logging
from typing import Any, Callable, Optional

import numpy as np
from PIL import Image

from tryon_pipeline.schema import SegmentationFailed, SegmentationOutcome

logger = logging.getLogger("walverse.segment")

SegmentFn = Callable[[Image.Image], Any]

DEFAULT_SEGMENTATION_MODEL = "nvidia/segformer-b0-finetuned-ade-512-512"

# Module-level cached pipeline, loaded once and reused across calls
_segmenter = None
_segmenter_key = None


# ═══════════════════════════════════════════════════════════════════════
# MODEL LOADING
# ═══════════════════════════════════════════════════════════════════════


def load_segmenter(model_id: str = DEFAULT_SEGMENTATION_MODEL, device: str = "cpu"):
    """
    Load and cache the Hugging Face image-segmentation pipeline.
    Subsequent calls with the same model and device return the cached pipeline.

    Args:
        model_id: Hugging Face model repository id.
        device: Torch device string.

    Returns:
        transformers image-segmentation pipeline.

    Raises:
        RuntimeError: If the model cannot be loaded.
    """
    global _segmenter, _segmenter_key

    key = (model_id, device)
    if _segmenter is not None and _segmenter_key == key:
        logger.debug("Returning cached segmentation pipeline")
        return _segmenter

    from transformers import pipeline

    logger.info("Loading segmentation model %s on %s", model_id, device)
    try:
        _segmenter = pipeline("image-segmentation", model=model_id, device=device)
    except Exception as e:
        raise RuntimeError(f"Segmentation model loading failed ({model_id}): {e}") from e

    _segmenter_key = key
    return _segmenter


class HFSegmenter:
    """
    segment() capability backed by a transformers image-segmentation pipeline.

    The first returned segment is taken as the background mask.
    """

    def __init__(self, model_id: str = DEFAULT_SEGMENTATION_MODEL, device: str = "cpu"):
        self.model_id = model_id
        self.device = device

    def __call__(self, image: Image.Image) -> Optional[np.ndarray]:
        segmenter = load_segmenter(self.model_id, self.device)
        result = segmenter(image)
        if not result or result[0].get("mask") is None:
            return None
        mask = result[0]["mask"]
        if mask.size != image.size:
            mask = mask.resize(image.size, Image.NEAREST)
        return np.asarray(mask, dtype=np.float32) / 255.0


# ═══════════════════════════════════════════════════════════════════════
# MASK APPLICATION
# ═══════════════════════════════════════════════════════════════════════


def validate_mask(mask: Any, size) -> np.ndarray:
    """
    Check a raw capability mask against the image grid.

    Args:
        mask: Value returned by the segment capability.
        size: (width, height) of the image the mask must cover.

    Returns:
        float32 array of shape (height, width).

    Raises:
        SegmentationFailed: If the mask is missing, the wrong length or out of range.
    """
    if mask is None:
        raise SegmentationFailed("Segmenter returned no mask")

    try:
        arr = np.asarray(mask, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise SegmentationFailed(f"Mask is not numeric: {e}") from e

    width, height = size
    if arr.size != width * height:
        raise SegmentationFailed(
            f"Mask length {arr.size} does not match image {width}x{height} ({width * height})"
        )

    arr = arr.reshape(height, width)
    if not np.all(np.isfinite(arr)):
        raise SegmentationFailed("Mask contains non-finite values")
    if arr.min() < 0.0 or arr.max() > 1.0:
        raise SegmentationFailed(
            f"Mask values outside [0, 1]: min={arr.min():.3f}, max={arr.max():.3f}"
        )
    return arr


def apply_background_mask(image: Image.Image, mask: np.ndarray) -> Image.Image:
    """
    Return an RGBA copy of image whose alpha is 255 × (1 − mask).

    Args:
        image: RGB source image.
        mask: (height, width) background likelihood in [0, 1].

    Returns:
        PIL.Image in RGBA mode; RGB channels are unchanged.
    """
    rgb = np.asarray(image.convert("RGB"))
    alpha = np.floor(255.0 * (1.0 - mask) + 0.5).astype(np.uint8)
    return Image.fromarray(np.dstack([rgb, alpha]))


def remove_background(image: Image.Image, segment: SegmentFn) -> SegmentationOutcome:
    """
    Remove the background from image using the segment capability.

    Args:
        image: Normalized RGB image.
        segment: Segmentation capability.

    Returns:
        SegmentationOutcome. On failure, image is the unmodified input at
        full opacity and error carries the SegmentationFailed warning.
    """
    try:
        mask = validate_mask(segment(image), image.size)
    except SegmentationFailed as e:
        logger.warning("Segmentation returned malformed data: %s", e)
        return _unsegmented(image, e)
    except Exception as e:
        logger.warning("Segmentation failed: %s", e)
        error = SegmentationFailed(f"Segmentation call failed: {e}")
        error.__cause__ = e
        return _unsegmented(image, error)

    result = apply_background_mask(image, mask)
    logger.info(
        "Background removed — foreground pixels: %d",
        int(np.sum(np.asarray(result)[:, :, 3] > 127)),
    )
    return SegmentationOutcome(image=result, mask_applied=True)


def _unsegmented(image: Image.Image, error: SegmentationFailed) -> SegmentationOutcome:
    return SegmentationOutcome(image=image.convert("RGBA"), mask_applied=False, error=error)


# ═══════════════════════════════════════════════════════════════════════
# CLEANUP
# ═══════════════════════════════════════════════════════════════════════


def clear_model_cache() -> None:
    """Drop the cached segmentation pipeline and free VRAM."""
    global _segmenter, _segmenter_key
    if _segmenter is None:
        return
    _segmenter = None
    _segmenter_key = None
    try:
        import torch
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
    except ImportError:
        pass
    logger.info("Segmentation model cache cleared.")
