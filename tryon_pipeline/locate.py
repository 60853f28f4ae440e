# Module: locate
# License: MIT (WalVerse project)
# Description: Person detection and anchor/scale estimation for eyewear and clothing overlays.
# Platform: Both (CPU + CUDA)
# Dependencies: transformers, torch, Pillow

"""
Subject Locator
===============
Runs an object-detection capability, picks the best "person" box and derives
the anchor point and scale estimate the overlay is sized from.

Capability contract:
    detect(image: PIL.Image) -> [{label, score|confidence, box: {xmin, ymin, xmax, ymax}}]

Eyewear:  anchor 30% down the box, horizontally centred; scale = box width.
Clothing: anchor 40% down the box, horizontally centred;
          shoulder width = 80% of box width, torso height = 60% of box height.

A failing capability yields NotDetected carrying DetectionFailed; the
pipeline then uses the fixed fallback placement.
"""

import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from PIL import Image

from tryon_pipeline.schema import (
    BoundingBox,
    Detected,
    DetectionFailed,
    DetectionResult,
    NotDetected,
    Point,
    ProductCategory,
    ScaleEstimate,
)

logger = logging.getLogger("walverse.locate")

DetectFn = Callable[[Image.Image], Iterable[Dict[str, Any]]]

DEFAULT_DETECTION_MODEL = "hustvl/yolos-tiny"
PERSON_LABEL = "person"
MIN_CONFIDENCE = 0.5

EYE_LINE = 0.3
TORSO_LINE = 0.4
SHOULDER_RATIO = 0.8
TORSO_RATIO = 0.6

_detector = None
_detector_key = None


# ═══════════════════════════════════════════════════════════════════════
# MODEL LOADING
# ═══════════════════════════════════════════════════════════════════════


def load_detector(model_id: str = DEFAULT_DETECTION_MODEL, device: str = "cpu"):
    """
    Load and cache the Hugging Face object-detection pipeline.

    Args:
        model_id: Hugging Face model repository id.
        device: Torch device string.

    Returns:
        transformers object-detection pipeline.

    Raises:
        RuntimeError: If the model cannot be loaded.
    """
    global _detector, _detector_key

    key = (model_id, device)
    if _detector is not None and _detector_key == key:
        return _detector

    from transformers import pipeline

    logger.info("Loading detection model %s on %s", model_id, device)
    try:
        _detector = pipeline("object-detection", model=model_id, device=device)
    except Exception as e:
        raise RuntimeError(f"Detection model loading failed ({model_id}): {e}") from e

    _detector_key = key
    return _detector


class HFDetector:
    """detect() capability backed by a transformers object-detection pipeline."""

    def __init__(self, model_id: str = DEFAULT_DETECTION_MODEL, device: str = "cpu"):
        self.model_id = model_id
        self.device = device

    def __call__(self, image: Image.Image) -> List[Dict[str, Any]]:
        detector = load_detector(self.model_id, self.device)
        return detector(image)


def clear_model_cache() -> None:
    """Drop the cached detection pipeline."""
    global _detector, _detector_key
    _detector = None
    _detector_key = None


# ═══════════════════════════════════════════════════════════════════════
# PERSON SELECTION
# ═══════════════════════════════════════════════════════════════════════


def _parse_entry(entry: Dict[str, Any]) -> Optional[Tuple[str, float, BoundingBox]]:
    try:
        label = str(entry["label"])
        score = entry.get("score", entry.get("confidence"))
        confidence = float(score)
        box = BoundingBox.from_dict(entry["box"])
    except (KeyError, TypeError, ValueError, AttributeError):
        logger.debug("Skipping malformed detection entry: %r", entry)
        return None
    if not all(math.isfinite(v) for v in (confidence, box.xmin, box.ymin, box.xmax, box.ymax)):
        logger.debug("Skipping non-finite detection entry: %r", entry)
        return None
    if box.width <= 0 or box.height <= 0:
        logger.debug("Skipping empty detection box: %r", entry)
        return None
    return label, confidence, box


def select_person(
    detections: Iterable[Dict[str, Any]],
    min_confidence: float = MIN_CONFIDENCE,
) -> Optional[Tuple[float, BoundingBox]]:
    """
    Pick the highest-confidence person entry at or above min_confidence.

    Args:
        detections: Raw capability output.
        min_confidence: Minimum score for a person to count.

    Returns:
        (confidence, box) of the chosen person, or None.
    """
    best = None
    for entry in detections or []:
        parsed = _parse_entry(entry)
        if parsed is None:
            continue
        label, confidence, box = parsed
        if PERSON_LABEL not in label.lower() or confidence < min_confidence:
            continue
        if best is None or confidence > best[0]:
            best = (confidence, box)
    return best


# ═══════════════════════════════════════════════════════════════════════
# ANCHOR ESTIMATION
# ═══════════════════════════════════════════════════════════════════════


def _clamp_point(point: Point, size: Tuple[int, int]) -> Point:
    width, height = size
    return Point(
        min(max(point.x, 0.0), float(width - 1)),
        min(max(point.y, 0.0), float(height - 1)),
    )


def estimate_anchor(
    box: BoundingBox,
    category: ProductCategory,
    image_size: Tuple[int, int],
) -> Tuple[Point, ScaleEstimate]:
    """
    Derive the anchor point and scale estimate for a person box.

    Args:
        box: Person bounding box in image pixels.
        category: EYEWEAR or CLOTHING.
        image_size: (width, height) the anchor is clamped into.

    Returns:
        (anchor, scale) for the given category.

    Raises:
        ValueError: If the category has no try-on anchor.
    """
    if category == ProductCategory.EYEWEAR:
        anchor = box.point_at(0.5, EYE_LINE)
        scale = ScaleEstimate(width=box.width)
    elif category == ProductCategory.CLOTHING:
        anchor = box.point_at(0.5, TORSO_LINE)
        scale = ScaleEstimate(width=box.width * SHOULDER_RATIO, height=box.height * TORSO_RATIO)
    else:
        raise ValueError(f"No try-on anchor for category '{category.value}'")

    return _clamp_point(anchor, image_size), scale


def locate_subject(
    image: Image.Image,
    detect: DetectFn,
    category: ProductCategory,
    min_confidence: float = MIN_CONFIDENCE,
) -> DetectionResult:
    """
    Find the person in image and compute the overlay anchor.

    Args:
        image: Normalized RGB image.
        detect: Object-detection capability.
        category: EYEWEAR or CLOTHING.
        min_confidence: Minimum person score.

    Returns:
        Detected, or NotDetected (with DetectionFailed if the capability raised).
    """
    try:
        detections = list(detect(image) or [])
    except Exception as e:
        logger.warning("Person detection failed: %s", e)
        error = DetectionFailed(f"Detection call failed: {e}")
        error.__cause__ = e
        return NotDetected(error=error)

    person = select_person(detections, min_confidence)
    if person is None:
        logger.info("No person detected (%d candidates)", len(detections))
        return NotDetected()

    confidence, box = person
    anchor, scale = estimate_anchor(box, category, image.size)
    logger.info(
        "Person detected: confidence=%.2f anchor=(%.1f, %.1f) scale=%.1f",
        confidence, anchor.x, anchor.y, scale.width,
    )
    return Detected(anchor=anchor, scale=scale, confidence=min(confidence, 1.0), box=box)
