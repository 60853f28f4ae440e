# Module: schema
# License: MIT (WalVerse project)
# Description: Shared result types, stages and errors for the try-on pipeline.
# Platform: Both
# Dependencies: dataclasses, enum

"""
Try-On Data Model
=================
Frozen result types passed between pipeline stages, the stage enum driving
the pipeline state machine, and the error taxonomy:

    TryOnError
      ├── DecodeError          fatal — no image to process
      ├── SegmentationFailed   recoverable — unsegmented image is used
      ├── DetectionFailed      recoverable — fixed overlay placement is used
      ├── CaptureError         camera could not be opened or read
      └── InvalidTransition    illegal pipeline stage change
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from PIL import Image


# ═══════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════


class TryOnError(Exception):
    """Base class for all try-on pipeline errors."""


class DecodeError(TryOnError):
    """The input could not be decoded into an image."""


class SegmentationFailed(TryOnError):
    """Background segmentation raised or returned a malformed mask."""


class DetectionFailed(TryOnError):
    """Person detection raised or timed out."""


class CaptureError(TryOnError):
    """The camera could not be opened or a frame could not be read."""


class InvalidTransition(TryOnError):
    """A pipeline stage change not allowed by the state machine."""


# ═══════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════


class ProductCategory(str, Enum):
    EYEWEAR = "glasses"
    CLOTHING = "clothing"
    JEWELRY = "jewelry"

    @property
    def supports_tryon(self) -> bool:
        return self in (ProductCategory.EYEWEAR, ProductCategory.CLOTHING)


class ImageSource(str, Enum):
    CAMERA = "camera"
    UPLOAD = "upload"


class PipelineStage(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    NORMALIZING = "normalizing"
    SEGMENTING = "segmenting"
    LOCATING = "locating"
    READY = "ready"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════
# GEOMETRY
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def scaled(self, factor: float) -> "Point":
        return Point(self.x * factor, self.y * factor)

    def to_dict(self) -> Dict[str, float]:
        return {"x": round(self.x, 2), "y": round(self.y, 2)}


@dataclass(frozen=True)
class BoundingBox:
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    def point_at(self, x_frac: float, y_frac: float) -> Point:
        """Point at the given fraction across and down the box."""
        return Point(self.xmin + self.width * x_frac, self.ymin + self.height * y_frac)

    @classmethod
    def from_dict(cls, box: Dict[str, Any]) -> "BoundingBox":
        return cls(
            xmin=float(box["xmin"]),
            ymin=float(box["ymin"]),
            xmax=float(box["xmax"]),
            ymax=float(box["ymax"]),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "xmin": round(self.xmin, 2),
            "ymin": round(self.ymin, 2),
            "xmax": round(self.xmax, 2),
            "ymax": round(self.ymax, 2),
        }


# ═══════════════════════════════════════════════════════════════════════
# STAGE RESULTS
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class NormalizedImage:
    """
    Canonical pixel buffer handed to both inference calls.

    scale is normalized size / original size (1.0 when no resize happened).
    """

    image: Image.Image
    original_size: Tuple[int, int]
    scale: float

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    @property
    def resized(self) -> bool:
        return self.size != self.original_size


@dataclass(frozen=True)
class SegmentationOutcome:
    image: Image.Image
    mask_applied: bool
    error: Optional[SegmentationFailed] = None


@dataclass(frozen=True)
class ScaleEstimate:
    """
    Body measurement used to size the overlay.

    Eyewear: width is the face width, height is unset.
    Clothing: width is the shoulder width, height the torso height.
    """

    width: float
    height: Optional[float] = None

    def scaled(self, factor: float) -> "ScaleEstimate":
        height = self.height * factor if self.height is not None else None
        return ScaleEstimate(self.width * factor, height)


@dataclass(frozen=True)
class NotDetected:
    error: Optional[DetectionFailed] = None

    detected = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected": False,
            "error": str(self.error) if self.error else None,
        }


@dataclass(frozen=True)
class Detected:
    anchor: Point
    scale: ScaleEstimate
    confidence: float
    box: Optional[BoundingBox] = None

    detected = True

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Detection confidence out of range: {self.confidence}")

    def to_source(self, scale: float) -> "Detected":
        """Map anchor and scale back to the pre-normalization pixel grid."""
        if scale == 1.0:
            return self
        inverse = 1.0 / scale
        box = None
        if self.box is not None:
            box = BoundingBox(
                self.box.xmin * inverse,
                self.box.ymin * inverse,
                self.box.xmax * inverse,
                self.box.ymax * inverse,
            )
        return Detected(
            anchor=self.anchor.scaled(inverse),
            scale=self.scale.scaled(inverse),
            confidence=self.confidence,
            box=box,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected": True,
            "anchor": self.anchor.to_dict(),
            "scale": {"width": round(self.scale.width, 2),
                      "height": round(self.scale.height, 2) if self.scale.height is not None else None},
            "confidence": round(self.confidence, 4),
            "box": self.box.to_dict() if self.box else None,
        }


DetectionResult = Union[NotDetected, Detected]


@dataclass(frozen=True)
class OverlayPlacement:
    """
    Where the product layer is drawn, in normalized-image pixels.

    (x, y) is the centre of the overlay; translate is the centering transform
    applied to the layer as a fraction of its own size.
    """

    x: float
    y: float
    width: float
    height: float
    rotation: float = 0.0
    translate: Tuple[float, float] = (-0.5, -0.5)
    fallback: bool = False

    @property
    def left(self) -> float:
        return self.x + self.translate[0] * self.width

    @property
    def top(self) -> float:
        return self.y + self.translate[1] * self.height

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": round(self.x, 2),
            "y": round(self.y, 2),
            "width": round(self.width, 2),
            "height": round(self.height, 2),
            "rotation": self.rotation,
            "translate": list(self.translate),
            "fallback": self.fallback,
        }
