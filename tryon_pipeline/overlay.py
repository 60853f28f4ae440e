# Module: overlay
# License: MIT (WalVerse project)
# Description: Overlay placement from detection results, and preview compositing.
# Platform: Both
# Dependencies: Pillow

"""
Overlay Compositor
==================
Maps a detection result and the selected product category to an overlay
placement (centre, size, centering transform), and renders the product
layer onto the photo for the preview image.

NotDetected always gives the fixed fallback placement for the category:
    eyewear   140 × 45 centred at (50%, 35%) of the frame
    clothing  180 × 220 centred at (50%, 55%) of the frame
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from PIL import Image

from tryon_pipeline.schema import (
    Detected,
    DetectionResult,
    OverlayPlacement,
    ProductCategory,
)

logger = logging.getLogger("walverse.overlay")


@dataclass(frozen=True)
class EyewearPlacementConfig:
    fallback_size: Tuple[float, float] = (140.0, 45.0)
    fallback_center: Tuple[float, float] = (0.5, 0.35)
    min_width: float = 120.0
    width_ratio: float = 0.7

    @property
    def aspect(self) -> float:
        return self.fallback_size[1] / self.fallback_size[0]


@dataclass(frozen=True)
class ClothingPlacementConfig:
    fallback_size: Tuple[float, float] = (180.0, 220.0)
    fallback_center: Tuple[float, float] = (0.5, 0.55)
    min_width: float = 140.0
    min_height: float = 160.0


@dataclass(frozen=True)
class PlacementConfig:
    eyewear: EyewearPlacementConfig = field(default_factory=EyewearPlacementConfig)
    clothing: ClothingPlacementConfig = field(default_factory=ClothingPlacementConfig)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "PlacementConfig":
        raw = raw or {}

        def _pairs(section: Dict[str, Any]) -> Dict[str, Any]:
            return {
                k: tuple(float(x) for x in v) if isinstance(v, (list, tuple)) else float(v)
                for k, v in section.items()
            }

        return cls(
            eyewear=EyewearPlacementConfig(**_pairs(raw.get("eyewear") or {})),
            clothing=ClothingPlacementConfig(**_pairs(raw.get("clothing") or {})),
        )


def fallback_placement(
    category: ProductCategory,
    frame_size: Tuple[int, int],
    config: PlacementConfig = PlacementConfig(),
) -> OverlayPlacement:
    """Fixed placement used when no subject was detected."""
    section = config.eyewear if category == ProductCategory.EYEWEAR else config.clothing
    width, height = section.fallback_size
    cx, cy = section.fallback_center
    return OverlayPlacement(
        x=frame_size[0] * cx,
        y=frame_size[1] * cy,
        width=width,
        height=height,
        fallback=True,
    )


def compute_placement(
    result: DetectionResult,
    category: ProductCategory,
    frame_size: Tuple[int, int],
    config: PlacementConfig = PlacementConfig(),
) -> OverlayPlacement:
    """
    Compute the overlay placement for a detection result.

    Args:
        result: Detected or NotDetected.
        category: EYEWEAR or CLOTHING.
        frame_size: (width, height) of the normalized image.
        config: Placement constants.

    Returns:
        OverlayPlacement centred on the anchor, or the fallback placement.

    Raises:
        ValueError: If the category is not try-on capable.
    """
    category = ProductCategory(category)
    if not category.supports_tryon:
        raise ValueError(f"Category '{category.value}' does not support try-on")

    if not isinstance(result, Detected):
        return fallback_placement(category, frame_size, config)

    if category == ProductCategory.EYEWEAR:
        width = max(config.eyewear.min_width, config.eyewear.width_ratio * result.scale.width)
        height = width * config.eyewear.aspect
    else:
        torso = result.scale.height if result.scale.height is not None else result.scale.width
        width = max(config.clothing.min_width, result.scale.width)
        height = max(config.clothing.min_height, torso)

    return OverlayPlacement(x=result.anchor.x, y=result.anchor.y, width=width, height=height)


# ═══════════════════════════════════════════════════════════════════════
# PREVIEW RENDERING
# ═══════════════════════════════════════════════════════════════════════


def render_overlay(
    photo: Image.Image,
    product: Image.Image,
    placement: OverlayPlacement,
) -> Image.Image:
    """
    Alpha-composite the product image onto the photo at the placement.

    Parts of the overlay outside the frame are clipped.

    Args:
        photo: Base image (RGB or RGBA).
        product: Product image; transparency is respected.
        placement: Placement in photo pixels.

    Returns:
        New RGBA image the size of photo.
    """
    base = photo.convert("RGBA")
    size = (max(1, int(round(placement.width))), max(1, int(round(placement.height))))
    layer_img = product.convert("RGBA").resize(size, Image.LANCZOS)
    if placement.rotation:
        layer_img = layer_img.rotate(-placement.rotation, resample=Image.BICUBIC, expand=True)

    left = int(round(placement.x - layer_img.width / 2.0))
    top = int(round(placement.y - layer_img.height / 2.0))

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(layer_img, (left, top), layer_img)

    logger.debug(
        "Overlay rendered at (%d, %d) size %dx%d fallback=%s",
        left, top, layer_img.width, layer_img.height, placement.fallback,
    )
    return Image.alpha_composite(base, layer)
