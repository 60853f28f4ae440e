# Module: tryon
# License: MIT (WalVerse project)
# Description: Try-on pipeline orchestration — state machine, concurrent inference fan-out, session.
# Platform: Both (CPU + CUDA)
# Dependencies: asyncio, concurrent.futures, Pillow

"""
===================================
VIRTUAL TRY-ON PIPELINE
File: tryon.py
===================================

    Idle → Capturing → Normalizing → Segmenting → Locating → Ready
                 └──────────┴──→ Failed(reason)

Only decode/capture failures reach Failed. Segmentation and detection run
concurrently on the normalized image (run_in_executor fan-out, joined before
compositing) and degrade to the unsegmented image / fallback placement.

The TryOnContext is owned by the caller and carries every intermediate
result; each result is a frozen dataclass.
"""

import asyncio
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from PIL import Image

from tryon_pipeline.capture import CameraSession
from tryon_pipeline.catalog import Product
from tryon_pipeline.locate import DEFAULT_DETECTION_MODEL, DetectFn, estimate_anchor, locate_subject
from tryon_pipeline.normalize import MAX_IMAGE_DIMENSION, decode_image, normalize_image
from tryon_pipeline.overlay import PlacementConfig, compute_placement, render_overlay
from tryon_pipeline.platform_utils import load_config
from tryon_pipeline.schema import (
    CaptureError,
    DecodeError,
    Detected,
    DetectionFailed,
    DetectionResult,
    ImageSource,
    InvalidTransition,
    NormalizedImage,
    NotDetected,
    OverlayPlacement,
    PipelineStage,
    ProductCategory,
    SegmentationFailed,
    SegmentationOutcome,
    TryOnError,
)
from tryon_pipeline.segment import DEFAULT_SEGMENTATION_MODEL, SegmentFn, remove_background

logger = logging.getLogger("walverse.tryon")

# Two workers: segmentation and detection run side by side
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="walverse-infer")

PhotoInput = Union[bytes, str, Path, Image.Image, Callable[[], Image.Image]]
ProgressFn = Callable[[PipelineStage], None]


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TryOnConfig:
    """
    Pipeline settings.

    inference_timeout bounds how long the pipeline waits for each inference
    call. A timed-out call is abandoned, not interrupted: its worker thread
    keeps running until the model returns, and holds an executor slot until
    then. Give long-lived sessions their own executor (TryOnSession(executor=...))
    so abandoned calls cannot starve other sessions.
    """

    max_dimension: int = MAX_IMAGE_DIMENSION
    min_confidence: float = 0.5
    device: str = "auto"
    inference_timeout: Optional[float] = None
    segmentation_model: str = DEFAULT_SEGMENTATION_MODEL
    detection_model: str = DEFAULT_DETECTION_MODEL
    placement: PlacementConfig = field(default_factory=PlacementConfig)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "TryOnConfig":
        raw = raw or {}
        models = raw.get("models") or {}
        timeout = raw.get("inference_timeout")
        return cls(
            max_dimension=int(raw.get("max_dimension", MAX_IMAGE_DIMENSION)),
            min_confidence=float(raw.get("min_confidence", 0.5)),
            device=str(raw.get("device") or "auto"),
            inference_timeout=float(timeout) if timeout is not None else None,
            segmentation_model=models.get("segmentation", DEFAULT_SEGMENTATION_MODEL),
            detection_model=models.get("detection", DEFAULT_DETECTION_MODEL),
            placement=PlacementConfig.from_dict(raw.get("placement")),
        )

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "TryOnConfig":
        return cls.from_dict(load_config(config_path))


# ═══════════════════════════════════════════════════════════════════════
# CONTEXT & STATE MACHINE
# ═══════════════════════════════════════════════════════════════════════

_TRANSITIONS = {
    PipelineStage.IDLE: {PipelineStage.CAPTURING},
    PipelineStage.CAPTURING: {PipelineStage.NORMALIZING, PipelineStage.FAILED},
    PipelineStage.NORMALIZING: {PipelineStage.SEGMENTING, PipelineStage.FAILED},
    PipelineStage.SEGMENTING: {PipelineStage.LOCATING},
    PipelineStage.LOCATING: {PipelineStage.READY},
    PipelineStage.READY: set(),
    PipelineStage.FAILED: set(),
}


@dataclass(frozen=True)
class TryOnResult:
    image: Image.Image
    normalized: NormalizedImage
    detection: DetectionResult
    placement: OverlayPlacement
    category: ProductCategory
    segmented: bool
    warnings: Tuple[TryOnError, ...] = ()

    def with_category(self, category: ProductCategory, config: PlacementConfig = PlacementConfig()) -> "TryOnResult":
        """
        Recompute the placement for another product category.

        The stored detection was located for self.category; switching between
        eyewear and clothing re-derives the anchor from the person box.
        """
        category = ProductCategory(category)
        detection = self.detection
        if isinstance(detection, Detected) and detection.box is not None and category != self.category:
            anchor, scale = estimate_anchor(detection.box, category, self.normalized.size)
            detection = Detected(anchor=anchor, scale=scale, confidence=detection.confidence, box=detection.box)

        placement = compute_placement(detection, category, self.normalized.size, config)
        return TryOnResult(
            image=self.image,
            normalized=self.normalized,
            detection=detection,
            placement=placement,
            category=category,
            segmented=self.segmented,
            warnings=self.warnings,
        )

    def render(self, product_image: Image.Image) -> Image.Image:
        return render_overlay(self.image, product_image, self.placement)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "size": list(self.normalized.size),
            "original_size": list(self.normalized.original_size),
            "segmented": self.segmented,
            "detection": self.detection.to_dict(),
            "placement": self.placement.to_dict(),
            "warnings": [f"{type(w).__name__}: {w}" for w in self.warnings],
        }


@dataclass
class TryOnContext:
    """Per-attempt pipeline state, owned by the caller."""

    category: ProductCategory
    on_progress: Optional[ProgressFn] = None
    stage: PipelineStage = PipelineStage.IDLE
    source: Optional[ImageSource] = None
    normalized: Optional[NormalizedImage] = None
    segmentation: Optional[SegmentationOutcome] = None
    detection: Optional[DetectionResult] = None
    placement: Optional[OverlayPlacement] = None
    warnings: List[TryOnError] = field(default_factory=list)
    failure: Optional[TryOnError] = None

    def advance(self, stage: PipelineStage) -> None:
        if stage not in _TRANSITIONS[self.stage]:
            raise InvalidTransition(f"{self.stage.value} -> {stage.value}")
        logger.debug("Stage: %s -> %s", self.stage.value, stage.value)
        self.stage = stage
        if self.on_progress is not None:
            self.on_progress(stage)

    def fail(self, error: TryOnError) -> None:
        self.failure = error
        self.advance(PipelineStage.FAILED)
        logger.error("Try-on failed at capture/decode: %s", error)

    def reset(self) -> None:
        self.stage = PipelineStage.IDLE
        self.source = None
        self.normalized = None
        self.segmentation = None
        self.detection = None
        self.placement = None
        self.warnings = []
        self.failure = None

    def result(self) -> TryOnResult:
        if self.stage != PipelineStage.READY:
            raise InvalidTransition(f"No result in stage {self.stage.value}")
        return TryOnResult(
            image=self.segmentation.image,
            normalized=self.normalized,
            detection=self.detection,
            placement=self.placement,
            category=self.category,
            segmented=self.segmentation.mask_applied,
            warnings=tuple(self.warnings),
        )


# ═══════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════


async def _bounded(future, timeout: Optional[float]):
    if timeout is None:
        return await future
    return await asyncio.wait_for(future, timeout)


def _acquire(photo: PhotoInput) -> Image.Image:
    if isinstance(photo, Image.Image):
        return photo
    if callable(photo):
        return photo()
    return decode_image(photo)


async def run_tryon(
    photo: PhotoInput,
    category: ProductCategory,
    segment: SegmentFn,
    detect: DetectFn,
    config: Optional[TryOnConfig] = None,
    context: Optional[TryOnContext] = None,
    source: ImageSource = ImageSource.UPLOAD,
    executor: Optional[Executor] = None,
) -> TryOnResult:
    """
    Run one try-on attempt.

    Args:
        photo: Encoded bytes, a file path, a decoded image, or a zero-argument
            callable returning one (e.g. CameraSession.capture).
        category: Product category to place (EYEWEAR or CLOTHING).
        segment: Segmentation capability.
        detect: Detection capability.
        config: Pipeline settings (defaults when None).
        context: Caller-owned context; a fresh one is created when None.
        source: Where the photo came from.
        executor: Executor for photo acquisition, decoding and the inference calls.

    Returns:
        TryOnResult for the attempt.

    Raises:
        ValueError: If the category does not support try-on.
        DecodeError: If the photo cannot be decoded (context ends FAILED).
        CaptureError: If the camera read fails (context ends FAILED).
    """
    config = config or TryOnConfig()
    category = ProductCategory(category)
    if not category.supports_tryon:
        raise ValueError(f"Category '{category.value}' does not support try-on")

    if context is None:
        context = TryOnContext(category=category)
    else:
        context.reset()
        context.category = category
    context.source = source

    start = time.time()
    loop = asyncio.get_running_loop()
    pool = executor or _executor

    # ── Capturing / Normalizing ──
    # Camera reads and decoding block, so they run on the pool as well
    context.advance(PipelineStage.CAPTURING)
    try:
        image = await loop.run_in_executor(pool, _acquire, photo)
        context.advance(PipelineStage.NORMALIZING)
        context.normalized = await loop.run_in_executor(pool, normalize_image, image, config.max_dimension)
    except (DecodeError, CaptureError) as e:
        context.fail(e)
        raise

    normalized = context.normalized.image

    # ── Segmenting + Locating (fan-out / fan-in) ──
    seg_task = asyncio.ensure_future(_bounded(
        loop.run_in_executor(pool, remove_background, normalized, segment),
        config.inference_timeout,
    ))
    det_task = asyncio.ensure_future(_bounded(
        loop.run_in_executor(pool, locate_subject, normalized, detect, category, config.min_confidence),
        config.inference_timeout,
    ))

    try:
        context.advance(PipelineStage.SEGMENTING)
        try:
            context.segmentation = await seg_task
        except asyncio.TimeoutError:
            logger.warning("Segmentation timed out after %.1fs", config.inference_timeout)
            context.segmentation = SegmentationOutcome(
                image=normalized.convert("RGBA"),
                mask_applied=False,
                error=SegmentationFailed(f"Segmentation timed out after {config.inference_timeout}s"),
            )

        context.advance(PipelineStage.LOCATING)
        try:
            context.detection = await det_task
        except asyncio.TimeoutError:
            logger.warning("Detection timed out after %.1fs", config.inference_timeout)
            context.detection = NotDetected(
                error=DetectionFailed(f"Detection timed out after {config.inference_timeout}s"),
            )
    finally:
        for task in (seg_task, det_task):
            if not task.done():
                task.cancel()

    if context.segmentation.error is not None:
        context.warnings.append(context.segmentation.error)
    if isinstance(context.detection, NotDetected) and context.detection.error is not None:
        context.warnings.append(context.detection.error)

    # ── Compositing ──
    context.placement = compute_placement(
        context.detection, category, context.normalized.size, config.placement,
    )
    context.advance(PipelineStage.READY)

    logger.info(
        "Try-on ready in %.2fs: category=%s detected=%s fallback=%s warnings=%d",
        time.time() - start,
        category.value,
        context.detection.detected,
        context.placement.fallback,
        len(context.warnings),
    )
    return context.result()


def run_tryon_sync(photo: PhotoInput, category: ProductCategory, segment: SegmentFn,
                   detect: DetectFn, **kwargs) -> TryOnResult:
    """Blocking wrapper around run_tryon() for scripts and the CLI."""
    return asyncio.run(run_tryon(photo, category, segment, detect, **kwargs))


# ═══════════════════════════════════════════════════════════════════════
# SESSION
# ═══════════════════════════════════════════════════════════════════════


class TryOnSession:
    """
    Product selection, camera and upload handling for one shopper.

    The camera is released on stop_camera(), after capture(), on upload(),
    on reset(), and on close() / context-manager exit.
    """

    def __init__(
        self,
        products: Iterable[Product],
        segment: SegmentFn,
        detect: DetectFn,
        config: Optional[TryOnConfig] = None,
        on_add_to_cart: Optional[Callable[[str], Any]] = None,
        on_progress: Optional[ProgressFn] = None,
        camera: Optional[CameraSession] = None,
        executor: Optional[Executor] = None,
    ):
        self.products = list(products)
        self.segment = segment
        self.detect = detect
        self.config = config or TryOnConfig()
        self.on_add_to_cart = on_add_to_cart
        self.camera = camera or CameraSession()
        self.executor = executor
        self.selected: Optional[Product] = self.products[0] if self.products else None
        self.context = TryOnContext(
            category=self.selected.category if self.selected else ProductCategory.EYEWEAR,
            on_progress=on_progress,
        )
        self.result: Optional[TryOnResult] = None

    # ── Product selection ──

    def select_product(self, product_id: str) -> Product:
        for product in self.products:
            if product.id == str(product_id):
                break
        else:
            raise KeyError(f"Unknown product: {product_id}")

        self.selected = product
        if self.result is not None and product.category.supports_tryon:
            self.result = self.result.with_category(product.category, self.config.placement)
        return product

    def add_to_cart(self) -> Any:
        if self.selected is None:
            raise ValueError("No product selected")
        if self.on_add_to_cart is None:
            return None
        return self.on_add_to_cart(self.selected.id)

    # ── Sources ──

    def start_camera(self) -> None:
        self.result = None
        self.context.reset()
        self.camera.start()

    def stop_camera(self) -> None:
        self.camera.stop()

    async def capture(self) -> TryOnResult:
        """Snapshot the live camera, release it and run the pipeline."""
        if not self.camera.active:
            raise CaptureError("Camera is not active")
        return await self._run(lambda: self.camera.capture(stop_after=True), ImageSource.CAMERA)

    async def upload(self, photo: Union[bytes, str, Path, Image.Image]) -> TryOnResult:
        """Stop the camera and run the pipeline on an uploaded photo."""
        self.camera.stop()
        return await self._run(photo, ImageSource.UPLOAD)

    async def _run(self, photo: PhotoInput, source: ImageSource) -> TryOnResult:
        if self.selected is None:
            raise ValueError("No product selected")
        self.result = None
        try:
            self.result = await run_tryon(
                photo,
                self.selected.category,
                self.segment,
                self.detect,
                config=self.config,
                context=self.context,
                source=source,
                executor=self.executor,
            )
        finally:
            if source == ImageSource.CAMERA:
                self.camera.stop()
        return self.result

    def reset(self) -> None:
        self.camera.stop()
        self.context.reset()
        self.result = None

    def close(self) -> None:
        self.camera.stop()

    def __enter__(self) -> "TryOnSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════


if __name__ == "__main__":
    import argparse
    import json

    from tryon_pipeline.catalog import load_catalog, load_product_image
    from tryon_pipeline.locate import HFDetector
    from tryon_pipeline.platform_utils import resolve_device, setup_logging
    from tryon_pipeline.segment import HFSegmenter

    parser = argparse.ArgumentParser(description="WalVerse — Virtual Try-On")
    parser.add_argument("--photo", required=True, help="Photo of the shopper")
    parser.add_argument("--product", required=True, help="Catalog product id")
    parser.add_argument("--output", required=True, help="Preview PNG path")
    parser.add_argument("--config", default=None, help="Config YAML path")
    parser.add_argument("--device", default=None, help="Override inference device")
    args = parser.parse_args()

    setup_logging("INFO")

    raw_config = load_config(args.config)
    config = TryOnConfig.from_dict(raw_config)
    device = resolve_device(args.device or config.device)

    catalog_cfg = raw_config.get("catalog") or {}
    catalog = load_catalog(catalog_cfg.get("path", "configs/catalog.yaml"))
    product = catalog.get(args.product)

    result = run_tryon_sync(
        args.photo,
        product.category,
        HFSegmenter(config.segmentation_model, device),
        HFDetector(config.detection_model, device),
        config=config,
    )

    preview = result.render(load_product_image(product, catalog_cfg.get("image_dir")))
    Path(args.output).parent.mkdir(parents=True, exist_ok=True)
    preview.save(args.output, "PNG")

    print(json.dumps(result.to_dict(), indent=2))
    print(f"\nPreview saved to: {args.output}")
