# Module: main
# License: MIT (WalVerse project)
# Description: FastAPI application for the try-on pipeline — endpoints, CORS, structured logging.
# Platform: Both (CPU + CUDA)
# Dependencies: fastapi, uvicorn, python-multipart, torch

"""
===================================
WALVERSE TRY-ON API
File: app/main.py
===================================

Endpoints:
    GET    /health               — device, model status
    GET    /products             — try-on catalog
    POST   /tryon                — photo + product_id → placement and preview
    POST   /cart/{product_id}    — add a product to the in-memory cart
"""

import base64
import io
import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware

# Add project root to sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tryon_pipeline.catalog import Cart, load_catalog, load_product_image
from tryon_pipeline.locate import HFDetector, load_detector
from tryon_pipeline.platform_utils import detect_gpu_info, load_config, resolve_device
from tryon_pipeline.schema import DecodeError
from tryon_pipeline.segment import HFSegmenter, load_segmenter
from tryon_pipeline.tryon import TryOnConfig, TryOnContext, run_tryon


# ── Structured JSON Logger ──────────────────────────────────────────────


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if hasattr(record, "product_id"):
            log_entry["product_id"] = record.product_id
        if hasattr(record, "stage"):
            log_entry["stage"] = record.stage
        if hasattr(record, "latency_ms"):
            log_entry["latency_ms"] = record.latency_ms
        if record.exc_info and record.exc_info[1]:
            log_entry["error"] = str(record.exc_info[1])
        return json.dumps(log_entry)


handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])
logger = logging.getLogger("walverse.api")


# ── Configuration ───────────────────────────────────────────────────────

RAW_CONFIG = load_config()
CONFIG = TryOnConfig.from_dict(RAW_CONFIG)
API_CONFIG = RAW_CONFIG.get("api") or {}
CATALOG_CONFIG = RAW_CONFIG.get("catalog") or {}

MAX_FILE_SIZE = int(API_CONFIG.get("max_upload_mb", 10)) * 1024 * 1024
ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/jpg", "image/webp"}


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else PROJECT_ROOT / p


catalog = load_catalog(_resolve(CATALOG_CONFIG.get("path", "configs/catalog.yaml")))
cart = Cart(catalog)
PRODUCT_IMAGE_DIR = _resolve(CATALOG_CONFIG.get("image_dir", "assets/products"))

_models_loaded = {"segmentation": False, "detection": False}


# ── Inference capabilities ──────────────────────────────────────────────


def get_capabilities() -> Tuple[HFSegmenter, HFDetector]:
    """Segment/detect capabilities for request handlers (overridable in tests)."""
    device = resolve_device(CONFIG.device)
    return (
        HFSegmenter(CONFIG.segmentation_model, device),
        HFDetector(CONFIG.detection_model, device),
    )


# ── Lifespan ────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Optionally warm up models on startup, clean up on shutdown."""
    warmup = os.environ.get("WALVERSE_WARMUP", str(API_CONFIG.get("warmup", False)))
    if warmup.lower() in ("1", "true", "yes"):
        device = resolve_device(CONFIG.device)
        logger.info("Starting WalVerse API — warming up models on %s...", device)

        try:
            load_segmenter(CONFIG.segmentation_model, device)
            _models_loaded["segmentation"] = True
        except RuntimeError as e:
            logger.warning("Segmentation warm-up failed: %s", str(e))

        try:
            load_detector(CONFIG.detection_model, device)
            _models_loaded["detection"] = True
        except RuntimeError as e:
            logger.warning("Detection warm-up failed: %s", str(e))

    yield

    logger.info("Shutting down WalVerse API...")
    from tryon_pipeline.locate import clear_model_cache as clear_detector
    from tryon_pipeline.segment import clear_model_cache as clear_segmenter
    clear_segmenter()
    clear_detector()


# ── App ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="WalVerse Try-On API",
    description="Virtual try-on — photo normalization, background removal, overlay placement",
    version="0.1.0",
    lifespan=lifespan,
)


# ── CORS ────────────────────────────────────────────────────────────────

_raw_origins = os.environ.get("ALLOWED_ORIGINS", API_CONFIG.get("allowed_origins", "*"))
if _raw_origins.strip() == "*":
    ALLOWED_ORIGINS = ["*"]
else:
    ALLOWED_ORIGINS = [o.strip() for o in _raw_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request Logging Middleware ──────────────────────────────────────────

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    latency_ms = int((time.time() - start) * 1000)

    logger.info(
        "%s %s → %d (%dms)",
        request.method, request.url.path,
        response.status_code, latency_ms,
        extra={"latency_ms": latency_ms},
    )
    return response


# ═══════════════════════════════════════════════════════════════════════
# GET /health
# ═══════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    """Health check with device info and model status."""
    gpu = detect_gpu_info()
    return {
        "status": "ok",
        "device": resolve_device(CONFIG.device),
        "gpu_name": gpu["name"],
        "gpu_memory_total_gb": gpu["total_memory_gb"],
        "models_loaded": _models_loaded,
        "products": len(catalog),
    }


# ═══════════════════════════════════════════════════════════════════════
# GET /products
# ═══════════════════════════════════════════════════════════════════════

@app.get("/products")
async def list_products():
    return {"products": [p.to_dict() for p in catalog]}


# ═══════════════════════════════════════════════════════════════════════
# POST /tryon
# ═══════════════════════════════════════════════════════════════════════

@app.post("/tryon")
async def create_tryon(
    photo: UploadFile = File(...),
    product_id: str = Form(...),
    preview: bool = Form(True),
    capabilities=Depends(get_capabilities),
):
    """
    Run the try-on pipeline on an uploaded photo for one product.
    Returns detection, placement, warnings and a base64 PNG preview.
    """
    if photo.content_type and photo.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            422,
            f"Invalid photo type: {photo.content_type}. Allowed: JPEG, PNG, WebP.",
        )

    content = await photo.read()
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(413, f"Photo exceeds {MAX_FILE_SIZE // (1024 * 1024)} MB limit.")

    try:
        product = catalog.get(product_id)
    except KeyError:
        raise HTTPException(404, f"Product not found: {product_id}")

    if not product.category.supports_tryon:
        raise HTTPException(422, f"Product {product_id} ({product.category.value}) has no try-on.")

    segment, detect = capabilities
    context = TryOnContext(category=product.category)
    try:
        result = await run_tryon(content, product.category, segment, detect, config=CONFIG, context=context)
    except DecodeError as e:
        logger.warning("Photo rejected: %s", str(e), extra={"product_id": product_id, "stage": context.stage.value})
        raise HTTPException(422, f"Cannot decode photo: {e}")

    body = result.to_dict()
    body["product_id"] = product.id
    body["stage"] = context.stage.value

    if preview:
        image = result.image
        try:
            image = result.render(load_product_image(product, PRODUCT_IMAGE_DIR))
        except DecodeError as e:
            logger.warning("Product image unavailable, preview without overlay: %s", str(e),
                           extra={"product_id": product_id})
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        body["preview_png"] = base64.b64encode(buf.getvalue()).decode("ascii")

    logger.info("Try-on complete", extra={"product_id": product_id, "stage": context.stage.value})
    return body


# ═══════════════════════════════════════════════════════════════════════
# POST /cart/{product_id}
# ═══════════════════════════════════════════════════════════════════════

@app.post("/cart/{product_id}")
async def add_to_cart(product_id: str):
    try:
        quantity = cart.add(product_id)
    except KeyError:
        raise HTTPException(404, f"Product not found: {product_id}")
    return {"product_id": product_id, "quantity": quantity}


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=False,
        workers=1,
        log_level="info",
    )
