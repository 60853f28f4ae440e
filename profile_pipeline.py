# Module: profile_pipeline
# License: MIT (WalVerse project)
# Description: Per-stage latency profiling of the try-on pipeline.
# Platform: Both (CPU + CUDA)
# Dependencies: torch, numpy, Pillow, transformers

"""
===================================
TRY-ON PERFORMANCE PROFILING
File: profile_pipeline.py
===================================

Profile each stage of the try-on pipeline over N synthetic photos.
Outputs a formatted table with avg/std latency and VRAM peak per stage,
then the wall time of the concurrent segment + locate fan-out.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List

import numpy as np
import torch
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent))

from tryon_pipeline.locate import HFDetector, locate_subject
from tryon_pipeline.normalize import normalize_image
from tryon_pipeline.overlay import compute_placement, render_overlay
from tryon_pipeline.platform_utils import resolve_device
from tryon_pipeline.schema import ProductCategory
from tryon_pipeline.segment import HFSegmenter, remove_background
from tryon_pipeline.tryon import TryOnConfig, run_tryon_sync

logger = logging.getLogger("walverse.profiler")

STAGES = ["Normalize", "Segment", "Locate", "Placement", "Render"]


def create_test_photo(index: int = 0, size=(1536, 2048)) -> Image.Image:
    """Synthetic portrait photo, larger than the normalization bound."""
    rng = np.random.default_rng(index)
    w, h = size
    photo = np.full((h, w, 3), (180, 190, 200), dtype=np.uint8)
    photo[h // 4: h, w // 3: 2 * w // 3] = (90, 60, 50)
    photo[h // 10: h // 4, 2 * w // 5: 3 * w // 5] = (210, 180, 160)
    noise = rng.integers(-10, 10, photo.shape, dtype=np.int16)
    return Image.fromarray(np.clip(photo.astype(np.int16) + noise, 0, 255).astype(np.uint8))


def create_test_overlay() -> Image.Image:
    overlay = Image.new("RGBA", (280, 90), (0, 0, 0, 0))
    overlay.paste((20, 20, 20, 255), (0, 20, 280, 70))
    return overlay


def get_vram_peak() -> float:
    """Peak VRAM usage in GB since the last reset."""
    if torch.cuda.is_available():
        return torch.cuda.max_memory_allocated() / (1024 ** 3)
    return 0.0


def reset_vram_tracking():
    if torch.cuda.is_available():
        torch.cuda.reset_peak_memory_stats()


def profile_stage(fn: Callable, *args, **kwargs) -> Dict:
    """Time a single pipeline stage."""
    reset_vram_tracking()
    start = time.perf_counter()
    result = fn(*args, **kwargs)
    return {
        "time_ms": (time.perf_counter() - start) * 1000,
        "vram_peak_gb": get_vram_peak(),
        "result": result,
    }


def run_profiling(num_photos: int = 5, device: str = "auto", category: str = "glasses") -> None:
    """
    Profile the pipeline stages sequentially over num_photos photos, then
    the full run_tryon() with segmentation and detection in parallel.
    """
    device = resolve_device(device)
    category = ProductCategory(category)
    config = TryOnConfig.load()

    print("=" * 65)
    print(" WalVerse Try-On Pipeline Profiler")
    print(f" Device: {device} | Photos: {num_photos} | Category: {category.value}")
    print("=" * 65)
    print()

    segment = HFSegmenter(config.segmentation_model, device)
    detect = HFDetector(config.detection_model, device)
    overlay = create_test_overlay()
    photos = [create_test_photo(i) for i in range(num_photos)]

    # Warm-up so model loading is not counted against the first photo
    warm = normalize_image(photos[0], config.max_dimension).image
    remove_background(warm, segment)
    locate_subject(warm, detect, category, config.min_confidence)

    stage_times: Dict[str, List[float]] = {name: [] for name in STAGES}
    stage_vram: Dict[str, float] = {name: 0.0 for name in STAGES}

    def record(name: str, res: Dict):
        stage_times[name].append(res["time_ms"])
        stage_vram[name] = max(stage_vram[name], res["vram_peak_gb"])
        return res["result"]

    for i, photo in enumerate(photos):
        print(f"  Photo {i + 1}/{num_photos}...")
        normalized = record("Normalize", profile_stage(normalize_image, photo, config.max_dimension))
        outcome = record("Segment", profile_stage(remove_background, normalized.image, segment))
        detection = record("Locate", profile_stage(
            locate_subject, normalized.image, detect, category, config.min_confidence,
        ))
        placement = record("Placement", profile_stage(
            compute_placement, detection, category, normalized.size, config.placement,
        ))
        record("Render", profile_stage(render_overlay, outcome.image, overlay, placement))

    concurrent = []
    for photo in photos:
        start = time.perf_counter()
        run_tryon_sync(photo, category, segment, detect, config=config)
        concurrent.append((time.perf_counter() - start) * 1000)

    # ── Print Results Table ──────────────────────────────────────────────

    print()
    print(f"{'Stage':20s} | {'Avg (ms)':>10s} | {'Std (ms)':>10s} | {'VRAM Peak (GB)':>14s}")
    print("-" * 20 + "-+-" + "-" * 10 + "-+-" + "-" * 10 + "-+-" + "-" * 14)

    total_avg = 0.0
    slowest_stage, slowest_avg = "", 0.0
    for name in STAGES:
        avg = float(np.mean(stage_times[name]))
        std = float(np.std(stage_times[name]))
        total_avg += avg
        if avg > slowest_avg:
            slowest_stage, slowest_avg = name, avg
        print(f"{name:20s} | {avg:10.1f} | {std:10.1f} | {stage_vram[name]:14.2f}")

    print("-" * 20 + "-+-" + "-" * 10 + "-+-" + "-" * 10 + "-+-" + "-" * 14)
    print(f"{'TOTAL (sequential)':20s} | {total_avg:10.1f} |")
    print(f"{'run_tryon (parallel)':20s} | {np.mean(concurrent):10.1f} | {np.std(concurrent):10.1f} |")
    print()
    print(f"Slowest stage: {slowest_stage} ({slowest_avg:.0f} ms avg)")
    print()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="WalVerse Pipeline Profiler")
    parser.add_argument("--photos", type=int, default=5)
    parser.add_argument("--device", default="auto")
    parser.add_argument("--category", default="glasses", choices=["glasses", "clothing"])
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    run_profiling(num_photos=args.photos, device=args.device, category=args.category)
