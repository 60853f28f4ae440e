#!/usr/bin/env python3
"""
WalVerse -- Local Development Server
=====================================
One-command launcher for the try-on API on your laptop.

Usage:
    python run_local.py              # Start dev server (auto-reload)
    python run_local.py --no-reload  # Start without auto-reload
    python run_local.py --warmup     # Load models before serving
"""

import argparse
import importlib.util
import os
import sys
from pathlib import Path

# -- Ensure project root is on sys.path --
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def load_env():
    """Load environment variables from app/.env if it exists."""
    env_file = PROJECT_ROOT / "app" / ".env"
    if not env_file.exists():
        print(f"  [INFO] No .env file at {env_file}, using configs/tryon_config.yaml as is")
        return

    with open(env_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())
    print(f"  [OK] Environment loaded from {env_file}")


def check_catalog():
    """Report the product catalog and missing local product images."""
    from tryon_pipeline.catalog import load_catalog
    from tryon_pipeline.platform_utils import load_config

    config = load_config()
    catalog_cfg = config.get("catalog") or {}
    catalog = load_catalog(PROJECT_ROOT / catalog_cfg.get("path", "configs/catalog.yaml"))
    image_dir = PROJECT_ROOT / catalog_cfg.get("image_dir", "assets/products")

    missing = [
        p.id for p in catalog
        if not p.image_ref.startswith(("http://", "https://")) and not (image_dir / p.image_ref).is_file()
    ]
    print(f"  [OK] Catalog: {len(catalog)} products, {len(catalog.tryon_products())} with try-on")
    if missing:
        print(f"  [WARN] Product images missing in {image_dir}: {', '.join(missing)}")


def check_gpu():
    """Check GPU availability and report."""
    from tryon_pipeline.platform_utils import detect_gpu_info

    gpu = detect_gpu_info()
    if gpu["available"]:
        print(f"  [OK] GPU: {gpu['name']} ({gpu['total_memory_gb']:.1f} GB VRAM)")
        return True
    print("  [WARN] No CUDA GPU detected -- segmentation and detection run on CPU")
    return False


def check_dependencies():
    """Quick check that critical packages are installed."""
    missing = [
        pkg for pkg in ["fastapi", "uvicorn", "multipart", "PIL", "numpy", "cv2", "torch", "transformers", "yaml"]
        if importlib.util.find_spec(pkg) is None
    ]
    if missing:
        print(f"  [WARN] Missing packages: {', '.join(missing)}")
        print("    Run: pip install -e .[test]")
    else:
        print("  [OK] Core dependencies OK")


def main():
    parser = argparse.ArgumentParser(description="WalVerse Local Dev Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload")
    parser.add_argument("--warmup", action="store_true", help="Load models on startup")
    args = parser.parse_args()

    print()
    print("=" * 60)
    print("  WalVerse -- Try-On Development Server")
    print("=" * 60)
    print()

    load_env()
    check_dependencies()
    has_gpu = check_gpu()
    check_catalog()

    if args.warmup:
        os.environ["WALVERSE_WARMUP"] = "1"

    print()
    print("-" * 60)
    print(f"  Server starting at: http://localhost:{args.port}")
    print(f"  API docs:           http://localhost:{args.port}/docs")
    print(f"  Health check:       http://localhost:{args.port}/health")
    print(f"  Auto-reload:        {'OFF' if args.no_reload else 'ON'}")
    print(f"  GPU:                {'YES' if has_gpu else 'CPU only'}")
    print("-" * 60)
    print()
    print("  Test commands:")
    print(f"    curl http://localhost:{args.port}/products")
    print()
    print(f'    curl -X POST http://localhost:{args.port}/tryon \\')
    print('      -F "photo=@me.jpg" \\')
    print('      -F "product_id=3"')
    print()
    print("  Press Ctrl+C to stop.")
    print("=" * 60)
    print()

    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        reload_dirs=[str(PROJECT_ROOT / "app"), str(PROJECT_ROOT / "tryon_pipeline")],
        workers=1,
        log_level="info",
    )


if __name__ == "__main__":
    main()
