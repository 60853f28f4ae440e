# Module: tryon_pipeline
# License: MIT (WalVerse project)
# Description: WalVerse try-on package — capture, normalization, segmentation, subject location, overlay placement.
# Platform: Both (CPU + CUDA)
# Dependencies: See pyproject.toml

"""
WalVerse Try-On Pipeline
========================
Provides the virtual try-on flow behind the storefront:
  - Photo capture and upload (capture)
  - Image normalization (normalize)
  - Background removal (segment)
  - Person location and anchor estimation (locate)
  - Overlay placement and preview rendering (overlay)
  - Pipeline orchestration and try-on session (tryon)
  - Product catalog and cart (catalog)
"""

__version__ = "0.1.0"
__license__ = "MIT"
