# Module: test_normalize
# License: MIT (WalVerse project)
# Description: Image decoding and normalization tests.
# Dependencies: pytest, Pillow, numpy

"""
tests/test_normalize.py
Assert:
  - Images within 1024 keep their dimensions
  - Oversized images get a 1024 longer side, aspect within one pixel
  - Undecodable input raises DecodeError
"""

import io
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tryon_pipeline.normalize import decode_image, normalize_image, target_size
from tryon_pipeline.schema import DecodeError


def _encode(image: Image.Image, fmt: str = "PNG", **kwargs) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


class TestTargetSize:

    @pytest.mark.parametrize("size", [(1024, 1024), (640, 480), (1, 1024), (1024, 1), (300, 900)])
    def test_within_bounds_unchanged(self, size):
        assert target_size(*size) == size

    @pytest.mark.parametrize("size", [(2000, 1000), (1000, 3000), (4032, 3024), (1025, 1), (1500, 1500)])
    def test_oversized_clamped(self, size):
        w, h = size
        new_w, new_h = target_size(w, h)

        assert max(new_w, new_h) == 1024
        if w >= h:
            assert abs(new_h - h * 1024 / w) <= 1
        else:
            assert abs(new_w - w * 1024 / h) <= 1

    def test_known_values(self):
        assert target_size(2000, 1000) == (1024, 512)
        assert target_size(1000, 3000) == (341, 1024)
        assert target_size(4032, 3024) == (1024, 768)

    def test_non_positive_rejected(self):
        with pytest.raises(ValueError):
            target_size(0, 10)


class TestNormalizeImage:

    def test_small_image_kept(self):
        img = Image.new("RGB", (640, 480), (10, 20, 30))
        result = normalize_image(img)

        assert result.size == (640, 480)
        assert result.scale == 1.0
        assert not result.resized
        assert np.array_equal(np.asarray(result.image), np.asarray(img))

    def test_large_image_downsampled(self):
        img = Image.new("RGB", (2000, 1000), (200, 100, 50))
        result = normalize_image(img)

        assert result.size == (1024, 512)
        assert result.original_size == (2000, 1000)
        assert result.scale == pytest.approx(0.512)
        assert result.image.mode == "RGB"

    def test_custom_max_dimension(self):
        img = Image.new("RGB", (800, 400))
        assert normalize_image(img, max_dimension=512).size == (512, 256)

    def test_rgba_converted(self):
        img = Image.new("RGBA", (100, 100), (1, 2, 3, 0))
        assert normalize_image(img).image.mode == "RGB"


class TestDecodeImage:

    def test_png_bytes(self):
        data = _encode(Image.new("RGBA", (64, 32), (255, 0, 0, 128)))
        img = decode_image(data)

        assert img.size == (64, 32)
        assert img.mode == "RGB"

    def test_file_path(self, tmp_path):
        path = tmp_path / "photo.jpg"
        Image.new("RGB", (40, 30), (0, 128, 0)).save(path, "JPEG")

        assert decode_image(path).size == (40, 30)

    def test_exif_orientation_applied(self):
        exif = Image.Exif()
        exif[0x0112] = 6  # rotated 90° clockwise
        data = _encode(Image.new("RGB", (100, 50)), "JPEG", exif=exif)

        assert decode_image(data).size == (50, 100)

    @pytest.mark.parametrize("data", [b"", b"not an image at all"])
    def test_garbage_raises(self, data):
        with pytest.raises(DecodeError):
            decode_image(data)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DecodeError):
            decode_image(tmp_path / "missing.png")
