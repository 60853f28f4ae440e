# Module: test_tryon
# License: MIT (WalVerse project)
# Description: End-to-end try-on pipeline and session tests with fake inference capabilities.
# Dependencies: pytest, Pillow, numpy

"""
tests/test_tryon.py
Assert:
  - 2000×1000 photo + clothing person box → 1024×512, Detected, torso anchor
    recomputed proportionally, non-fallback placement
  - Stages run Idle → Capturing → Normalizing → Segmenting → Locating → Ready
  - Decode failures end in Failed; inference failures degrade gracefully
  - Segmentation and detection run concurrently
  - Session releases the camera on every exit route
"""

import asyncio
import io
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tryon_pipeline import capture as capture_module
from tryon_pipeline.catalog import Product
from tryon_pipeline.schema import (
    DecodeError,
    Detected,
    DetectionFailed,
    InvalidTransition,
    NotDetected,
    PipelineStage,
    ProductCategory,
    SegmentationFailed,
)
from tryon_pipeline.tryon import (
    TryOnConfig,
    TryOnContext,
    TryOnSession,
    run_tryon,
    run_tryon_sync,
)

SOURCE_BOX = {"xmin": 800, "xmax": 1200, "ymin": 100, "ymax": 900}


def _photo_bytes(width: int = 2000, height: int = 1000) -> bytes:
    arr = np.full((height, width, 3), (180, 160, 150), dtype=np.uint8)
    arr[height // 10: 9 * height // 10, 2 * width // 5: 3 * width // 5] = [200, 180, 170]
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, "JPEG")
    return buf.getvalue()


def _scaled_person_detector(source_width: int = 2000, box=SOURCE_BOX, score: float = 0.9):
    """Detector reporting the person box at whatever resolution it is given."""

    def detect(image):
        factor = image.width / source_width
        return [
            {"label": "person", "score": score, "box": {k: v * factor for k, v in box.items()}},
            {"label": "handbag", "score": 0.97, "box": {"xmin": 0, "ymin": 0, "xmax": 20, "ymax": 20}},
        ]

    return detect


def _background_segmenter(image):
    mask = np.ones((image.height, image.width), dtype=np.float32)
    mask[:, image.width // 3: 2 * image.width // 3] = 0.0
    return mask


def _no_person(image):
    return [{"label": "chair", "score": 0.8, "box": {"xmin": 1, "ymin": 1, "xmax": 9, "ymax": 9}}]


def _raise(exc):
    def fn(image):
        raise exc
    return fn


class TestScenario:

    def test_clothing_on_large_photo(self):
        result = run_tryon_sync(
            _photo_bytes(), ProductCategory.CLOTHING,
            _background_segmenter, _scaled_person_detector(),
        )

        assert result.normalized.size == (1024, 512)
        assert result.normalized.original_size == (2000, 1000)
        assert isinstance(result.detection, Detected)
        assert result.detection.confidence == pytest.approx(0.9)

        # torso anchor in normalized pixels
        anchor = result.detection.anchor
        assert anchor.x == pytest.approx(512.0)
        assert anchor.y == pytest.approx(51.2 + 0.4 * 409.6)

        # proportional back to the source photo
        source = result.detection.to_source(result.normalized.scale)
        assert (source.anchor.x, source.anchor.y) == pytest.approx((1000, 420))
        assert source.scale.width == pytest.approx(320)
        assert source.scale.height == pytest.approx(480)

        assert not result.placement.fallback
        assert result.placement.width == pytest.approx(0.8 * 204.8)
        assert result.placement.height == pytest.approx(0.6 * 409.6)
        assert result.segmented
        assert result.warnings == ()

    def test_eyewear_on_large_photo(self):
        result = run_tryon_sync(
            _photo_bytes(), ProductCategory.EYEWEAR,
            _background_segmenter, _scaled_person_detector(),
        )

        face_width = 204.8
        assert result.placement.width == pytest.approx(max(120, 0.7 * face_width))
        assert result.detection.anchor.y == pytest.approx(51.2 + 0.3 * 409.6)


class TestStateMachine:

    def test_stage_sequence(self):
        stages = []
        context = TryOnContext(category=ProductCategory.EYEWEAR, on_progress=stages.append)

        run_tryon_sync(
            _photo_bytes(640, 480), ProductCategory.EYEWEAR,
            _background_segmenter, _scaled_person_detector(640),
            context=context,
        )

        assert stages == [
            PipelineStage.CAPTURING,
            PipelineStage.NORMALIZING,
            PipelineStage.SEGMENTING,
            PipelineStage.LOCATING,
            PipelineStage.READY,
        ]
        assert context.stage == PipelineStage.READY

    def test_decode_failure_is_fatal(self):
        context = TryOnContext(category=ProductCategory.CLOTHING)

        with pytest.raises(DecodeError):
            run_tryon_sync(
                b"definitely not a jpeg", ProductCategory.CLOTHING,
                _background_segmenter, _scaled_person_detector(),
                context=context,
            )

        assert context.stage == PipelineStage.FAILED
        assert isinstance(context.failure, DecodeError)
        with pytest.raises(InvalidTransition):
            context.advance(PipelineStage.READY)

    def test_context_reused_after_failure(self):
        context = TryOnContext(category=ProductCategory.CLOTHING)
        with pytest.raises(DecodeError):
            run_tryon_sync(b"", ProductCategory.CLOTHING, _background_segmenter, _no_person,
                           context=context)

        result = run_tryon_sync(_photo_bytes(300, 300), ProductCategory.CLOTHING,
                                _background_segmenter, _no_person, context=context)

        assert context.stage == PipelineStage.READY
        assert context.failure is None
        assert result.placement.fallback

    def test_illegal_transition(self):
        context = TryOnContext(category=ProductCategory.EYEWEAR)
        with pytest.raises(InvalidTransition):
            context.advance(PipelineStage.READY)

    def test_result_before_ready(self):
        with pytest.raises(InvalidTransition):
            TryOnContext(category=ProductCategory.EYEWEAR).result()

    def test_jewelry_rejected_before_start(self):
        context = TryOnContext(category=ProductCategory.JEWELRY)
        with pytest.raises(ValueError):
            run_tryon_sync(_photo_bytes(100, 100), ProductCategory.JEWELRY,
                           _background_segmenter, _no_person, context=context)
        assert context.stage == PipelineStage.IDLE


class TestGracefulDegradation:

    def test_segmentation_failure(self):
        photo = Image.new("RGB", (320, 240), (12, 34, 56))
        result = run_tryon_sync(photo, ProductCategory.EYEWEAR,
                                _raise(RuntimeError("no gpu")), _scaled_person_detector(320))

        arr = np.asarray(result.image)
        assert not result.segmented
        assert (arr[:, :, 3] == 255).all()
        assert (arr[:, :, :3] == (12, 34, 56)).all()
        assert isinstance(result.detection, Detected)
        assert [type(w) for w in result.warnings] == [SegmentationFailed]

    def test_detection_failure(self):
        result = run_tryon_sync(_photo_bytes(400, 400), ProductCategory.CLOTHING,
                                _background_segmenter, _raise(OSError("model missing")))

        assert isinstance(result.detection, NotDetected)
        assert result.placement.fallback
        assert (result.placement.width, result.placement.height) == (180, 220)
        assert [type(w) for w in result.warnings] == [DetectionFailed]

    def test_no_person_is_not_a_warning(self):
        result = run_tryon_sync(_photo_bytes(400, 400), ProductCategory.EYEWEAR,
                                _background_segmenter, _no_person)

        assert result.placement.fallback
        assert (result.placement.x, result.placement.y) == pytest.approx((200, 140))
        assert result.warnings == ()

    def test_non_finite_detection_falls_back(self):
        def nan_detector(image):
            return [
                {"label": "person", "score": float("nan"), "box": {"xmin": 10, "ymin": 10, "xmax": 200, "ymax": 380}},
                {"label": "person", "score": 0.9, "box": {"xmin": float("nan"), "ymin": 10, "xmax": 200, "ymax": 380}},
            ]

        context = TryOnContext(category=ProductCategory.EYEWEAR)
        result = run_tryon_sync(_photo_bytes(400, 400), ProductCategory.EYEWEAR,
                                _background_segmenter, nan_detector, context=context)

        assert context.stage == PipelineStage.READY
        assert isinstance(result.detection, NotDetected)
        assert result.placement.fallback
        assert result.render(Image.new("RGBA", (70, 20), (0, 0, 0, 255))).size == (400, 400)

    def test_low_confidence_person_ignored(self):
        result = run_tryon_sync(_photo_bytes(400, 400), ProductCategory.EYEWEAR,
                                _background_segmenter, _scaled_person_detector(400, score=0.3))

        assert isinstance(result.detection, NotDetected)
        assert result.placement.fallback

    def test_inference_timeout(self):
        def slow_segment(image):
            time.sleep(0.5)
            return _background_segmenter(image)

        config = TryOnConfig(inference_timeout=0.05)
        with ThreadPoolExecutor(max_workers=2) as pool:
            result = run_tryon_sync(_photo_bytes(200, 200), ProductCategory.EYEWEAR,
                                    slow_segment, _scaled_person_detector(200),
                                    config=config, executor=pool)

        assert not result.segmented
        assert isinstance(result.warnings[0], SegmentationFailed)
        assert "timed out" in str(result.warnings[0])


class TestConcurrency:

    def test_inference_calls_overlap(self):
        # Each capability waits for the other; sequential execution would break the barrier.
        barrier = threading.Barrier(2, timeout=5)
        detect = _scaled_person_detector(300)

        def segment(image):
            barrier.wait()
            return _background_segmenter(image)

        def locate(image):
            barrier.wait()
            return detect(image)

        with ThreadPoolExecutor(max_workers=2) as pool:
            result = run_tryon_sync(_photo_bytes(300, 300), ProductCategory.EYEWEAR,
                                    segment, locate, executor=pool)

        assert result.segmented
        assert isinstance(result.detection, Detected)

    def test_photo_acquired_off_event_loop(self):
        grabbed = []

        def grab():
            grabbed.append(threading.get_ident())
            return Image.new("RGB", (320, 240), (40, 40, 40))

        async def main():
            await run_tryon(grab, ProductCategory.EYEWEAR, _background_segmenter, _no_person)
            return threading.get_ident()

        loop_thread = asyncio.run(main())
        assert len(grabbed) == 1
        assert grabbed[0] != loop_thread

    def test_async_entry_point(self):
        async def main():
            return await run_tryon(_photo_bytes(256, 256), ProductCategory.CLOTHING,
                                   _background_segmenter, _scaled_person_detector(256))

        assert asyncio.run(main()).detection.detected


class TestRecompute:

    def test_switch_category_reanchors(self):
        result = run_tryon_sync(_photo_bytes(), ProductCategory.EYEWEAR,
                                _background_segmenter, _scaled_person_detector())
        clothing = result.with_category(ProductCategory.CLOTHING)

        assert clothing.category == ProductCategory.CLOTHING
        assert clothing.detection.anchor.y == pytest.approx(51.2 + 0.4 * 409.6)
        assert clothing.placement.width == pytest.approx(0.8 * 204.8)
        assert clothing.image is result.image

    def test_render_preview(self):
        result = run_tryon_sync(_photo_bytes(400, 300), ProductCategory.EYEWEAR,
                                _background_segmenter, _no_person)
        preview = result.render(Image.new("RGBA", (70, 20), (0, 0, 0, 255)))

        assert preview.size == (400, 300)
        assert preview.mode == "RGBA"


class TestConfig:

    def test_bundled_config(self):
        config = TryOnConfig.load(Path(__file__).resolve().parent.parent / "configs" / "tryon_config.yaml")

        assert config.max_dimension == 1024
        assert config.min_confidence == 0.5
        assert config.inference_timeout is None
        assert config.placement.eyewear.min_width == 120
        assert config.placement.clothing.fallback_size == (180, 220)

    def test_from_dict_defaults(self):
        config = TryOnConfig.from_dict({"inference_timeout": 12, "models": {"detection": "x/y"}})

        assert config.inference_timeout == 12.0
        assert config.detection_model == "x/y"
        assert config.max_dimension == 1024


# ═══════════════════════════════════════════════════════════════════════
# SESSION
# ═══════════════════════════════════════════════════════════════════════


class _FakeCapture:
    def __init__(self, index):
        self.released = False

    def isOpened(self):
        return True

    def read(self):
        return True, np.full((480, 640, 3), 90, dtype=np.uint8)

    def release(self):
        self.released = True


PRODUCTS = [
    Product("3", "Stylish Sunglasses", 1599, "sunglasses.png", ProductCategory.EYEWEAR),
    Product("1", "Cotton Casual T-Shirt", 899, "tshirt.png", ProductCategory.CLOTHING),
    Product("4", "Smart Fitness Watch", 4999, "watch.png", ProductCategory.JEWELRY),
]


@pytest.fixture
def cameras(monkeypatch):
    opened = []

    def factory(index):
        cap = _FakeCapture(index)
        opened.append(cap)
        return cap

    monkeypatch.setattr(capture_module.cv2, "VideoCapture", factory)
    return opened


class TestSession:

    def _session(self, **kwargs):
        return TryOnSession(PRODUCTS, _background_segmenter, _scaled_person_detector(), **kwargs)

    def test_defaults_to_first_product(self):
        assert self._session().selected.id == "3"

    def test_capture_releases_camera(self, cameras):
        session = self._session()
        session.start_camera()
        result = asyncio.run(session.capture())

        assert not session.camera.active
        assert cameras[0].released
        assert result.normalized.size == (640, 480)
        assert session.context.source.value == "camera"

    def test_upload_stops_camera(self, cameras):
        session = self._session()
        session.start_camera()
        asyncio.run(session.upload(_photo_bytes(640, 480)))

        assert cameras[0].released
        assert session.result is not None

    def test_failed_upload_clears_result(self, cameras):
        session = self._session()
        asyncio.run(session.upload(_photo_bytes(640, 480)))

        with pytest.raises(DecodeError):
            asyncio.run(session.upload(b"garbage"))
        assert session.result is None
        assert session.context.stage == PipelineStage.FAILED

    def test_select_product_recomputes_placement(self):
        session = self._session()
        asyncio.run(session.upload(_photo_bytes(640, 480)))
        eyewear_width = session.result.placement.width

        session.select_product("1")

        assert session.result.category == ProductCategory.CLOTHING
        assert session.result.placement.width != eyewear_width

    def test_session_executor_used(self):
        class CountingPool(ThreadPoolExecutor):
            submitted = 0

            def submit(self, fn, *args, **kwargs):
                CountingPool.submitted += 1
                return super().submit(fn, *args, **kwargs)

        with CountingPool(max_workers=2) as pool:
            session = self._session(executor=pool)
            asyncio.run(session.upload(_photo_bytes(320, 240)))

        # acquire, normalize, segment, locate
        assert CountingPool.submitted == 4

    def test_select_unknown_product(self):
        with pytest.raises(KeyError):
            self._session().select_product("99")

    def test_jewelry_cannot_be_tried_on(self):
        session = self._session()
        session.select_product("4")
        with pytest.raises(ValueError):
            asyncio.run(session.upload(_photo_bytes(100, 100)))

    def test_add_to_cart_callback(self):
        added = []
        session = self._session(on_add_to_cart=added.append)
        session.select_product("1")
        session.add_to_cart()

        assert added == ["1"]

    def test_reset_and_close_release_camera(self, cameras):
        session = self._session()
        session.start_camera()
        session.reset()
        assert cameras[0].released
        assert session.result is None
        assert session.context.stage == PipelineStage.IDLE

        with self._session() as other:
            other.start_camera()
        assert cameras[1].released

    def test_capture_without_camera(self):
        from tryon_pipeline.schema import CaptureError

        with pytest.raises(CaptureError):
            asyncio.run(self._session().capture())


class TestLoadConfig:

    def test_env_expansion_and_override(self, tmp_path, monkeypatch):
        from tryon_pipeline.platform_utils import load_config

        path = tmp_path / "custom.yaml"
        path.write_text("device: ${TRYON_TEST_DEVICE}\nmin_confidence: 0.7\n", encoding="utf-8")
        monkeypatch.setenv("TRYON_TEST_DEVICE", "cpu")
        monkeypatch.setenv("WALVERSE_CONFIG", str(path))

        config = TryOnConfig.from_dict(load_config())

        assert config.device == "cpu"
        assert config.min_confidence == 0.7

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TryOnConfig.load(tmp_path / "nope.yaml")
