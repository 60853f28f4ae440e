# Module: capture
# License: MIT (WalVerse project)
# Description: Photo sources — camera snapshots as a scoped resource, and file uploads.
# Platform: Both
# Dependencies: opencv-python-headless, Pillow

"""
Capture / Upload Source
=======================
The camera is acquired on start() and released on stop(), after a capture
that switches to photo mode, on context-manager exit and on close(). stop()
is idempotent, so every exit path can call it.

    with CameraSession() as camera:
        photo = camera.capture()

Uploads are decoded through the normalizer's decode_image().
"""

import logging
from pathlib import Path
from typing import Union

import cv2
from PIL import Image

from tryon_pipeline.normalize import decode_image
from tryon_pipeline.schema import CaptureError

logger = logging.getLogger("walverse.capture")


class CameraSession:
    """A single camera stream, open between start() and stop()."""

    def __init__(self, device_index: int = 0):
        self.device_index = device_index
        self._capture = None

    @property
    def active(self) -> bool:
        return self._capture is not None

    def start(self) -> "CameraSession":
        """Open the camera. Calling start() on an active session is a no-op."""
        if self._capture is not None:
            return self

        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(f"Cannot open camera {self.device_index}")

        self._capture = capture
        logger.info("Camera %d started", self.device_index)
        return self

    def stop(self) -> None:
        """Release the camera stream."""
        if self._capture is None:
            return
        try:
            self._capture.release()
        finally:
            self._capture = None
            logger.info("Camera %d stopped", self.device_index)

    def snapshot(self) -> Image.Image:
        """
        Grab the current frame.

        Returns:
            PIL.Image in RGB mode.

        Raises:
            CaptureError: If the camera is not active or the read fails.
        """
        if self._capture is None:
            raise CaptureError("Camera is not active")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CaptureError(f"Failed to read frame from camera {self.device_index}")

        return Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    def capture(self, stop_after: bool = True) -> Image.Image:
        """
        Take a snapshot; by default the camera is released afterwards,
        whether or not the read succeeded.
        """
        try:
            return self.snapshot()
        finally:
            if stop_after:
                self.stop()

    def close(self) -> None:
        self.stop()

    def __enter__(self) -> "CameraSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def load_upload(source: Union[bytes, str, Path]) -> Image.Image:
    """Decode an uploaded photo (bytes or file path). Raises DecodeError."""
    image = decode_image(source)
    logger.info("Upload decoded: %dx%d", image.width, image.height)
    return image
