"""Live video sources and thumbnail encoding.

A ``VideoSource`` hands out RGB frames on demand. The OpenCV implementation
wraps ``cv2.VideoCapture``; closing it is the authoritative way to release
the camera when a scan is abandoned.
"""

from __future__ import annotations

import base64
import io
import logging
from typing import Protocol

import numpy as np
from PIL import Image

from kioskface.exceptions import CameraError

logger = logging.getLogger("kioskface.camera")

DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480


class VideoSource(Protocol):
    async def read(self) -> np.ndarray | None: ...

    def close(self) -> None: ...


class OpenCVVideoSource:
    """Camera source backed by OpenCV.

    The device is opened lazily on the first read so that constructing the
    source never touches hardware.
    """

    def __init__(
        self,
        index: int = 0,
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
    ) -> None:
        self.index = index
        self.width = width
        self.height = height
        self._cap = None

    def open(self) -> None:
        import cv2

        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            msg = f"Camera {self.index} could not be opened (missing device or permission denied)"
            raise CameraError(msg)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap
        logger.info("Camera %d opened at %dx%d", self.index, self.width, self.height)

    async def read(self) -> np.ndarray | None:
        import cv2

        if self._cap is None:
            self.open()
        ok, frame = self._cap.read()  # type: ignore[union-attr]
        if not ok or frame is None:
            logger.debug("Camera %d returned no frame", self.index)
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera %d released", self.index)

    def __enter__(self) -> OpenCVVideoSource:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def encode_thumbnail(image: np.ndarray, quality: int = 50, max_width: int = 320) -> str:
    """Encode an RGB frame as a JPEG ``data:`` URL for audit display."""
    img = Image.fromarray(np.ascontiguousarray(image[:, :, :3], dtype=np.uint8))
    if img.width > max_width:
        ratio = max_width / img.width
        img = img.resize((max_width, max(int(img.height * ratio), 1)), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
