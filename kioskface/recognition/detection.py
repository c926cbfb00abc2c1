"""Face detection backends and the frame sampler.

The coarse model is dlib's HOG frontal detector, 68-point shape predictor
and ResNet descriptor network: one call yields a box, landmarks and a
128-d identity descriptor. The fine landmark model is MediaPipe FaceMesh,
used only for blink/motion tracking and optional at runtime.

``FrameSampler`` runs the coarse model over a cascade of shrinking input
resolutions and polls a video source until a condition on the extracted
features holds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Protocol

import numpy as np
from PIL import Image

from kioskface.core.models import BoundingBox, CapturedFrame, Detection, FaceFeatures, Frame
from kioskface.exceptions import ModelLoadError
from kioskface.recognition.features import extract_features
from kioskface.recognition.matcher import average_descriptors
from kioskface.recognition.timing import Clock, SystemClock

if TYPE_CHECKING:
    from kioskface.camera import VideoSource

logger = logging.getLogger("kioskface.recognition.detection")

DESCRIPTOR_DIM = 128
DEFAULT_TIERS: tuple[tuple[int, float], ...] = ((512, 0.40), (416, 0.35), (320, 0.30))

try:
    import mediapipe as mp  # type: ignore[import-untyped]

    _HAS_MEDIAPIPE = hasattr(mp, "solutions") and hasattr(mp.solutions, "face_mesh")
except ImportError:
    _HAS_MEDIAPIPE = False


class FaceModel(Protocol):
    """Coarse detector: box + 68 landmarks + descriptor in one call."""

    backend: str

    def detect(self, image: np.ndarray, input_size: int, confidence: float) -> Detection | None: ...


class FineLandmarkModel(Protocol):
    """Dense landmark tracker returning normalized (x, y) points."""

    backend: str

    def process(self, image: np.ndarray) -> np.ndarray | None: ...

    def close(self) -> None: ...


def _resize_longest(image: np.ndarray, input_size: int) -> tuple[np.ndarray, float]:
    """Resize so the longest side equals ``input_size``. Returns (image, scale)."""
    h, w = image.shape[:2]
    longest = max(h, w)
    if longest == 0 or longest == input_size:
        return image, 1.0
    scale = input_size / longest
    size = (max(int(round(w * scale)), 1), max(int(round(h * scale)), 1))
    resized = Image.fromarray(image).resize(size, Image.Resampling.BILINEAR)
    return np.asarray(resized), scale


class DlibFaceModel:
    """dlib HOG detector + 68-point predictor + ResNet face encoder."""

    backend = "dlib"

    def __init__(self, predictor_path: str, encoder_path: str) -> None:
        try:
            import dlib  # type: ignore[import-untyped]
        except ImportError as exc:
            msg = "dlib is not installed; the face detection model cannot be loaded"
            raise ModelLoadError(msg) from exc

        try:
            self._dlib = dlib
            self._detector = dlib.get_frontal_face_detector()
            self._predictor = dlib.shape_predictor(predictor_path)
            self._encoder = dlib.face_recognition_model_v1(encoder_path)
        except RuntimeError as exc:
            msg = f"Failed to load dlib models: {exc}"
            raise ModelLoadError(msg) from exc
        logger.info("dlib face model loaded (predictor=%s)", predictor_path)

    def detect(self, image: np.ndarray, input_size: int, confidence: float) -> Detection | None:
        rgb = np.ascontiguousarray(image[:, :, :3], dtype=np.uint8)
        small, scale = _resize_longest(rgb, input_size)

        # adjust_threshold drops every candidate scoring below the tier confidence
        rects, scores, _ = self._detector.run(np.ascontiguousarray(small), 0, confidence)
        if not rects:
            return None

        best = int(np.argmax(scores))
        r = rects[best]
        rect = self._dlib.rectangle(
            int(r.left() / scale),
            int(r.top() / scale),
            int(r.right() / scale),
            int(r.bottom() / scale),
        )
        shape = self._predictor(rgb, rect)
        landmarks = np.array([[p.x, p.y] for p in shape.parts()], dtype=np.float64)
        descriptor = np.array(
            self._encoder.compute_face_descriptor(rgb, shape, 1), dtype=np.float32
        )

        return Detection(
            box=BoundingBox(
                x=float(rect.left()),
                y=float(rect.top()),
                width=float(rect.width()),
                height=float(rect.height()),
            ),
            landmarks=landmarks,
            descriptor=descriptor,
            score=float(scores[best]),
            input_size=input_size,
        )


class FaceMeshLandmarks:
    """MediaPipe FaceMesh tracker (468 refined landmarks, normalized coords)."""

    backend = "mediapipe-facemesh"

    def __init__(self, min_confidence: float = 0.5) -> None:
        mp_face_mesh = mp.solutions.face_mesh  # type: ignore[attr-defined]
        self._mesh = mp_face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=1,
            refine_landmarks=True,
            min_detection_confidence=min_confidence,
            min_tracking_confidence=min_confidence,
        )
        logger.info("MediaPipe FaceMesh initialized")

    def process(self, image: np.ndarray) -> np.ndarray | None:
        results = self._mesh.process(np.ascontiguousarray(image[:, :, :3], dtype=np.uint8))
        if not results.multi_face_landmarks:
            return None
        lm = results.multi_face_landmarks[0].landmark
        return np.array([[p.x, p.y] for p in lm], dtype=np.float64)

    def close(self) -> None:
        self._mesh.close()


def load_face_mesh() -> FaceMeshLandmarks | None:
    """Return a FaceMesh tracker, or None when MediaPipe is unavailable."""
    if not _HAS_MEDIAPIPE:
        logger.info("MediaPipe FaceMesh not available, blink detection will use EAR fallback")
        return None
    return FaceMeshLandmarks()


class FrameSampler:
    """Pull frames from a video source and run the detector cascade on them.

    Parameters
    ----------
    face_model : FaceModel
        Loaded coarse detector.
    tiers : sequence of (input_size, confidence)
        Tried in order; larger and stricter first.
    clock : Clock | None
        Time source for polling loops.
    extractor : callable
        Maps (image, detection) to ``FaceFeatures``.
    """

    def __init__(
        self,
        face_model: FaceModel,
        tiers: tuple[tuple[int, float], ...] | list[tuple[int, float]] = DEFAULT_TIERS,
        clock: Clock | None = None,
        extractor: Callable[[np.ndarray, Detection], FaceFeatures] = extract_features,
    ) -> None:
        self.face_model = face_model
        self.tiers = tuple(tiers)
        self.clock = clock or SystemClock()
        self.extractor = extractor

    def _cascade(self, image: np.ndarray) -> Detection | None:
        for input_size, confidence in self.tiers:
            detection = self.face_model.detect(image, input_size, confidence)
            if detection is not None:
                return detection
        logger.debug("No face found after %d detector tiers", len(self.tiers))
        return None

    async def detect_image(self, image: np.ndarray) -> Frame | None:
        """Run the cascade on an already captured image.

        The detector runs in a worker thread so the event loop keeps
        delivering progress events while dlib works.
        """
        detection = await asyncio.to_thread(self._cascade, image)
        if detection is None:
            return None
        return Frame(image=image, detection=detection)

    async def detect_once(self, source: VideoSource) -> Frame | None:
        """Read one frame and return the first detection across the cascade."""
        image = await source.read()
        if image is None:
            return None
        return await self.detect_image(image)

    async def sample(self, source: VideoSource, keep_image: bool = False) -> CapturedFrame | None:
        """Detect once and extract features; None when no face was found."""
        frame = await self.detect_once(source)
        return self._capture(frame, keep_image)

    async def sample_image(
        self, image: np.ndarray, keep_image: bool = False
    ) -> CapturedFrame | None:
        """Like :meth:`sample` for an image the caller already read."""
        frame = await self.detect_image(image)
        return self._capture(frame, keep_image)

    def _capture(self, frame: Frame | None, keep_image: bool) -> CapturedFrame | None:
        if frame is None:
            return None
        features = self.extractor(frame.image, frame.detection)
        return CapturedFrame(
            features=features,
            timestamp_ms=self.clock.now_ms(),
            image=frame.image if keep_image else None,
        )

    async def wait_for_condition(
        self,
        source: VideoSource,
        predicate: Callable[[FaceFeatures], bool],
        timeout_ms: float,
        poll_interval_ms: float,
        frame_collector: list[CapturedFrame] | None = None,
        on_face: Callable[[BoundingBox], None] | None = None,
        keep_image: bool = False,
    ) -> bool:
        """Poll until ``predicate(features)`` holds or ``timeout_ms`` elapses.

        Every extracted frame is appended to ``frame_collector`` before the
        predicate sees it.
        """
        deadline = self.clock.now_ms() + timeout_ms
        while self.clock.now_ms() < deadline:
            captured = await self.sample(source, keep_image=keep_image)
            if captured is not None:
                if on_face is not None and captured.features.box is not None:
                    on_face(captured.features.box)
                if frame_collector is not None:
                    frame_collector.append(captured)
                if predicate(captured.features):
                    return True
            await self.clock.sleep(poll_interval_ms)
        return False

    async def capture_descriptor(
        self,
        source: VideoSource,
        frames: int = 5,
        delay_ms: float = 300.0,
    ) -> np.ndarray | None:
        """Element-wise mean of the descriptors found over ``frames`` samples."""
        descriptors: list[np.ndarray] = []
        for i in range(frames):
            if i > 0:
                await self.clock.sleep(delay_ms)
            frame = await self.detect_once(source)
            if frame is not None:
                descriptors.append(np.asarray(frame.detection.descriptor, dtype=np.float64))

        if not descriptors:
            return None
        logger.debug("Averaging %d/%d descriptors", len(descriptors), frames)
        return average_descriptors(descriptors)
