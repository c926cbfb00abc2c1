"""Shared fakes and fixtures for KioskFace tests."""

from __future__ import annotations

import numpy as np
import pytest

from kioskface.config import Settings
from kioskface.core.models import (
    BoundingBox,
    ColorStats,
    Detection,
    EyeOpenness,
    FaceFeatures,
    HeadPose,
)
from kioskface.recognition.blink import LEFT_LID_PAIRS, MESH_NOSE_TIP, RIGHT_LID_PAIRS
from kioskface.recognition.detection import DESCRIPTOR_DIM
from kioskface.recognition.model_manager import FaceModelService

MESH_POINTS = 478
FACE_BOX = BoundingBox(x=100.0, y=80.0, width=120.0, height=140.0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Virtual clock: ``sleep`` advances time instantly."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self.t = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> float:
        return self.t

    async def sleep(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.t += ms


class FakeVideoSource:
    """Returns the same RGB image on every read; set ``image`` to None for no frame."""

    def __init__(self, image: np.ndarray | None = None) -> None:
        self.image = (
            image if image is not None else np.full((240, 320, 3), 128, dtype=np.uint8)
        )
        self.reads = 0
        self.closed = False

    async def read(self) -> np.ndarray | None:
        self.reads += 1
        return self.image

    def close(self) -> None:
        self.closed = True


def make_landmarks(nose_dx: float = 0.0, eye_height: float = 4.8) -> np.ndarray:
    """Frontal 68-point layout inside ``FACE_BOX``.

    Eyes are 24 px wide, so the default height gives an EAR of 0.2. The
    nose sits on the jaw midline at the neutral pitch height.
    """
    pts = np.tile(np.array(FACE_BOX.center), (68, 1)).astype(np.float64)
    for i, x in enumerate(np.linspace(100.0, 220.0, 17)):
        pts[i] = (x, 130.0 + 60.0 * np.sin(np.pi * i / 16))

    def eye(x0: float, y: float) -> np.ndarray:
        w, h = 24.0, eye_height
        return np.array(
            [
                (x0, y),
                (x0 + w / 3, y - h / 2),
                (x0 + 2 * w / 3, y - h / 2),
                (x0 + w, y),
                (x0 + 2 * w / 3, y + h / 2),
                (x0 + w / 3, y + h / 2),
            ]
        )

    pts[36:42] = eye(118.0, 130.0)
    pts[42:48] = eye(178.0, 130.0)
    pts[30] = (160.0 + nose_dx, 80.0 + 0.6 * 140.0)
    pts[48] = (140.0, 190.0)
    pts[54] = (180.0, 190.0)
    pts[62] = (160.0, 188.0)
    pts[66] = (160.0, 192.0)
    return pts


def make_detection(
    descriptor: np.ndarray | None = None,
    landmarks: np.ndarray | None = None,
    box: BoundingBox = FACE_BOX,
    input_size: int = 512,
) -> Detection:
    return Detection(
        box=box,
        landmarks=landmarks if landmarks is not None else make_landmarks(),
        descriptor=(
            descriptor
            if descriptor is not None
            else np.full(DESCRIPTOR_DIM, 0.1, dtype=np.float32)
        ),
        score=1.0,
        input_size=input_size,
    )


def make_features(
    ear: float = 0.3,
    gap: float = 6.0,
    yaw: float = 0.0,
    pitch: float = 0.0,
    texture: float = 80.0,
    moire: float = 0.05,
    reflection: float = 0.0,
    blue_ratio: float = 0.05,
    saturation_variance: float = 0.01,
    color_variance: float = 500.0,
    brightness_variance: float = 600.0,
    nose: tuple[float, float] = (160.0, 164.0),
    descriptor: np.ndarray | None = None,
) -> FaceFeatures:
    """Features of a well-lit real face, overridable per signal."""
    return FaceFeatures(
        eyes=EyeOpenness(left_ear=ear, right_ear=ear, left_gap=gap, right_gap=gap),
        mouth_ratio=0.05,
        pose=HeadPose(yaw=yaw, pitch=pitch),
        texture_variance=texture,
        color=ColorStats(
            variance=color_variance,
            blue_ratio=blue_ratio,
            saturation_variance=saturation_variance,
            brightness_uniformity=brightness_variance,
        ),
        moire_energy=moire,
        reflection_ratio=reflection,
        face_center=FACE_BOX.center,
        face_size=(FACE_BOX.width, FACE_BOX.height),
        nose_tip=nose,
        jaw_width=120.0,
        descriptor=(
            descriptor
            if descriptor is not None
            else np.full(DESCRIPTOR_DIM, 0.1, dtype=np.float32)
        ),
        box=FACE_BOX,
    )


class FakeFaceModel:
    """Scripted coarse detector.

    ``accept_sizes`` limits which cascade tiers find a face. ``descriptors``
    are handed out one per successful detection. After ``max_detections``
    successes every call misses.
    """

    backend = "fake"

    def __init__(
        self,
        accept_sizes: set[int] | None = None,
        descriptors: list[np.ndarray] | None = None,
        max_detections: int | None = None,
    ) -> None:
        self.accept_sizes = accept_sizes
        self.descriptors = list(descriptors) if descriptors else []
        self.max_detections = max_detections
        self.calls: list[tuple[int, float]] = []
        self.hits = 0

    def detect(self, image: np.ndarray, input_size: int, confidence: float) -> Detection | None:
        self.calls.append((input_size, confidence))
        if self.accept_sizes is not None and input_size not in self.accept_sizes:
            return None
        if self.max_detections is not None and self.hits >= self.max_detections:
            return None
        descriptor = self.descriptors[self.hits] if self.hits < len(self.descriptors) else None
        self.hits += 1
        return make_detection(descriptor=descriptor, input_size=input_size)


class FakeLandmarkModel:
    """Scripted FaceMesh stand-in.

    The i-th ``process`` call uses ``gaps[i]`` (eyelid gap, or None for a
    lost face) and ``noses[i]``; both lists repeat their last entry.
    """

    backend = "fake-mesh"

    def __init__(
        self,
        gaps: list[float | None] | None = None,
        noses: list[tuple[float, float]] | None = None,
    ) -> None:
        self.gaps = gaps or [0.03]
        self.noses = noses or [(0.5, 0.5)]
        self.calls = 0
        self.closed = False

    def process(self, image: np.ndarray) -> np.ndarray | None:
        i = self.calls
        self.calls += 1
        gap = self.gaps[min(i, len(self.gaps) - 1)]
        if gap is None:
            return None
        points = np.full((MESH_POINTS, 2), 0.5, dtype=np.float64)
        points[0] = (0.3, 0.3)
        points[-1] = (0.7, 0.8)
        for top, bottom in LEFT_LID_PAIRS + RIGHT_LID_PAIRS:
            points[top] = (0.45, 0.42)
            points[bottom] = (0.45, 0.42 + gap)
        points[MESH_NOSE_TIP] = self.noses[min(i, len(self.noses) - 1)]
        return points

    def close(self) -> None:
        self.closed = True


def blink_gaps(
    closed_at: int, closed_polls: int, open_gap: float = 0.03, closed_gap: float = 0.005
) -> list[float | None]:
    """Eyelid gaps with one closure starting at poll ``closed_at``."""
    gaps: list[float | None] = [open_gap] * closed_at
    gaps += [closed_gap] * closed_polls
    gaps.append(open_gap)
    return gaps


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def source() -> FakeVideoSource:
    return FakeVideoSource()


@pytest.fixture()
def face_model() -> FakeFaceModel:
    return FakeFaceModel()


@pytest.fixture()
def cfg() -> Settings:
    """Default settings, independent of any KF_* variables in the environment."""
    return Settings.model_construct()


@pytest.fixture()
def service_factory():
    """Build a ``FaceModelService`` around fake models."""

    def _build(
        face_model: FakeFaceModel | None = None,
        landmark_model: FakeLandmarkModel | None = None,
    ) -> FaceModelService:
        fm = face_model or FakeFaceModel()
        return FaceModelService(
            face_model_factory=lambda: fm,
            landmark_model_factory=lambda: landmark_model,
        )

    return _build
