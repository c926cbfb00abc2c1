"""Domain models for the liveness pipeline.

- Detection / Frame: what the sampler saw in one camera frame
- FaceFeatures: immutable per-frame measurements
- LivenessSession: the state of one verification attempt
- LivenessEvent: progress stream emitted by the scorer
- LivenessResult: what the caller reads at the end
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union
from uuid import uuid4

import numpy as np
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CheckStatus(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    PASSED = "passed"
    FAILED = "failed"


class CheckKey(str, Enum):
    FACE_DETECTED = "faceDetected"
    TEXTURE_ANALYSIS = "textureAnalysis"
    SCREEN_DETECTION = "screenDetection"
    EYE_OPENNESS = "eyeOpenness"
    BLINK_DETECTED = "blinkDetected"
    MOTION_DETECTED = "motionDetected"
    CONSISTENT_DESCRIPTOR = "consistentDescriptor"


CHECK_ORDER: tuple[CheckKey, ...] = tuple(CheckKey)

CORE_CHECKS: frozenset[CheckKey] = frozenset(
    {
        CheckKey.FACE_DETECTED,
        CheckKey.TEXTURE_ANALYSIS,
        CheckKey.SCREEN_DETECTION,
        CheckKey.EYE_OPENNESS,
        CheckKey.CONSISTENT_DESCRIPTOR,
    }
)

PROOF_CHECKS: frozenset[CheckKey] = frozenset(
    {CheckKey.BLINK_DETECTED, CheckKey.MOTION_DETECTED}
)


# ---------------------------------------------------------------------------
# Per-frame data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BoundingBox:
    """Face box in pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    def clip_slices(self, height: int, width: int) -> tuple[slice, slice]:
        """Row/column slices of this box clipped to an image of the given size."""
        y0 = min(max(int(self.y), 0), height)
        x0 = min(max(int(self.x), 0), width)
        y1 = min(max(int(self.y + self.height), y0), height)
        x1 = min(max(int(self.x + self.width), x0), width)
        return slice(y0, y1), slice(x0, x1)


@dataclass
class Detection:
    """A single face found by the coarse detector."""

    box: BoundingBox
    landmarks: np.ndarray = field(repr=False)  # (68, 2) pixel coords
    descriptor: np.ndarray = field(repr=False)  # (128,) float32
    score: float
    input_size: int


@dataclass
class Frame:
    """One captured RGB image plus the detection valid for it."""

    image: np.ndarray = field(repr=False)  # (H, W, 3) uint8 RGB
    detection: Detection


@dataclass(frozen=True)
class EyeOpenness:
    left_ear: float
    right_ear: float
    left_gap: float
    right_gap: float

    @property
    def mean_gap(self) -> float:
        return (self.left_gap + self.right_gap) / 2.0


@dataclass(frozen=True)
class HeadPose:
    yaw: float
    pitch: float


@dataclass(frozen=True)
class ColorStats:
    variance: float
    blue_ratio: float
    saturation_variance: float
    brightness_uniformity: float


@dataclass(frozen=True)
class FaceFeatures:
    """Measurements derived from one frame. Computed once, never mutated."""

    eyes: EyeOpenness
    mouth_ratio: float
    pose: HeadPose
    texture_variance: float
    color: ColorStats
    moire_energy: float
    reflection_ratio: float
    face_center: tuple[float, float]
    face_size: tuple[float, float]
    nose_tip: tuple[float, float]
    jaw_width: float
    descriptor: np.ndarray = field(repr=False, compare=False)
    box: BoundingBox | None = None


@dataclass
class CapturedFrame:
    """A frame that survived extraction, kept for later cross-frame checks."""

    features: FaceFeatures
    timestamp_ms: float
    image: np.ndarray | None = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class LivenessCheckResult:
    key: CheckKey
    status: CheckStatus = CheckStatus.PENDING

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASSED


@dataclass
class LivenessSession:
    """State of one verification attempt, threaded through every step."""

    session_id: str = field(default_factory=lambda: uuid4().hex[:12])
    checks: list[LivenessCheckResult] = field(
        default_factory=lambda: [LivenessCheckResult(key) for key in CHECK_ORDER]
    )
    straight_frames: list[CapturedFrame] = field(default_factory=list)
    all_frames: list[CapturedFrame] = field(default_factory=list)
    thumbnails: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    result: LivenessResult | None = None

    def check(self, key: CheckKey) -> LivenessCheckResult:
        for item in self.checks:
            if item.key is key:
                return item
        raise KeyError(key)

    def passed(self, key: CheckKey) -> bool:
        return self.check(key).passed

    def snapshot(self) -> dict[str, bool]:
        return {item.key.value: item.passed for item in self.checks}

    @property
    def is_live(self) -> bool:
        core = all(self.passed(k) for k in CORE_CHECKS)
        proof = any(self.passed(k) for k in PROOF_CHECKS)
        return core and proof


class LivenessResult(BaseModel):
    """Outcome handed back to the caller of a liveness scan."""

    is_live: bool
    checks: dict[str, bool]
    message: str
    captured_frames: list[str] = Field(default_factory=list)
    session_id: str = ""


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressEvent:
    step: CheckKey
    status: CheckStatus


@dataclass(frozen=True)
class InstructionEvent:
    text: str


@dataclass(frozen=True)
class FrameEvent:
    thumbnail: str
    index: int


@dataclass(frozen=True)
class FaceUpdateEvent:
    box: BoundingBox


@dataclass(frozen=True)
class CompletedEvent:
    result: LivenessResult


LivenessEvent = Union[ProgressEvent, InstructionEvent, FrameEvent, FaceUpdateEvent, CompletedEvent]
