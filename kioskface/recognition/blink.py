"""Blink and head-motion detection for the liveness-proof step.

Two strategies share ``BlinkTracker`` and the constants in ``timing``:

- ``LandmarkBlinkDetector`` tracks raw eyelid gaps and the nose tip from
  MediaPipe FaceMesh at a tight polling interval.
- ``EarBlinkDetector`` is the fallback when no fine landmark model is
  loaded. It drives the same state machine from the coarse detector's
  eyelid heights, relative to a per-session baseline.

The strategy is chosen once per session by ``select_blink_detector``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

import numpy as np

from kioskface.core.models import BoundingBox, CapturedFrame
from kioskface.recognition.detection import FineLandmarkModel, FrameSampler
from kioskface.recognition.timing import DEFAULT_TIMING, BlinkTiming, Clock, SystemClock

if TYPE_CHECKING:
    from kioskface.camera import VideoSource

logger = logging.getLogger("kioskface.recognition.blink")

EPS = 1e-6

# FaceMesh indices: two upper/lower eyelid pairs per eye, nose tip
LEFT_LID_PAIRS = ((159, 145), (158, 153))
RIGHT_LID_PAIRS = ((386, 374), (385, 380))
MESH_NOSE_TIP = 1

# Raw normalized eyelid gaps; the open threshold sits above close for hysteresis
MESH_CLOSE_GAP = 0.011
MESH_OPEN_GAP = 0.015

# Fallback thresholds as fractions of the baseline eyelid height
EAR_CLOSE_FRACTION = 0.6
EAR_OPEN_FRACTION = 0.8


class EyeState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class BlinkTracker:
    """OPEN/CLOSED state machine fed with (gap, timestamp) samples.

    A blink is an OPEN -> CLOSED -> OPEN cycle whose closed duration lies in
    ``[blink_min_ms, blink_max_ms]``. Losing the face while CLOSED is
    tolerated for ``dropout_tolerance_ms``; longer and the cycle is dropped.
    """

    def __init__(
        self,
        close_threshold: float,
        open_threshold: float,
        timing: BlinkTiming = DEFAULT_TIMING,
    ) -> None:
        self.close_threshold = close_threshold
        self.open_threshold = open_threshold
        self.timing = timing
        self.state = EyeState.OPEN
        self.blinks = 0
        self.last_duration_ms: float | None = None
        self._closed_at: float | None = None
        self._last_seen: float | None = None

    def update(self, gap: float, now_ms: float) -> bool:
        """Feed one sample. Returns True when it completes a valid blink."""
        self._last_seen = now_ms
        if self.state is EyeState.OPEN:
            if gap < self.close_threshold:
                self.state = EyeState.CLOSED
                self._closed_at = now_ms
            return False

        if gap <= self.open_threshold:
            return False

        duration = now_ms - (self._closed_at if self._closed_at is not None else now_ms)
        self.state = EyeState.OPEN
        self._closed_at = None
        if self.timing.blink_min_ms <= duration <= self.timing.blink_max_ms:
            self.blinks += 1
            self.last_duration_ms = duration
            logger.debug("Blink counted (%.0f ms)", duration)
            return True
        logger.debug("Eye closure of %.0f ms ignored", duration)
        return False

    def face_lost(self, now_ms: float) -> None:
        """Record a poll without a face."""
        if self.state is not EyeState.CLOSED or self._last_seen is None:
            return
        if now_ms - self._last_seen > self.timing.dropout_tolerance_ms:
            logger.debug("Face lost for too long while closed, resetting blink")
            self.reset()

    def reset(self) -> None:
        self.state = EyeState.OPEN
        self._closed_at = None


@dataclass
class ProofOutcome:
    """Result of one blink/motion window."""

    blink: bool = False
    motion: bool = False
    blink_duration_ms: float | None = None
    blink_image: np.ndarray | None = field(default=None, repr=False)
    frames: list[CapturedFrame] = field(default_factory=list)


class LivenessProofDetector(ABC):
    """Strategy interface: watch the source for a blink or head motion."""

    name: str = "base"

    def __init__(self, timing: BlinkTiming = DEFAULT_TIMING, clock: Clock | None = None) -> None:
        self.timing = timing
        self.clock = clock or SystemClock()

    @abstractmethod
    async def detect(
        self,
        source: VideoSource,
        on_face: Callable[[BoundingBox], None] | None = None,
    ) -> ProofOutcome: ...


def mesh_eyelid_gap(points: np.ndarray) -> float:
    """Mean eyelid gap over both eyes, two landmark pairs per eye."""
    gaps = [
        float(np.linalg.norm(points[top] - points[bottom]))
        for top, bottom in LEFT_LID_PAIRS + RIGHT_LID_PAIRS
    ]
    return float(np.mean(gaps))


def _l1(a: np.ndarray | tuple[float, float], b: np.ndarray | tuple[float, float]) -> float:
    return float(abs(a[0] - b[0]) + abs(a[1] - b[1]))


def _mesh_box(points: np.ndarray, image: np.ndarray) -> BoundingBox:
    h, w = image.shape[:2]
    x0, y0 = points[:, 0].min() * w, points[:, 1].min() * h
    x1, y1 = points[:, 0].max() * w, points[:, 1].max() * h
    return BoundingBox(x=float(x0), y=float(y0), width=float(x1 - x0), height=float(y1 - y0))


class LandmarkBlinkDetector(LivenessProofDetector):
    """Primary strategy driven by FaceMesh eyelid gaps and nose drift.

    With a ``sampler`` the coarse detector also runs on a tracked frame
    every ``descriptor_guard_ms``, so the window contributes descriptors to
    the session just like the fallback does.
    """

    name = "landmarks"

    def __init__(
        self,
        model: FineLandmarkModel,
        timing: BlinkTiming = DEFAULT_TIMING,
        clock: Clock | None = None,
        close_gap: float = MESH_CLOSE_GAP,
        open_gap: float = MESH_OPEN_GAP,
        sampler: FrameSampler | None = None,
    ) -> None:
        super().__init__(timing, clock)
        self.model = model
        self.close_gap = close_gap
        self.open_gap = open_gap
        self.sampler = sampler

    async def detect(
        self,
        source: VideoSource,
        on_face: Callable[[BoundingBox], None] | None = None,
    ) -> ProofOutcome:
        t = self.timing
        outcome = ProofOutcome()
        tracker = BlinkTracker(self.close_gap, self.open_gap, t)
        nose_ref: np.ndarray | None = None
        last_guard: float | None = None
        start = self.clock.now_ms()

        while self.clock.now_ms() - start < t.window_ms:
            image = await source.read()
            points = self.model.process(image) if image is not None else None
            now = self.clock.now_ms()
            elapsed = now - start

            if points is None:
                if elapsed >= t.warmup_ms:
                    tracker.face_lost(now)
            else:
                if on_face is not None:
                    on_face(_mesh_box(points, image))
                if self.sampler is not None and (
                    last_guard is None or now - last_guard >= t.descriptor_guard_ms
                ):
                    last_guard = now
                    guard = await self.sampler.sample_image(image)
                    if guard is not None:
                        outcome.frames.append(guard)
                nose = points[MESH_NOSE_TIP]
                if elapsed < t.warmup_ms:
                    # exposure and focus still settling: only follow the nose
                    nose_ref = nose
                else:
                    if nose_ref is None:
                        nose_ref = nose
                    if not outcome.motion and _l1(nose, nose_ref) > t.motion_threshold:
                        outcome.motion = True
                        logger.debug("Head motion detected (drift %.4f)", _l1(nose, nose_ref))
                    if tracker.update(mesh_eyelid_gap(points), now):
                        outcome.blink = True
                        outcome.blink_duration_ms = tracker.last_duration_ms
                        outcome.blink_image = image
                        break

            await self.clock.sleep(t.poll_interval_ms)

        return outcome


class EarBlinkDetector(LivenessProofDetector):
    """Fallback strategy using the coarse 68-point detector."""

    name = "ear"

    def __init__(
        self,
        sampler: FrameSampler,
        timing: BlinkTiming = DEFAULT_TIMING,
        clock: Clock | None = None,
        close_fraction: float = EAR_CLOSE_FRACTION,
        open_fraction: float = EAR_OPEN_FRACTION,
    ) -> None:
        super().__init__(timing, clock or sampler.clock)
        self.sampler = sampler
        self.close_fraction = close_fraction
        self.open_fraction = open_fraction

    async def detect(
        self,
        source: VideoSource,
        on_face: Callable[[BoundingBox], None] | None = None,
    ) -> ProofOutcome:
        t = self.timing
        outcome = ProofOutcome()
        tracker: BlinkTracker | None = None
        baseline_heights: list[float] = []
        prev_nose: tuple[float, float] | None = None
        start = self.clock.now_ms()

        while self.clock.now_ms() - start < t.window_ms:
            captured = await self.sampler.sample(source, keep_image=True)
            now = self.clock.now_ms()
            elapsed = now - start

            if captured is None:
                if tracker is not None:
                    tracker.face_lost(now)
                await self.clock.sleep(t.poll_interval_ms)
                continue

            features = captured.features
            image, captured.image = captured.image, None
            outcome.frames.append(captured)
            if on_face is not None and features.box is not None:
                on_face(features.box)

            height = features.eyes.mean_gap
            if elapsed < t.warmup_ms:
                baseline_heights.append(height)
            else:
                if prev_nose is not None and not outcome.motion:
                    drift = _l1(features.nose_tip, prev_nose) / (features.jaw_width + EPS)
                    if drift > t.motion_threshold:
                        outcome.motion = True
                        logger.debug("Head motion detected (drift %.4f)", drift)
                if tracker is None:
                    baseline = float(np.mean(baseline_heights)) if baseline_heights else height
                    tracker = BlinkTracker(
                        baseline * self.close_fraction, baseline * self.open_fraction, t
                    )
                if tracker.update(height, now):
                    outcome.blink = True
                    outcome.blink_duration_ms = tracker.last_duration_ms
                    outcome.blink_image = image
                    break
            prev_nose = features.nose_tip

            await self.clock.sleep(t.poll_interval_ms)

        return outcome


def select_blink_detector(
    landmark_model: FineLandmarkModel | None,
    sampler: FrameSampler,
    timing: BlinkTiming = DEFAULT_TIMING,
    clock: Clock | None = None,
) -> LivenessProofDetector:
    """Pick the landmark strategy when a fine model is loaded, else the EAR fallback."""
    if landmark_model is not None:
        return LandmarkBlinkDetector(
            landmark_model, timing, clock or sampler.clock, sampler=sampler
        )
    logger.info("No fine landmark model, blink detection uses EAR fallback")
    return EarBlinkDetector(sampler, timing, clock)
