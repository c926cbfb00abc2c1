"""Liveness scoring state machine.

Runs a fixed sequence of checks against a live video source:

    faceDetected -> textureAnalysis -> screenDetection -> eyeOpenness
    -> blinkDetected / motionDetected -> consistentDescriptor

The four core checks before the blink step short-circuit on failure.
Blink and motion are OR-gated: either one proves liveness. The scorer
reports progress as a stream of ``LivenessEvent`` values ending in a
``CompletedEvent`` that carries the ``LivenessResult``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import numpy as np

from kioskface.camera import encode_thumbnail
from kioskface.config import Settings, settings as default_settings
from kioskface.core.models import (
    BoundingBox,
    CapturedFrame,
    CheckKey,
    CheckStatus,
    CompletedEvent,
    Detection,
    FaceFeatures,
    FaceUpdateEvent,
    FrameEvent,
    InstructionEvent,
    LivenessEvent,
    LivenessResult,
    LivenessSession,
    ProgressEvent,
)
from kioskface.exceptions import KioskFaceError
from kioskface.recognition.blink import LivenessProofDetector, select_blink_detector
from kioskface.recognition.detection import FrameSampler
from kioskface.recognition.features import extract_features
from kioskface.recognition.model_manager import FaceModelService
from kioskface.recognition.timing import DEFAULT_TIMING, BlinkTiming, Clock, SystemClock

if TYPE_CHECKING:
    from kioskface.camera import VideoSource

logger = logging.getLogger("kioskface.recognition.liveness")

MSG_SUCCESS = "Liveness verified. Real face detected."
MSG_NO_FACE = "Face not detected. Please face the camera in good lighting and try again."
MSG_FLAT = "Flat texture detected. Please use your real face, not a photo or screen."
MSG_SCREEN = "Screen or printed photo detected. Please use your real face."
MSG_EYES = "Eyes not detected properly. Please keep your eyes open and look at the camera."
MSG_NO_PROOF = (
    "No blink or head movement detected. Please blink naturally or move your head slightly."
)
MSG_INCONSISTENT = (
    "Face identity is not consistent across frames. Please keep still and try again."
)


# ---------------------------------------------------------------------------
# Pure check evaluators
# ---------------------------------------------------------------------------


def is_straight_gaze(features: FaceFeatures, cfg: Settings) -> bool:
    return (
        abs(features.pose.yaw) <= cfg.straight_yaw_max
        and abs(features.pose.pitch) <= cfg.straight_pitch_max
    )


def texture_passes(frames: Sequence[CapturedFrame], cfg: Settings) -> bool:
    """Mean texture variance must reach the configured floor."""
    if not frames:
        return False
    mean = float(np.mean([f.features.texture_variance for f in frames]))
    return mean >= cfg.texture_min_variance


def screen_spoof_score(frames: Sequence[CapturedFrame], cfg: Settings) -> int:
    """Weighted vote of six weak screen/print signals over frame means."""
    if not frames:
        return 0

    def mean(getter: Callable[[FaceFeatures], float]) -> float:
        return float(np.mean([getter(f.features) for f in frames]))

    moire = mean(lambda f: f.moire_energy)
    reflection = mean(lambda f: f.reflection_ratio)
    blue = mean(lambda f: f.color.blue_ratio)
    saturation = mean(lambda f: f.color.saturation_variance)
    color_var = mean(lambda f: f.color.variance)
    brightness = mean(lambda f: f.color.brightness_uniformity)

    hi, lo = cfg.screen_weight_high, cfg.screen_weight_low
    score = 0
    if moire > cfg.screen_moire_high:
        score += hi
    elif moire > cfg.screen_moire_low:
        score += lo
    if reflection > cfg.screen_reflection:
        score += lo
    if blue > cfg.screen_blue_high:
        score += hi
    elif blue > cfg.screen_blue_low:
        score += lo
    if saturation < cfg.screen_saturation_var:
        score += lo
    if color_var < cfg.screen_color_var:
        score += lo
    if brightness < cfg.screen_brightness_var:
        score += lo

    logger.debug(
        "Screen signals moire=%.3f reflection=%.3f blue=%.3f sat_var=%.5f color_var=%.1f "
        "brightness_var=%.1f -> score %d",
        moire, reflection, blue, saturation, color_var, brightness, score,
    )
    return score


def eyes_open_passes(frames: Sequence[CapturedFrame], cfg: Settings) -> bool:
    """Enough frames must show both eyes above the open EAR."""
    open_count = sum(
        1
        for f in frames
        if f.features.eyes.left_ear > cfg.eye_open_ear
        and f.features.eyes.right_ear > cfg.eye_open_ear
    )
    required = max(1, math.ceil(len(frames) * cfg.eye_open_fraction))
    return open_count >= required


def descriptor_consistency(
    descriptors: Sequence[np.ndarray], cfg: Settings
) -> tuple[bool, float]:
    """Pairwise identity agreement across a session.

    Returns (passed, fraction of close pairs). With fewer than three
    descriptors a single one is enough.
    """
    vectors = [np.asarray(d, dtype=np.float64) for d in descriptors if np.size(d) > 0]
    if len(vectors) < 3:
        return bool(vectors), 1.0 if vectors else 0.0

    close = total = 0
    for a, b in itertools.combinations(vectors, 2):
        total += 1
        if a.shape == b.shape and float(np.linalg.norm(a - b)) < cfg.consistency_distance:
            close += 1
    fraction = close / total
    return fraction > cfg.consistency_fraction, fraction


# ---------------------------------------------------------------------------
# Step plumbing
# ---------------------------------------------------------------------------


@dataclass
class StepContext:
    """Everything a step needs besides the session itself."""

    cfg: Settings
    source: VideoSource
    sampler: FrameSampler
    proof_detector: LivenessProofDetector
    clock: Clock
    emit: Callable[[LivenessEvent], None]
    started_ms: float = 0.0

    def elapsed_ms(self) -> float:
        return round(self.clock.now_ms() - self.started_ms, 1)

    def face_update(self, box: BoundingBox) -> None:
        self.emit(FaceUpdateEvent(box))


def _set_status(
    session: LivenessSession, ctx: StepContext, key: CheckKey, status: CheckStatus
) -> None:
    session.check(key).status = status
    ctx.emit(ProgressEvent(step=key, status=status))
    logger.debug(
        "%s -> %s",
        key.value,
        status.value,
        extra={"session_id": session.session_id, "step": key.value, "status": status.value},
    )


def _conclude(
    session: LivenessSession, ctx: StepContext, key: CheckKey, passed: bool, message: str
) -> bool:
    status = CheckStatus.PASSED if passed else CheckStatus.FAILED
    _set_status(session, ctx, key, status)
    logger.info(
        "%s %s",
        key.value,
        status.value,
        extra={
            "session_id": session.session_id,
            "step": key.value,
            "status": status.value,
            "elapsed_ms": ctx.elapsed_ms(),
        },
    )
    if not passed:
        session.failures.append(message)
    return passed


def _retain_thumbnail(session: LivenessSession, ctx: StepContext, image: np.ndarray) -> None:
    if len(session.thumbnails) >= ctx.cfg.max_thumbnails:
        return
    thumb = encode_thumbnail(image, quality=ctx.cfg.thumbnail_quality)
    session.thumbnails.append(thumb)
    ctx.emit(FrameEvent(thumbnail=thumb, index=len(session.thumbnails) - 1))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


async def check_face_presence(session: LivenessSession, ctx: StepContext) -> bool:
    """Collect a run of consecutive straight-gaze frames."""
    cfg = ctx.cfg
    _set_status(session, ctx, CheckKey.FACE_DETECTED, CheckStatus.CHECKING)
    ctx.emit(InstructionEvent("Look straight at the camera and hold still"))

    run: list[CapturedFrame] = []
    collected = session.all_frames

    def straight(features: FaceFeatures) -> bool:
        captured = collected[-1]
        if is_straight_gaze(features, cfg):
            run.append(captured)
        else:
            captured.image = None
            for dropped in run:
                dropped.image = None
            run.clear()
        return len(run) >= cfg.straight_frames_target

    met = await ctx.sampler.wait_for_condition(
        ctx.source,
        straight,
        timeout_ms=cfg.face_timeout_ms,
        poll_interval_ms=cfg.face_poll_interval_ms,
        frame_collector=collected,
        on_face=ctx.face_update,
        keep_image=True,
    )

    session.straight_frames = list(run)
    for captured in session.straight_frames:
        if captured.image is not None:
            _retain_thumbnail(session, ctx, captured.image)
    for captured in collected:
        captured.image = None

    passed = met or len(run) >= cfg.straight_frames_min
    logger.info(
        "Face presence: %d straight frames of %d captured",
        len(run),
        len(collected),
        extra={"session_id": session.session_id, "step": CheckKey.FACE_DETECTED.value},
    )
    return _conclude(session, ctx, CheckKey.FACE_DETECTED, passed, MSG_NO_FACE)


async def check_texture(session: LivenessSession, ctx: StepContext) -> bool:
    _set_status(session, ctx, CheckKey.TEXTURE_ANALYSIS, CheckStatus.CHECKING)
    ctx.emit(InstructionEvent("Analyzing skin texture"))
    passed = texture_passes(session.straight_frames, ctx.cfg)
    return _conclude(session, ctx, CheckKey.TEXTURE_ANALYSIS, passed, MSG_FLAT)


async def check_screen(session: LivenessSession, ctx: StepContext) -> bool:
    _set_status(session, ctx, CheckKey.SCREEN_DETECTION, CheckStatus.CHECKING)
    score = screen_spoof_score(session.straight_frames, ctx.cfg)
    passed = score < ctx.cfg.screen_score_cutoff
    if not passed:
        logger.warning(
            "Screen/print suspected (score %d)",
            score,
            extra={"session_id": session.session_id, "step": CheckKey.SCREEN_DETECTION.value},
        )
    return _conclude(session, ctx, CheckKey.SCREEN_DETECTION, passed, MSG_SCREEN)


async def check_eye_openness(session: LivenessSession, ctx: StepContext) -> bool:
    _set_status(session, ctx, CheckKey.EYE_OPENNESS, CheckStatus.CHECKING)
    passed = eyes_open_passes(session.straight_frames, ctx.cfg)
    return _conclude(session, ctx, CheckKey.EYE_OPENNESS, passed, MSG_EYES)


async def check_liveness_proof(session: LivenessSession, ctx: StepContext) -> bool:
    """Blink or head motion within the detector window; either is enough."""
    _set_status(session, ctx, CheckKey.BLINK_DETECTED, CheckStatus.CHECKING)
    _set_status(session, ctx, CheckKey.MOTION_DETECTED, CheckStatus.CHECKING)
    ctx.emit(InstructionEvent("Blink naturally once"))

    outcome = await ctx.proof_detector.detect(ctx.source, on_face=ctx.face_update)
    session.all_frames.extend(outcome.frames)
    if outcome.blink_image is not None:
        _retain_thumbnail(session, ctx, outcome.blink_image)

    _set_status(
        session, ctx, CheckKey.BLINK_DETECTED,
        CheckStatus.PASSED if outcome.blink else CheckStatus.FAILED,
    )
    _set_status(
        session, ctx, CheckKey.MOTION_DETECTED,
        CheckStatus.PASSED if outcome.motion else CheckStatus.FAILED,
    )
    logger.info(
        "Liveness proof via %s: blink=%s motion=%s",
        ctx.proof_detector.name,
        outcome.blink,
        outcome.motion,
        extra={"session_id": session.session_id, "elapsed_ms": ctx.elapsed_ms()},
    )

    proven = outcome.blink or outcome.motion
    if not proven:
        session.failures.append(MSG_NO_PROOF)
    return proven


async def check_consistency(session: LivenessSession, ctx: StepContext) -> bool:
    _set_status(session, ctx, CheckKey.CONSISTENT_DESCRIPTOR, CheckStatus.CHECKING)
    descriptors = [f.features.descriptor for f in session.all_frames]
    passed, fraction = descriptor_consistency(descriptors, ctx.cfg)
    logger.debug(
        "Descriptor consistency %.2f over %d frames",
        fraction,
        len(descriptors),
        extra={"session_id": session.session_id},
    )
    return _conclude(session, ctx, CheckKey.CONSISTENT_DESCRIPTOR, passed, MSG_INCONSISTENT)


CORE_STEPS: tuple[Callable[[LivenessSession, StepContext], Awaitable[bool]], ...] = (
    check_face_presence,
    check_texture,
    check_screen,
    check_eye_openness,
)


def finalize(session: LivenessSession) -> LivenessResult:
    """Apply the final gate and build the caller-facing result."""
    is_live = session.is_live
    message = MSG_SUCCESS if is_live else " ".join(session.failures)
    session.result = LivenessResult(
        is_live=is_live,
        checks=session.snapshot(),
        message=message,
        captured_frames=list(session.thumbnails),
        session_id=session.session_id,
    )
    return session.result


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

_DONE = object()


class LivenessScorer:
    """Orchestrates one liveness scan per call.

    Parameters
    ----------
    models : FaceModelService
        Shared model service; loaded on first use.
    cfg : Settings | None
        Thresholds and timeouts. Defaults to the KF_* environment settings.
    clock : Clock | None
        Time source for every polling loop.
    timing : BlinkTiming
        Blink/motion constants shared by both detector strategies.
    extractor : callable
        Per-frame feature extractor handed to the frame sampler.
    """

    def __init__(
        self,
        models: FaceModelService,
        cfg: Settings | None = None,
        clock: Clock | None = None,
        timing: BlinkTiming = DEFAULT_TIMING,
        extractor: Callable[[np.ndarray, Detection], FaceFeatures] = extract_features,
    ) -> None:
        self.models = models
        self.cfg = cfg or default_settings
        self.clock = clock or SystemClock()
        self.timing = timing
        self.extractor = extractor

    def _context(
        self, source: VideoSource, emit: Callable[[LivenessEvent], None]
    ) -> StepContext:
        sampler = FrameSampler(
            self.models.face_model, self.cfg.detector_tier_list, self.clock, self.extractor
        )
        proof = select_blink_detector(self.models.landmark_model, sampler, self.timing, self.clock)
        return StepContext(
            cfg=self.cfg,
            source=source,
            sampler=sampler,
            proof_detector=proof,
            clock=self.clock,
            emit=emit,
            started_ms=self.clock.now_ms(),
        )

    async def _run(self, session: LivenessSession, ctx: StepContext) -> LivenessResult:
        logger.info("Liveness scan started", extra={"session_id": session.session_id})

        for step in CORE_STEPS:
            if not await step(session, ctx):
                break
        else:
            await check_liveness_proof(session, ctx)
            await check_consistency(session, ctx)

        result = finalize(session)
        logger.info(
            "Liveness scan finished: live=%s",
            result.is_live,
            extra={"session_id": session.session_id, "elapsed_ms": ctx.elapsed_ms()},
        )
        ctx.emit(CompletedEvent(result))
        return result

    async def events(self, source: VideoSource) -> AsyncIterator[LivenessEvent]:
        """Run a scan and yield its events; the last one is ``CompletedEvent``.

        Model or camera failures are raised from the iterator. Abandoning
        the iterator cancels the scan; releasing the camera stays with the
        caller.
        """
        await self.models.ensure_loaded()
        queue: asyncio.Queue[object] = asyncio.Queue()
        session = LivenessSession()
        ctx = self._context(source, queue.put_nowait)

        task = asyncio.ensure_future(self._run(session, ctx))
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event  # type: ignore[misc]
            await task
        finally:
            if not task.done():
                task.cancel()

    async def run(
        self,
        source: VideoSource,
        on_progress: Callable[[str, str], None] | None = None,
        on_instruction: Callable[[str], None] | None = None,
        on_frame: Callable[[str, int], None] | None = None,
        on_face: Callable[[BoundingBox], None] | None = None,
    ) -> LivenessResult:
        """Run a scan, dispatching events to the optional callbacks."""
        result: LivenessResult | None = None
        async for event in self.events(source):
            if isinstance(event, ProgressEvent):
                if on_progress is not None:
                    on_progress(event.step.value, event.status.value)
            elif isinstance(event, InstructionEvent):
                if on_instruction is not None:
                    on_instruction(event.text)
            elif isinstance(event, FrameEvent):
                if on_frame is not None:
                    on_frame(event.thumbnail, event.index)
            elif isinstance(event, FaceUpdateEvent):
                if on_face is not None:
                    on_face(event.box)
            elif isinstance(event, CompletedEvent):
                result = event.result
        if result is None:
            msg = "Liveness scan ended without a result"
            raise KioskFaceError(msg)
        return result
