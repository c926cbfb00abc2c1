"""Per-frame feature extraction for liveness scoring.

Maps (frame, 68-point landmarks, face box) to an immutable ``FaceFeatures``.
Everything here is numpy / Pillow only and deterministic for identical
pixels. Degenerate inputs produce finite values instead of raising.
"""

from __future__ import annotations

import logging

import numpy as np
from PIL import Image

from kioskface.core.models import (
    BoundingBox,
    ColorStats,
    Detection,
    EyeOpenness,
    FaceFeatures,
    HeadPose,
)

logger = logging.getLogger("kioskface.recognition.features")

EPS = 1e-3
TEXTURE_MAX_SAMPLES = 15_000
COLOR_MAX_SAMPLES = 5_000
MOIRE_SIZE = 128
REFLECTION_LEVEL = 240.0
PITCH_NEUTRAL = 0.6

# dlib 68-point layout
JAW_LEFT, JAW_RIGHT = 0, 16
NOSE_TIP = 30
LEFT_EYE = slice(36, 42)
RIGHT_EYE = slice(42, 48)
MOUTH_LEFT, MOUTH_RIGHT = 48, 54
INNER_LIP_TOP, INNER_LIP_BOTTOM = 62, 66

_LUMA = np.array([0.299, 0.587, 0.114])


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def _eye_metrics(eye: np.ndarray) -> tuple[float, float]:
    """Return (aspect ratio, raw eyelid gap) for six eye points p1..p6."""
    vertical = _dist(eye[1], eye[5]) + _dist(eye[2], eye[4])
    width = _dist(eye[0], eye[3])
    return vertical / (2.0 * width + EPS), vertical / 2.0


def eye_openness(landmarks: np.ndarray) -> EyeOpenness:
    """Eye-aspect ratio and eyelid gap height for both eyes."""
    left_ear, left_gap = _eye_metrics(landmarks[LEFT_EYE])
    right_ear, right_gap = _eye_metrics(landmarks[RIGHT_EYE])
    return EyeOpenness(
        left_ear=left_ear,
        right_ear=right_ear,
        left_gap=left_gap,
        right_gap=right_gap,
    )


def mouth_ratio(landmarks: np.ndarray) -> float:
    gap = _dist(landmarks[INNER_LIP_TOP], landmarks[INNER_LIP_BOTTOM])
    width = _dist(landmarks[MOUTH_LEFT], landmarks[MOUTH_RIGHT])
    return gap / (width + EPS)


def head_pose(landmarks: np.ndarray, box: BoundingBox) -> HeadPose:
    """Estimate yaw and pitch from landmark geometry.

    Yaw averages three horizontal-offset signals so that one badly placed
    landmark does not dominate. Pitch is the nose height within the face box
    relative to its usual neutral position.
    """
    nose_x, nose_y = (float(v) for v in landmarks[NOSE_TIP])
    jaw_left_x = float(landmarks[JAW_LEFT][0])
    jaw_right_x = float(landmarks[JAW_RIGHT][0])
    jaw_width = abs(jaw_right_x - jaw_left_x)
    jaw_center = (jaw_left_x + jaw_right_x) / 2.0
    eye_center = float(np.mean(landmarks[36:48, 0]))

    from_jaw = (nose_x - jaw_center) / (jaw_width + EPS)
    from_eyes = (nose_x - eye_center) / (jaw_width + EPS)
    d_left = nose_x - jaw_left_x
    d_right = jaw_right_x - nose_x
    asymmetry = (d_left - d_right) / (abs(d_left) + abs(d_right) + EPS)

    yaw = (from_jaw + from_eyes + asymmetry) / 3.0
    pitch = (nose_y - box.y) / (box.height + EPS) - PITCH_NEUTRAL
    return HeadPose(yaw=float(yaw), pitch=float(pitch))


def crop_face(image: np.ndarray, box: BoundingBox) -> np.ndarray:
    """Face-box crop clipped to the image bounds (may be empty)."""
    rows, cols = box.clip_slices(image.shape[0], image.shape[1])
    return image[rows, cols]


def _sample_pixels(crop: np.ndarray, max_samples: int) -> np.ndarray:
    """Evenly strided (N, 3) float64 pixel sample of at most ``max_samples``."""
    pixels = crop.reshape(-1, crop.shape[-1] if crop.ndim == 3 else 1).astype(np.float64)
    if pixels.shape[1] == 1:
        pixels = np.repeat(pixels, 3, axis=1)
    step = max(1, -(-len(pixels) // max_samples))
    return pixels[::step, :3]


def texture_variance(crop: np.ndarray) -> float:
    """Grayscale variance of the face crop; flat surfaces score low."""
    if crop.size == 0:
        return 0.0
    gray = _sample_pixels(crop, TEXTURE_MAX_SAMPLES) @ _LUMA
    return float(np.var(gray))


def color_stats(crop: np.ndarray) -> ColorStats:
    """Channel variance, blue cast, saturation spread and brightness spread."""
    if crop.size == 0:
        return ColorStats(variance=0.0, blue_ratio=0.0, saturation_variance=0.0,
                          brightness_uniformity=0.0)
    px = _sample_pixels(crop, COLOR_MAX_SAMPLES)
    r, g, b = px[:, 0], px[:, 1], px[:, 2]

    variance = float((np.var(r) + np.var(g) + np.var(b)) / 3.0)
    blue_ratio = float(np.mean((b > r) & (b > g)))

    cmax = px.max(axis=1)
    cmin = px.min(axis=1)
    saturation = np.where(cmax > 0, (cmax - cmin) / np.maximum(cmax, EPS), 0.0)
    brightness = px.mean(axis=1)

    return ColorStats(
        variance=variance,
        blue_ratio=blue_ratio,
        saturation_variance=float(np.var(saturation)),
        brightness_uniformity=float(np.var(brightness)),
    )


def moire_energy(crop: np.ndarray) -> float:
    """Normalized 4-neighbour Laplacian energy of a 128x128 downsample.

    Display pixel grids photographed by a camera leave periodic
    high-frequency structure that raises this value.
    """
    if crop.size == 0 or min(crop.shape[:2]) == 0:
        return 0.0
    img = Image.fromarray(np.ascontiguousarray(crop).astype(np.uint8))
    small = np.asarray(
        img.convert("RGB").resize((MOIRE_SIZE, MOIRE_SIZE), Image.Resampling.BILINEAR),
        dtype=np.float64,
    )
    gray = small @ _LUMA
    lap = (
        gray[:-2, 1:-1] + gray[2:, 1:-1] + gray[1:-1, :-2] + gray[1:-1, 2:] - 4 * gray[1:-1, 1:-1]
    )
    return float(np.sum(np.abs(lap)) / (np.sum(gray[1:-1, 1:-1]) + EPS))


def reflection_ratio(crop: np.ndarray) -> float:
    """Fraction of sampled pixels that are near saturation (glare hot spots)."""
    if crop.size == 0:
        return 0.0
    px = _sample_pixels(crop, COLOR_MAX_SAMPLES)
    return float(np.mean(px.mean(axis=1) > REFLECTION_LEVEL))


def extract_features(image: np.ndarray, detection: Detection) -> FaceFeatures:
    """Compute every per-frame feature for one detection."""
    landmarks = np.asarray(detection.landmarks, dtype=np.float64)
    box = detection.box
    crop = crop_face(image, box)

    jaw_width = abs(float(landmarks[JAW_RIGHT][0] - landmarks[JAW_LEFT][0]))
    nose = landmarks[NOSE_TIP]

    return FaceFeatures(
        eyes=eye_openness(landmarks),
        mouth_ratio=mouth_ratio(landmarks),
        pose=head_pose(landmarks, box),
        texture_variance=texture_variance(crop),
        color=color_stats(crop),
        moire_energy=moire_energy(crop),
        reflection_ratio=reflection_ratio(crop),
        face_center=box.center,
        face_size=(box.width, box.height),
        nose_tip=(float(nose[0]), float(nose[1])),
        jaw_width=jaw_width,
        descriptor=np.asarray(detection.descriptor, dtype=np.float32),
        box=box,
    )
