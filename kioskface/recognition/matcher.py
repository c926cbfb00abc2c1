"""Descriptor matching for 1:N login and signup duplicate detection.

Compares 128-d identity descriptors by Euclidean distance. Storage of the
enrolled descriptors belongs to the caller; this module only reads them.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Union

import numpy as np

from kioskface.config import settings
from kioskface.exceptions import DescriptorError

logger = logging.getLogger("kioskface.recognition.matcher")

MATCH_THRESHOLD = 0.6
DUPLICATE_THRESHOLD = 0.45

Descriptor = Union[np.ndarray, Sequence[float]]
StoredDescriptors = Union[Mapping[str, Descriptor], Iterable[tuple[str, Descriptor]]]


@dataclass
class DescriptorMatch:
    """Closest stored descriptor and its owner."""

    owner_id: str
    distance: float


@dataclass
class IdentifyResult:
    """Outcome of a 1:N login attempt."""

    matched: bool
    match: DescriptorMatch | None
    confidence: int
    message: str


def as_descriptor(value: Descriptor) -> np.ndarray:
    """Validate and convert a descriptor to a 1-D float64 array."""
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        msg = "Descriptor must be a sequence of numbers"
        raise DescriptorError(msg) from exc
    if arr.ndim != 1 or arr.size == 0:
        msg = f"Descriptor must be a non-empty 1-D vector, got shape {arr.shape}"
        raise DescriptorError(msg)
    if not np.all(np.isfinite(arr)):
        msg = "Descriptor contains non-finite values"
        raise DescriptorError(msg)
    return arr


def euclidean_distance(a: Descriptor, b: Descriptor) -> float:
    """Euclidean distance, or infinity when the dimensions differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return math.inf
    return float(np.linalg.norm(va - vb))


def _iter_stored(stored: StoredDescriptors) -> Iterable[tuple[str, Descriptor]]:
    if isinstance(stored, Mapping):
        return stored.items()
    return stored


def _candidates(
    candidate: np.ndarray, stored: StoredDescriptors
) -> Iterable[tuple[str, float]]:
    """Yield (owner, distance) for every well-formed stored descriptor."""
    for owner_id, raw in _iter_stored(stored):
        try:
            vec = as_descriptor(raw)
        except DescriptorError:
            logger.debug("Skipping malformed descriptor for %s", owner_id)
            continue
        if vec.shape != candidate.shape:
            continue
        yield owner_id, float(np.linalg.norm(candidate - vec))


def match_best(candidate: Descriptor, stored: StoredDescriptors) -> DescriptorMatch | None:
    """Nearest stored descriptor of the same dimensionality, or None."""
    query = as_descriptor(candidate)
    best: DescriptorMatch | None = None
    for owner_id, distance in _candidates(query, stored):
        if best is None or distance < best.distance:
            best = DescriptorMatch(owner_id=owner_id, distance=distance)
    return best


def identify(
    candidate: Descriptor,
    stored: StoredDescriptors,
    threshold: float | None = None,
) -> IdentifyResult:
    """1:N identification: accept the best match iff its distance <= threshold.

    ``threshold`` defaults to ``KF_MATCH_THRESHOLD``.
    """
    if threshold is None:
        threshold = settings.match_threshold
    stored_list = list(_iter_stored(stored))
    if not stored_list:
        return IdentifyResult(
            matched=False,
            match=None,
            confidence=0,
            message="No registered faces found. Please sign up first.",
        )

    best = match_best(candidate, stored_list)
    if best is None or best.distance > threshold:
        return IdentifyResult(
            matched=False,
            match=best,
            confidence=0,
            message="Face not recognized. Please try again or use another login method.",
        )

    confidence = round((1.0 - best.distance / threshold) * 100)
    logger.info("Identified %s (distance %.4f)", best.owner_id, best.distance)
    return IdentifyResult(
        matched=True,
        match=best,
        confidence=confidence,
        message="Face recognized.",
    )


def find_duplicate(
    candidate: Descriptor,
    stored: StoredDescriptors,
    threshold: float | None = None,
    exclude_owner: str | None = None,
) -> DescriptorMatch | None:
    """Closest stored descriptor strictly within ``threshold``, if any.

    A distance equal to the threshold is not a duplicate. ``threshold``
    defaults to ``KF_DUPLICATE_THRESHOLD``.
    """
    if threshold is None:
        threshold = settings.duplicate_threshold
    query = as_descriptor(candidate)
    closest: DescriptorMatch | None = None
    for owner_id, distance in _candidates(query, stored):
        if owner_id == exclude_owner or distance >= threshold:
            continue
        if closest is None or distance < closest.distance:
            closest = DescriptorMatch(owner_id=owner_id, distance=distance)
    if closest is not None:
        logger.info("Duplicate face: %s at distance %.4f", closest.owner_id, closest.distance)
    return closest


def is_duplicate(
    candidate: Descriptor,
    stored: StoredDescriptors,
    threshold: float | None = None,
    exclude_owner: str | None = None,
) -> bool:
    return find_duplicate(candidate, stored, threshold, exclude_owner) is not None


def average_descriptors(descriptors: Sequence[Descriptor]) -> np.ndarray:
    """Element-wise mean of several same-length descriptors."""
    if not descriptors:
        msg = "Cannot average an empty descriptor list"
        raise DescriptorError(msg)
    vectors = [as_descriptor(d) for d in descriptors]
    if len({v.shape for v in vectors}) != 1:
        msg = "Cannot average descriptors of different lengths"
        raise DescriptorError(msg)
    return np.mean(np.stack(vectors), axis=0).astype(np.float32)
