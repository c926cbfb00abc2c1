"""Model file resolution, hash verification and the shared model service.

``ModelManager`` finds the dlib model files and, when ``KF_PREDICTOR_SHA256``
or ``KF_ENCODER_SHA256`` pins a hash, refuses a file that does not match.
``FaceModelService`` loads the coarse face model and the optional fine
landmark model exactly once and is passed explicitly to whoever needs them.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Callable

from kioskface.config import settings
from kioskface.exceptions import ModelLoadError
from kioskface.recognition.detection import (
    DlibFaceModel,
    FaceModel,
    FineLandmarkModel,
    load_face_mesh,
)

logger = logging.getLogger("kioskface.recognition.model_manager")

PREDICTOR_FILE = "shape_predictor_68_face_landmarks.dat"
ENCODER_FILE = "dlib_face_recognition_resnet_model_v1.dat"


class ModelManager:
    """Resolve and verify the dlib model files.

    Resolution order:
    1. ``model_dir`` parameter / ``KF_MODEL_DIR`` env var
    2. The ``face_recognition_models`` package data directory
    """

    def __init__(self, model_dir: str | None = None) -> None:
        env_dir = os.environ.get("KF_MODEL_DIR")
        if model_dir:
            self._model_dir: Path | None = Path(model_dir)
        elif env_dir:
            self._model_dir = Path(env_dir)
        else:
            self._model_dir = None

    @property
    def model_dir(self) -> Path | None:
        """Return the explicitly configured model directory, if any."""
        return self._model_dir

    def resolve(self, filename: str) -> str | None:
        """Resolve a model file path, or None if it cannot be found."""
        if self._model_dir is not None:
            p = self._model_dir / filename
            if p.exists():
                logger.info("Model resolved from model dir: %s", p)
                return str(p)
            logger.warning("Model %s not found in %s", filename, self._model_dir)

        packaged = self._packaged_path(filename)
        if packaged is not None:
            logger.info("Model resolved from face_recognition_models: %s", packaged)
            return packaged

        return None

    def require(self, filename: str, expected_hash: str | None = None) -> str:
        """Like :meth:`resolve` but raise ``ModelLoadError`` when missing.

        With ``expected_hash`` the file must also match that SHA-256.
        """
        path = self.resolve(filename)
        if path is None:
            msg = f"Model file '{filename}' not found (set KF_MODEL_DIR)"
            raise ModelLoadError(msg)
        if expected_hash is not None and not self.verify(path, expected_hash):
            msg = f"Model file '{filename}' failed SHA-256 verification"
            raise ModelLoadError(msg)
        return path

    def verify(self, path: str, expected_hash: str) -> bool:
        """Verify a model file against its expected SHA-256 hash."""
        actual = self._compute_hash(path)
        matches = actual == expected_hash.lower()
        if not matches:
            logger.warning(
                "Hash mismatch for %s: expected %s, got %s",
                path,
                expected_hash[:16],
                actual[:16],
            )
        return matches

    @staticmethod
    def _packaged_path(filename: str) -> str | None:
        try:
            import face_recognition_models  # type: ignore[import-untyped]
        except ImportError:
            return None
        p = Path(face_recognition_models.__file__).resolve().parent / "models" / filename
        return str(p) if p.exists() else None

    @staticmethod
    def _compute_hash(path: str) -> str:
        """Compute SHA-256 hash of a file."""
        h = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                h.update(chunk)
        return h.hexdigest()


class FaceModelService:
    """Lazily loads the face models once and shares them.

    ``ensure_loaded()`` may be awaited from several entry points at the same
    time; they all wait on the same in-flight load. A failed load raises
    ``ModelLoadError`` and the next call tries again. A fine landmark model
    that fails to load is logged and left as None.
    """

    _shared: FaceModelService | None = None

    def __init__(
        self,
        manager: ModelManager | None = None,
        face_model_factory: Callable[[], FaceModel] | None = None,
        landmark_model_factory: Callable[[], FineLandmarkModel | None] | None = None,
    ) -> None:
        self.manager = manager or ModelManager()
        self._face_model_factory = face_model_factory or self._default_face_model
        self._landmark_model_factory = landmark_model_factory or load_face_mesh
        self._face_model: FaceModel | None = None
        self._landmark_model: FineLandmarkModel | None = None
        self._loading: asyncio.Future[None] | None = None

    @classmethod
    def shared(cls) -> FaceModelService:
        """Return the process-wide service, creating it on first use."""
        if cls._shared is None:
            cls._shared = cls()
        return cls._shared

    @property
    def loaded(self) -> bool:
        return self._face_model is not None

    @property
    def face_model(self) -> FaceModel:
        if self._face_model is None:
            msg = "Face models not loaded; await ensure_loaded() first"
            raise ModelLoadError(msg)
        return self._face_model

    @property
    def landmark_model(self) -> FineLandmarkModel | None:
        return self._landmark_model

    async def ensure_loaded(self) -> None:
        if self._face_model is not None:
            return
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        await asyncio.shield(self._loading)

    async def _load(self) -> None:
        t0 = time.monotonic()
        try:
            face_model = await asyncio.to_thread(self._face_model_factory)
        except ModelLoadError:
            self._loading = None
            raise
        except Exception as exc:
            self._loading = None
            msg = f"Face model failed to load: {exc}"
            raise ModelLoadError(msg) from exc

        landmark_model: FineLandmarkModel | None
        try:
            landmark_model = await asyncio.to_thread(self._landmark_model_factory)
        except Exception:
            logger.warning("Fine landmark model failed to load, using EAR fallback", exc_info=True)
            landmark_model = None

        self._face_model = face_model
        self._landmark_model = landmark_model
        logger.info(
            "Face models ready in %.2fs (detector=%s, landmarks=%s)",
            time.monotonic() - t0,
            face_model.backend,
            landmark_model.backend if landmark_model is not None else "none",
        )

    def close(self) -> None:
        if self._landmark_model is not None:
            self._landmark_model.close()
            self._landmark_model = None

    def _default_face_model(self) -> FaceModel:
        return DlibFaceModel(
            predictor_path=self.manager.require(PREDICTOR_FILE, settings.predictor_sha256),
            encoder_path=self.manager.require(ENCODER_FILE, settings.encoder_sha256),
        )
