"""Tests for ModelManager file resolution and the shared FaceModelService."""

from __future__ import annotations

import asyncio
import hashlib
import threading
from pathlib import Path

import pytest
from conftest import FakeFaceModel, FakeLandmarkModel

from kioskface.config import settings
from kioskface.exceptions import ModelLoadError
from kioskface.recognition.model_manager import (
    ENCODER_FILE,
    PREDICTOR_FILE,
    FaceModelService,
    ModelManager,
)


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    """Create a temporary model directory."""
    d = tmp_path / "models"
    d.mkdir()
    return d


@pytest.fixture()
def manager(model_dir: Path) -> ModelManager:
    return ModelManager(model_dir=str(model_dir))


@pytest.fixture()
def fake_predictor(model_dir: Path) -> Path:
    p = model_dir / PREDICTOR_FILE
    p.write_bytes(b"FAKE_DLIB_PREDICTOR_1234567890")
    return p


class TestResolve:
    def test_resolve_from_model_dir(self, manager: ModelManager, fake_predictor: Path) -> None:
        assert manager.resolve(PREDICTOR_FILE) == str(fake_predictor)

    def test_resolve_missing_file(self, manager: ModelManager) -> None:
        assert manager.resolve("does_not_exist.dat") is None

    def test_env_var_sets_model_dir(self, monkeypatch, fake_predictor: Path) -> None:
        monkeypatch.setenv("KF_MODEL_DIR", str(fake_predictor.parent))
        assert ModelManager().resolve(PREDICTOR_FILE) == str(fake_predictor)

    def test_explicit_dir_beats_env(self, monkeypatch, tmp_path: Path, model_dir: Path) -> None:
        monkeypatch.setenv("KF_MODEL_DIR", str(tmp_path / "elsewhere"))
        assert ModelManager(model_dir=str(model_dir)).model_dir == model_dir

    def test_require_raises_when_missing(self, manager: ModelManager) -> None:
        with pytest.raises(ModelLoadError, match="does_not_exist.dat"):
            manager.require("does_not_exist.dat")


class TestVerify:
    def test_matching_hash(self, manager: ModelManager, fake_predictor: Path) -> None:
        expected = hashlib.sha256(fake_predictor.read_bytes()).hexdigest()
        assert manager.verify(str(fake_predictor), expected) is True

    def test_hash_is_case_insensitive(self, manager: ModelManager, fake_predictor: Path) -> None:
        expected = hashlib.sha256(fake_predictor.read_bytes()).hexdigest().upper()
        assert manager.verify(str(fake_predictor), expected) is True

    def test_mismatch(self, manager: ModelManager, fake_predictor: Path) -> None:
        assert manager.verify(str(fake_predictor), "0" * 64) is False


class TestRequireWithHash:
    def test_pinned_hash_accepts_file(self, manager: ModelManager, fake_predictor: Path) -> None:
        expected = hashlib.sha256(fake_predictor.read_bytes()).hexdigest()
        assert manager.require(PREDICTOR_FILE, expected) == str(fake_predictor)

    def test_pinned_hash_rejects_tampered_file(
        self, manager: ModelManager, fake_predictor: Path
    ) -> None:
        with pytest.raises(ModelLoadError, match="SHA-256"):
            manager.require(PREDICTOR_FILE, "0" * 64)


class TestFaceModelService:
    async def test_concurrent_loads_share_one_build(self) -> None:
        builds = []

        def factory():
            builds.append(1)
            return FakeFaceModel()

        service = FaceModelService(face_model_factory=factory, landmark_model_factory=lambda: None)
        await asyncio.gather(*(service.ensure_loaded() for _ in range(5)))
        assert len(builds) == 1
        assert service.loaded is True

    async def test_models_are_built_in_a_worker_thread(self) -> None:
        threads = []

        def factory():
            threads.append(threading.current_thread())
            return FakeFaceModel()

        service = FaceModelService(face_model_factory=factory, landmark_model_factory=lambda: None)
        await service.ensure_loaded()
        assert threads and threads[0] is not threading.main_thread()

    async def test_face_model_before_load_raises(self) -> None:
        service = FaceModelService(face_model_factory=FakeFaceModel)
        with pytest.raises(ModelLoadError):
            _ = service.face_model

    async def test_retry_after_failure(self) -> None:
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ModelLoadError("first attempt fails")
            return FakeFaceModel()

        service = FaceModelService(face_model_factory=flaky, landmark_model_factory=lambda: None)
        with pytest.raises(ModelLoadError):
            await service.ensure_loaded()
        assert service.loaded is False

        await service.ensure_loaded()
        assert service.loaded is True
        assert len(attempts) == 2

    async def test_unexpected_error_is_wrapped(self) -> None:
        def broken():
            raise RuntimeError("corrupt weights")

        service = FaceModelService(face_model_factory=broken, landmark_model_factory=lambda: None)
        with pytest.raises(ModelLoadError, match="corrupt weights"):
            await service.ensure_loaded()

    async def test_landmark_failure_degrades_to_fallback(self) -> None:
        def broken_mesh():
            raise RuntimeError("no GPU")

        service = FaceModelService(
            face_model_factory=FakeFaceModel, landmark_model_factory=broken_mesh
        )
        await service.ensure_loaded()
        assert service.loaded is True
        assert service.landmark_model is None

    async def test_close_releases_landmark_model(self) -> None:
        mesh = FakeLandmarkModel()
        service = FaceModelService(
            face_model_factory=FakeFaceModel, landmark_model_factory=lambda: mesh
        )
        await service.ensure_loaded()
        assert service.landmark_model is mesh
        service.close()
        assert mesh.closed is True
        assert service.landmark_model is None

    def test_shared_is_a_singleton(self, monkeypatch) -> None:
        monkeypatch.setattr(FaceModelService, "_shared", None)
        assert FaceModelService.shared() is FaceModelService.shared()

    async def test_missing_model_files(self, tmp_path: Path) -> None:
        service = FaceModelService(
            manager=ModelManager(model_dir=str(tmp_path)),
            face_model_factory=None,
            landmark_model_factory=lambda: None,
        )
        service.manager.resolve = lambda filename: None  # type: ignore[method-assign]
        with pytest.raises(ModelLoadError, match="not found"):
            await service.ensure_loaded()

    async def test_default_loader_enforces_pinned_hash(
        self, monkeypatch, model_dir: Path, fake_predictor: Path
    ) -> None:
        (model_dir / ENCODER_FILE).write_bytes(b"FAKE_DLIB_ENCODER")
        monkeypatch.setattr(settings, "predictor_sha256", "0" * 64)
        service = FaceModelService(
            manager=ModelManager(model_dir=str(model_dir)),
            landmark_model_factory=lambda: None,
        )
        with pytest.raises(ModelLoadError, match="SHA-256"):
            await service.ensure_loaded()
        assert service.loaded is False
