"""Tests for the ``python -m kioskface`` entry point."""

from __future__ import annotations

import pytest
from conftest import FakeFaceModel, FakeVideoSource

from kioskface import __main__ as cli
from kioskface.clients.auth_service import FaceLoginResponse, RegisterFaceResponse
from kioskface.core.models import LivenessResult
from kioskface.exceptions import DuplicateFaceError, ModelLoadError
from kioskface.recognition.model_manager import FaceModelService


def _result(is_live: bool) -> LivenessResult:
    return LivenessResult(
        is_live=is_live,
        checks={},
        message="Liveness verified. Real face detected." if is_live else "Spoof",
    )


class _StubClient:
    """Async context manager standing in for AuthServiceClient."""

    login = FaceLoginResponse(success=True, message="Welcome back", confidence=90)
    error: Exception | None = None
    sent: list = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def face_login(self, descriptor):
        self.sent.append(descriptor)
        return self.login

    async def register_face(self, user_id, descriptor):
        if self.error is not None:
            raise self.error
        self.sent.append((user_id, descriptor))
        return RegisterFaceResponse(success=True, message="Face registered")


@pytest.fixture()
def wired(monkeypatch):
    """Patch hardware, models and network out of the CLI."""
    source = FakeVideoSource()
    service = FaceModelService(
        face_model_factory=FakeFaceModel, landmark_model_factory=lambda: None
    )
    verdict = {"live": True}

    class StubScorer:
        def __init__(self, models):
            self.models = models

        async def run(self, source, **callbacks):
            return _result(verdict["live"])

    monkeypatch.setattr(FaceModelService, "_shared", service)
    monkeypatch.setattr(cli, "OpenCVVideoSource", lambda *args: source)
    monkeypatch.setattr(cli, "LivenessScorer", StubScorer)
    monkeypatch.setattr(cli, "AuthServiceClient", _StubClient)
    monkeypatch.setattr(cli.settings, "descriptor_frame_delay_ms", 0)
    monkeypatch.setattr(_StubClient, "error", None)
    monkeypatch.setattr(_StubClient, "sent", [])
    return source, verdict


class TestMain:
    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            cli.main([])

    def test_scan_live(self, wired, capsys):
        source, _ = wired
        assert cli.main(["scan"]) == cli.EXIT_OK
        assert "Liveness verified" in capsys.readouterr().out
        assert source.closed is True

    def test_scan_rejected(self, wired):
        _, verdict = wired
        verdict["live"] = False
        assert cli.main(["scan"]) == cli.EXIT_REJECTED

    def test_login_sends_averaged_descriptor(self, wired, capsys):
        assert cli.main(["login"]) == cli.EXIT_OK
        assert len(_StubClient.sent) == 1
        assert _StubClient.sent[0].shape == (128,)
        assert "Welcome back" in capsys.readouterr().out

    def test_enroll(self, wired):
        assert cli.main(["enroll", "--user-id", "42"]) == cli.EXIT_OK
        user_id, descriptor = _StubClient.sent[0]
        assert user_id == "42"
        assert descriptor.shape == (128,)

    def test_enroll_duplicate(self, wired, monkeypatch, capsys):
        monkeypatch.setattr(
            _StubClient, "error", DuplicateFaceError("Face already registered", status_code=409)
        )
        assert cli.main(["enroll", "--user-id", "42"]) == cli.EXIT_REJECTED
        assert "already registered" in capsys.readouterr().out

    def test_model_failure_is_infra_error(self, wired, monkeypatch):
        def broken():
            raise ModelLoadError("weights missing")

        monkeypatch.setattr(
            FaceModelService,
            "_shared",
            FaceModelService(face_model_factory=broken, landmark_model_factory=lambda: None),
        )
        assert cli.main(["scan"]) == cli.EXIT_INFRA
