"""HTTP client for the kiosk authentication service.

Once a scan is live, the caller sends an averaged identity descriptor to the
auth service, which owns the stored descriptors and runs the 1:N match or
the duplicate check.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from kioskface.config import settings
from kioskface.exceptions import AuthServiceError, DuplicateFaceError
from kioskface.recognition.matcher import Descriptor, as_descriptor

logger = logging.getLogger("kioskface.clients.auth_service")


class FaceLoginResponse(BaseModel):
    success: bool
    message: str = ""
    user: dict[str, Any] | None = None
    confidence: int | None = None


class RegisterFaceResponse(BaseModel):
    success: bool
    message: str = ""


class AuthServiceClient:
    """Async client for the face-login and register-face endpoints.

    Parameters
    ----------
    base_url : str | None
        Service root. Defaults to ``KF_AUTH_BASE_URL``.
    timeout : float | None
        Request timeout in seconds. Defaults to ``KF_AUTH_TIMEOUT_S``.
    transport : httpx.AsyncBaseTransport | None
        Custom transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.auth_base_url,
            timeout=timeout or settings.auth_timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> AuthServiceClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def face_login(self, descriptor: Descriptor) -> FaceLoginResponse:
        """Ask the service to identify the owner of ``descriptor``."""
        body = await self._post(
            "/api/auth/face-login",
            {"faceDescriptor": as_descriptor(descriptor).tolist()},
        )
        response = self._parse(FaceLoginResponse, body)
        logger.info("Face login: success=%s confidence=%s", response.success, response.confidence)
        return response

    async def register_face(self, user_id: str, descriptor: Descriptor) -> RegisterFaceResponse:
        """Attach ``descriptor`` to ``user_id``; duplicates raise DuplicateFaceError."""
        body = await self._post(
            f"/api/user/{user_id}/register-face",
            {"faceDescriptor": as_descriptor(descriptor).tolist()},
        )
        return self._parse(RegisterFaceResponse, body)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            msg = f"Auth service request to {path} failed: {exc}"
            raise AuthServiceError(msg) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}

        message = body.get("message", "") if isinstance(body, dict) else ""
        if resp.status_code == 409:
            raise DuplicateFaceError(message or "Duplicate face", status_code=409)
        if resp.status_code >= 400:
            msg = message or f"Auth service returned HTTP {resp.status_code}"
            raise AuthServiceError(msg, status_code=resp.status_code)
        if not isinstance(body, dict):
            msg = f"Auth service returned a non-object body for {path}"
            raise AuthServiceError(msg, status_code=resp.status_code)
        return body

    @staticmethod
    def _parse(model: type[BaseModel], body: dict[str, Any]) -> Any:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            msg = f"Unexpected auth service response: {exc.error_count()} invalid fields"
            raise AuthServiceError(msg) from exc
