"""Custom exception hierarchy for KioskFace.

Only infrastructure problems are exceptions. A spoof verdict or a face that
never showed up is an ordinary ``LivenessResult``.
"""

from __future__ import annotations


class KioskFaceError(Exception):
    """Base exception for all KioskFace errors."""

    error_type: str = "internal_error"

    def __init__(self, message: str = "An internal error occurred") -> None:
        self.message = message
        super().__init__(message)


class ModelLoadError(KioskFaceError):
    """Detection, landmark or descriptor model failed to load."""

    error_type = "model_load_error"


class CameraError(KioskFaceError):
    """Camera could not be opened (missing device or permission denied)."""

    error_type = "camera_error"


class DescriptorError(KioskFaceError):
    """Descriptor input is empty, non-numeric or of the wrong shape."""

    error_type = "descriptor_error"


class AuthServiceError(KioskFaceError):
    """The external authentication service failed or answered unexpectedly."""

    error_type = "auth_service_error"

    def __init__(self, message: str = "Auth service error", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class DuplicateFaceError(AuthServiceError):
    """The auth service rejected a registration as a duplicate face."""

    error_type = "duplicate_face"
