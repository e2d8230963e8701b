# kato_license/errors.py
from typing import Optional


class LicenseServerError(Exception):
    """Base error rendered as a JSON response by the app's exception handler."""

    status_code = 500

    def __init__(self, message: str, extra: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, **self.extra}


class ValidationError(LicenseServerError):
    status_code = 400


class NotFoundError(LicenseServerError):
    status_code = 404


class AuthError(LicenseServerError):
    status_code = 401


class MethodError(LicenseServerError):
    status_code = 405


class UpstreamError(LicenseServerError):
    """Commerce provider or artifact store call failed."""

    status_code = 502


class PersistenceError(LicenseServerError):
    status_code = 500
