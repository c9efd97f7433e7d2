"""Error taxonomy shared by the engine and the HTTP layer.

Every error carries a machine-readable ``kind`` and the HTTP status the API
answers with. Messages on these classes are safe to show to end users;
anything else raised inside the service is logged and answered generically.
"""

from __future__ import annotations


class AccessError(Exception):
    """Base class for expected, user-facing failures."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.kind.replace("_", " ")

    @property
    def message(self) -> str:
        return str(self)

    def to_detail(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class NotFoundError(AccessError):
    kind = "not_found"
    status_code = 404


class InviteExpiredError(AccessError):
    """Raised when an invite is past its expiry; the invite is deleted as a side effect."""

    kind = "expired"
    status_code = 410

    @classmethod
    def default_message(cls) -> str:
        return "invite has expired"


class InviteExhaustedError(AccessError):
    """Raised when an invite has no uses left; the invite is deleted once no claim is pending."""

    kind = "exhausted"
    status_code = 410

    @classmethod
    def default_message(cls) -> str:
        return "invite has no uses remaining"


class ConflictError(AccessError):
    kind = "conflict"
    status_code = 409


class RemoteUnavailableError(AccessError):
    """The media server could not be reached or answered with something unusable."""

    kind = "remote_unavailable"
    status_code = 503

    @classmethod
    def default_message(cls) -> str:
        return "media server unavailable"


class InvalidCredentialsError(AccessError):
    """Generic login failure. The message never says which half was wrong."""

    kind = "invalid_credentials"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("invalid username or password")


class PermissionDeniedError(AccessError):
    kind = "forbidden"
    status_code = 403


class ValidationError(AccessError):
    kind = "invalid"
    status_code = 400


class UnauthenticatedError(AccessError):
    """Missing, expired or revoked session."""

    kind = "unauthenticated"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "authentication required"
