"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .invite import ExpiryOffsets


@dataclass(slots=True)
class CreateAccountInput:
    """Values required to insert a local account row."""

    username: str
    password_hash: str
    remote_account_id: str | None = None
    is_admin: bool = False
    disabled: bool = False
    expires_at: datetime | None = None
    role_id: int | None = None


@dataclass(slots=True)
class CreateInviteInput:
    """Administrator-supplied invite parameters.

    ``expires_at`` wins over ``lifetime``; when both are empty the ledger
    applies its default lifetime.
    """

    label: str | None = None
    profile_id: int | None = None
    role_id: int | None = None
    max_uses: int | None = 1
    expires_at: datetime | None = None
    lifetime: ExpiryOffsets = field(default_factory=ExpiryOffsets)
    account_expiry_enabled: bool = False
    account_expiry: ExpiryOffsets = field(default_factory=ExpiryOffsets)


@dataclass(slots=True)
class CreateProfileInput:
    """Reference account to capture an access profile from."""

    name: str
    source_remote_account_id: str
    is_default: bool = False
