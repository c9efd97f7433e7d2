from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class Account:
    """Local bookkeeping record shadowing one media-server account."""

    account_id: int
    username: str
    password_hash: str
    remote_account_id: str | None
    is_admin: bool
    disabled: bool
    expires_at: datetime | None
    role_id: int | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AccessProfile:
    """Library access and home layout captured once from a reference account."""

    profile_id: int
    name: str
    source_remote_account_id: str
    library_folder_ids: list[str] = field(default_factory=list)
    home_layout: dict[str, Any] = field(default_factory=dict)
    is_default: bool = False
    created_at: datetime | None = None
