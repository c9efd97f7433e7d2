"""Shared in-memory fakes mimicking the Postgres repositories and the media server."""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import pytest

from access_service.domain.account import AccessProfile, Account
from access_service.domain.contracts import CreateAccountInput, CreateInviteInput, CreateProfileInput
from access_service.domain.invite import Invite
from access_service.errors import ConflictError, NotFoundError, RemoteUnavailableError
from access_service.gateway.models import RemoteAccount, RemoteAccountPolicy, RemoteLibraryFolder
from access_service.repository import AuditLogRecord
from access_service.security.passwords import BcryptPasswordHasher


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeAccountRepository:
    """In-memory Credential Store with the same uniqueness rules as the accounts table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[int, Account] = {}
        self._seq = 0
        self.default_role_id: int | None = 1
        self.roles: set[int] = {1}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    def create_account(self, payload: CreateAccountInput) -> Account:
        with self._lock:
            for existing in self._accounts.values():
                if existing.username.lower() == payload.username.lower():
                    raise ConflictError(f"username {payload.username!r} is already taken")
                if (
                    payload.remote_account_id is not None
                    and existing.remote_account_id == payload.remote_account_id
                ):
                    raise ConflictError("remote account is already linked")
            self._seq += 1
            now = _now()
            account = Account(
                account_id=self._seq,
                username=payload.username,
                password_hash=payload.password_hash,
                remote_account_id=payload.remote_account_id,
                is_admin=payload.is_admin,
                disabled=payload.disabled,
                expires_at=payload.expires_at,
                role_id=payload.role_id,
                created_at=now,
                updated_at=now,
            )
            self._accounts[account.account_id] = account
            return replace(account)

    def get_account(self, account_id: int) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def get_by_username(self, username: str) -> Account | None:
        return self._find(lambda a: a.username.lower() == username.lower())

    def get_by_remote_id(self, remote_account_id: str) -> Account | None:
        return self._find(lambda a: a.remote_account_id == remote_account_id)

    def username_exists(self, username: str) -> bool:
        return self.get_by_username(username) is not None

    def list_accounts(self) -> list[Account]:
        with self._lock:
            accounts = [replace(a) for a in self._accounts.values()]
        return sorted(accounts, key=lambda a: a.username.lower())

    def list_linked_accounts(self) -> list[Account]:
        return [a for a in self.list_accounts() if a.remote_account_id is not None]

    def update_password_hash(self, account_id: int, password_hash: str) -> None:
        self._update(account_id, lambda a: True, password_hash=password_hash)

    def set_disabled(self, account_id: int, disabled: bool) -> Account | None:
        return self._update(account_id, lambda a: True, disabled=disabled)

    def enable_permanently(self, account_id: int) -> Account | None:
        return self._update(account_id, lambda a: True, disabled=False, expires_at=None)

    def clear_disabled_if_set(self, account_id: int) -> Account | None:
        return self._update(account_id, lambda a: a.disabled, disabled=False)

    def mark_expired_accounts_disabled(self, now: datetime) -> list[Account]:
        with self._lock:
            marked = []
            for account in self._accounts.values():
                if not account.disabled and account.expires_at is not None and account.expires_at <= now:
                    account.disabled = True
                    account.updated_at = now
                    marked.append(replace(account))
            return marked

    def delete_account(self, account_id: int) -> bool:
        with self._lock:
            return self._accounts.pop(account_id, None) is not None

    def get_default_role_id(self) -> int | None:
        return self.default_role_id

    def role_exists(self, role_id: int) -> bool:
        return role_id in self.roles

    def write_audit_event(
        self,
        *,
        event_type: str,
        actor: str | None,
        account_id: int | None = None,
        username: str | None = None,
        remote_account_id: str | None = None,
        invite_code: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        with self._lock:
            self._audit_seq += 1
            self.audit_log.append(
                AuditLogRecord(
                    audit_id=self._audit_seq,
                    account_id=account_id,
                    username=username,
                    remote_account_id=remote_account_id,
                    invite_code=invite_code,
                    event_type=event_type,
                    actor=actor,
                    metadata=metadata or {},
                    created_at=_now(),
                )
            )

    def list_audit_events(
        self,
        *,
        account_id: int | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if account_id is not None:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def events(self, event_type: str) -> list[AuditLogRecord]:
        return [record for record in self.audit_log if record.event_type == event_type]

    def _find(self, predicate) -> Account | None:
        with self._lock:
            for account in self._accounts.values():
                if predicate(account):
                    return replace(account)
        return None

    def _update(self, account_id: int, condition, **changes: Any) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or not condition(account):
                return None
            for name, value in changes.items():
                setattr(account, name, value)
            account.updated_at = _now()
            return replace(account)


class FakeInviteRepository:
    """In-memory invite table; claim and delete are atomic under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._invites: dict[str, Invite] = {}
        self._seq = 0
        self.taken_codes: set[str] = set()

    def insert_invite(
        self,
        *,
        code: str,
        label: str | None,
        payload: CreateInviteInput,
        expires_at: datetime | None,
        created_by: str | None,
    ) -> Invite | None:
        with self._lock:
            if code in self._invites or code in self.taken_codes:
                return None
            self._seq += 1
            invite = Invite(
                invite_id=self._seq,
                code=code,
                label=label,
                profile_id=payload.profile_id,
                role_id=payload.role_id,
                max_uses=payload.max_uses,
                used_count=0,
                expires_at=expires_at,
                account_expiry_enabled=payload.account_expiry_enabled,
                account_expiry=payload.account_expiry,
                created_by=created_by,
                created_at=_now(),
            )
            self._invites[code] = invite
            return replace(invite)

    def add(self, invite: Invite) -> Invite:
        """Seed an invite directly, bypassing the ledger."""
        with self._lock:
            self._invites[invite.code] = replace(invite)
        return invite

    def get_by_code(self, code: str) -> Invite | None:
        with self._lock:
            invite = self._invites.get(code)
            return replace(invite) if invite else None

    def list_invites(self) -> list[Invite]:
        with self._lock:
            return [replace(invite) for invite in self._invites.values()]

    def claim_use(self, code: str, now: datetime) -> Invite | None:
        with self._lock:
            invite = self._invites.get(code)
            if invite is None or invite.is_expired(now) or invite.is_exhausted():
                return None
            invite.used_count += 1
            invite.pending_count += 1
            return replace(invite)

    def complete_use(self, code: str, now: datetime) -> bool:
        with self._lock:
            invite = self._invites.get(code)
            if invite is None:
                return False
            if invite.pending_count > 0:
                invite.pending_count -= 1
            if not invite.is_terminal(now):
                return False
            del self._invites[code]
            return True

    def release_use(self, code: str) -> bool:
        with self._lock:
            invite = self._invites.get(code)
            if invite is None or invite.pending_count == 0:
                return False
            invite.used_count -= 1
            invite.pending_count -= 1
            return True

    def delete_if_terminal(self, code: str, now: datetime) -> bool:
        with self._lock:
            invite = self._invites.get(code)
            if invite is None or not invite.is_terminal(now):
                return False
            del self._invites[code]
            return True

    def delete_terminal(self, now: datetime) -> list[Invite]:
        with self._lock:
            removed = [
                invite
                for invite in self._invites.values()
                if invite.is_terminal(now)
            ]
            for invite in removed:
                del self._invites[invite.code]
            return [replace(invite) for invite in removed]

    def delete_invite(self, code: str) -> bool:
        with self._lock:
            return self._invites.pop(code, None) is not None


class FakeProfileRepository:
    def __init__(self) -> None:
        self._profiles: dict[int, AccessProfile] = {}
        self._seq = 0

    def create_profile(
        self,
        payload: CreateProfileInput,
        library_folder_ids: list[str],
        home_layout: dict[str, Any],
    ) -> AccessProfile:
        if payload.is_default:
            for profile in self._profiles.values():
                profile.is_default = False
        self._seq += 1
        profile = AccessProfile(
            profile_id=self._seq,
            name=payload.name,
            source_remote_account_id=payload.source_remote_account_id,
            library_folder_ids=list(library_folder_ids),
            home_layout=dict(home_layout),
            is_default=payload.is_default,
            created_at=_now(),
        )
        self._profiles[profile.profile_id] = profile
        return profile

    def get_profile(self, profile_id: int) -> AccessProfile | None:
        return self._profiles.get(profile_id)

    def list_profiles(self) -> list[AccessProfile]:
        return sorted(self._profiles.values(), key=lambda p: p.name)

    def delete_profile(self, profile_id: int) -> bool:
        return self._profiles.pop(profile_id, None) is not None


class FakeGateway:
    """Media server double holding accounts, policies, configurations and folders.

    ``fail`` names gateway methods that raise ``RemoteUnavailableError``;
    ``reject_full_policy`` lists remote ids whose composite policy writes are
    silently ignored while single-field writes succeed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.accounts: dict[str, dict[str, Any]] = {}
        self.folders: list[RemoteLibraryFolder] = []
        self.fail: set[str] = set()
        self.fail_for: dict[str, set[str]] = {}
        self.reject_full_policy: set[str] = set()
        self.policy_writes: list[tuple[str, dict[str, Any]]] = []

    def add_account(
        self,
        name: str,
        password: str = "remote-pass",
        *,
        is_admin: bool = False,
        is_disabled: bool = False,
        configuration: dict[str, Any] | None = None,
    ) -> str:
        remote_id = uuid.uuid4().hex
        self.accounts[remote_id] = {
            "name": name,
            "password": password,
            "policy": {
                "IsAdministrator": is_admin,
                "IsDisabled": is_disabled,
                "EnabledFolders": [],
                "EnableAllFolders": True,
                "EnableRemoteAccess": True,
            },
            "configuration": dict(configuration or {}),
        }
        return remote_id

    def policy(self, remote_id: str) -> dict[str, Any]:
        return self.accounts[remote_id]["policy"]

    def list_accounts(self) -> list[RemoteAccount]:
        self._check("list_accounts")
        return [self._to_remote(remote_id) for remote_id in list(self.accounts)]

    def get_account(self, remote_account_id: str) -> RemoteAccount:
        self._check("get_account", remote_account_id)
        if remote_account_id not in self.accounts:
            raise NotFoundError("remote account not found")
        return self._to_remote(remote_account_id)

    def get_account_policy(self, remote_account_id: str) -> RemoteAccountPolicy:
        self._check("get_account_policy", remote_account_id)
        return self.get_account(remote_account_id).policy

    def set_account_policy(self, remote_account_id: str, payload: dict[str, Any]) -> None:
        self._check("set_account_policy", remote_account_id)
        with self._lock:
            self.policy_writes.append((remote_account_id, dict(payload)))
            if remote_account_id in self.reject_full_policy and len(payload) > 1:
                return
            self.accounts[remote_account_id]["policy"].update(payload)

    def get_account_configuration(self, remote_account_id: str) -> dict[str, Any]:
        self._check("get_account_configuration", remote_account_id)
        return dict(self.accounts[remote_account_id]["configuration"])

    def set_account_configuration(self, remote_account_id: str, payload: dict[str, Any]) -> None:
        self._check("set_account_configuration", remote_account_id)
        self.accounts[remote_account_id]["configuration"] = dict(payload)

    def authenticate(self, username: str, password: str) -> str | None:
        self._check("authenticate")
        for record in self.accounts.values():
            if record["name"].lower() == username.lower() and record["password"] == password:
                return uuid.uuid4().hex
        return None

    def create_account(self, name: str, password: str) -> str:
        self._check("create_account")
        with self._lock:
            return self.add_account(name, password)

    def list_library_folders(self) -> list[RemoteLibraryFolder]:
        self._check("list_library_folders")
        return list(self.folders)

    def _check(self, method: str, remote_account_id: str | None = None) -> None:
        if method in self.fail:
            raise RemoteUnavailableError(f"{method} unavailable")
        if remote_account_id is not None and remote_account_id in self.fail_for.get(method, set()):
            raise RemoteUnavailableError(f"{method} unavailable for {remote_account_id}")

    def _to_remote(self, remote_id: str) -> RemoteAccount:
        record = self.accounts[remote_id]
        return RemoteAccount.model_validate(
            {
                "Id": remote_id,
                "Name": record["name"],
                "Policy": dict(record["policy"]),
                "Configuration": dict(record["configuration"]),
            }
        )


@pytest.fixture()
def accounts() -> FakeAccountRepository:
    return FakeAccountRepository()


@pytest.fixture()
def invites() -> FakeInviteRepository:
    return FakeInviteRepository()


@pytest.fixture()
def profiles() -> FakeProfileRepository:
    return FakeProfileRepository()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def hasher() -> BcryptPasswordHasher:
    # Minimum cost keeps the suite fast.
    return BcryptPasswordHasher(rounds=4)
