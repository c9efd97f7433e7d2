"""Account service orchestrating sessions, administration, profiles and the activity log."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Tuple, Optional

import jwt

from .account import AccessProfile, Account
from .authenticator import DualCredentialAuthenticator
from .contracts import CreateProfileInput
from .remote_policy import push_disabled_flag
from .sweeper import ExpirySweeper, SweepReport
from .sync import SyncReport, UserSynchronizer
from ..errors import (
    AccessError,
    NotFoundError,
    PermissionDeniedError,
    RemoteUnavailableError,
    UnauthenticatedError,
    ValidationError,
)
from ..gateway.client import RemoteAccountGateway
from ..gateway.models import extract_home_layout
from ..repository import AccountRepository, AuditLogRecord, ProfileRepository
from ..security.sessions import Session, SessionStore, new_session
from ..security.tokens import decode_session_token, issue_session_token

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoginResult:
    """Session established by a login plus the bearer token handed to the client."""

    account: Account
    session: Session
    token: str
    expires_in: int


class AccountService:
    """Account workflows exposed to the HTTP layer."""

    def __init__(
        self,
        accounts: AccountRepository,
        profiles: ProfileRepository,
        gateway: RemoteAccountGateway,
        authenticator: DualCredentialAuthenticator,
        synchronizer: UserSynchronizer,
        sweeper: ExpirySweeper,
        sessions: SessionStore,
        *,
        session_ttl_seconds: int,
    ) -> None:
        self._accounts = accounts
        self._profiles = profiles
        self._gateway = gateway
        self._authenticator = authenticator
        self._synchronizer = synchronizer
        self._sweeper = sweeper
        self._sessions = sessions
        self._session_ttl_seconds = session_ttl_seconds

    def login(self, username: str, password: str) -> LoginResult:
        """Authenticate and open a session of {account, admin flag, remote id}."""
        account = self._authenticator.authenticate(username, password)
        if account.disabled:
            raise PermissionDeniedError("account is disabled")
        session = new_session(
            account_id=account.account_id,
            is_admin=account.is_admin,
            remote_account_id=account.remote_account_id,
            ttl_seconds=self._session_ttl_seconds,
        )
        self._sessions.save(session)
        token, expires_in = issue_session_token(session)
        logger.info("account %s logged in", account.account_id)
        return LoginResult(account=account, session=session, token=token, expires_in=expires_in)

    def logout(self, session: Session) -> None:
        self._sessions.delete(session.session_id)

    def resolve_session(self, token: str) -> Session:
        """Map a bearer token to its live session."""
        try:
            claims = decode_session_token(token)
        except jwt.PyJWTError as exc:
            raise UnauthenticatedError() from exc
        session = self._sessions.get(claims["sid"])
        if session is None or str(session.account_id) != claims["sub"]:
            raise UnauthenticatedError()
        return session

    def current_account(self, session: Session) -> Account:
        """Re-read the session's account; a deleted or disabled account ends the session."""
        account = self._accounts.get_account(session.account_id)
        if account is None or account.disabled:
            self._sessions.delete(session.session_id)
            raise UnauthenticatedError()
        return account

    def require_admin(self, session: Session) -> Account:
        """Check the admin flag in the Credential Store, never the session snapshot."""
        account = self.current_account(session)
        if not account.is_admin:
            raise PermissionDeniedError("administrator access required")
        return account

    def get_accounts_synchronized(self) -> tuple[list[Account], SyncReport]:
        """Run a synchronizer pass, then list every local account."""
        try:
            report = self._synchronizer.synchronize()
        except RemoteUnavailableError as exc:
            logger.warning("account listing served without sync: %s", exc)
            report = SyncReport()
        return self._accounts.list_accounts(), report

    def get_account(self, account_id: int) -> Account:
        account = self._accounts.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    def disable_account(self, account_id: int, actor: str) -> Account:
        """Disable locally, then push the disable to the media server."""
        account = self._accounts.set_disabled(account_id, True)
        if account is None:
            raise NotFoundError("account not found")
        self._accounts.write_audit_event(
            event_type="account.disabled",
            actor=actor,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=account.remote_account_id,
        )
        self._push_remote(account, disabled=True)
        return account

    def enable_account(self, account_id: int, actor: str) -> Account:
        """Re-enable permanently: the expiry is cleared, not restored."""
        account = self._accounts.enable_permanently(account_id)
        if account is None:
            raise NotFoundError("account not found")
        self._accounts.write_audit_event(
            event_type="account.enabled",
            actor=actor,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=account.remote_account_id,
        )
        self._push_remote(account, disabled=False)
        return account

    def delete_account(self, account_id: int, actor: str) -> None:
        """Delete the local record only; the remote account is left untouched."""
        account = self.get_account(account_id)
        if not self._accounts.delete_account(account_id):
            raise NotFoundError("account not found")
        self._accounts.write_audit_event(
            event_type="account.deleted",
            actor=actor,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=account.remote_account_id,
        )

    def run_expiry_sweep_once(self) -> SweepReport:
        return self._sweeper.run_once()

    def create_profile(self, payload: CreateProfileInput, actor: str) -> AccessProfile:
        """Capture folder access and home layout from a reference account."""
        if not payload.name.strip():
            raise ValidationError("profile name is required")
        source = payload.source_remote_account_id
        policy = self._gateway.get_account_policy(source)
        if policy.enable_all_folders:
            folder_ids = [folder.id for folder in self._gateway.list_library_folders()]
        else:
            folder_ids = list(policy.enabled_folders)
        layout = extract_home_layout(self._gateway.get_account_configuration(source))
        profile = self._profiles.create_profile(payload, folder_ids, layout)
        self._accounts.write_audit_event(
            event_type="profile.created",
            actor=actor,
            remote_account_id=source,
            metadata={"profile_id": profile.profile_id, "folders": len(folder_ids)},
        )
        return profile

    def list_profiles(self) -> list[AccessProfile]:
        return self._profiles.list_profiles()

    def delete_profile(self, profile_id: int) -> None:
        if not self._profiles.delete_profile(profile_id):
            raise NotFoundError("profile not found")

    def list_audit_events(
        self,
        *,
        account_id: int | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return activity records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._accounts.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _push_remote(self, account: Account, *, disabled: bool) -> None:
        if account.remote_account_id is None:
            return
        try:
            confirmed = push_disabled_flag(self._gateway, account.remote_account_id, disabled)
        except AccessError as exc:
            logger.warning(
                "remote update for account %s failed after local change: %s", account.account_id, exc
            )
            raise RemoteUnavailableError(
                "saved locally, but the media server could not be updated"
            ) from exc
        if not confirmed:
            logger.error(
                "media server ignored disabled=%s for remote account %s",
                disabled,
                account.remote_account_id,
            )
            raise RemoteUnavailableError("saved locally, but the media server did not apply the change")

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValidationError("invalid cursor") from exc
