"""Invite Ledger: invite creation, lookup, cleanup and redemption into provisioned accounts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from ..errors import (
    AccessError,
    ConflictError,
    InviteExhaustedError,
    InviteExpiredError,
    NotFoundError,
    ValidationError,
)
from ..gateway.client import RemoteAccountGateway
from ..repository import AccountRepository, InviteRepository, ProfileRepository
from ..security.passwords import PasswordHasher
from .account import Account
from .contracts import CreateAccountInput, CreateInviteInput
from .invite import Invite
from .naming import generate_invite_code, generate_invite_label

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5


class InviteLedger:
    """Owns the invite lifecycle and turns a live invite into a provisioned account."""

    def __init__(
        self,
        invites: InviteRepository,
        accounts: AccountRepository,
        profiles: ProfileRepository,
        gateway: RemoteAccountGateway,
        hasher: PasswordHasher,
        *,
        default_ttl_days: int = 7,
        password_min_length: int = 6,
    ) -> None:
        self._invites = invites
        self._accounts = accounts
        self._profiles = profiles
        self._gateway = gateway
        self._hasher = hasher
        self._default_ttl = timedelta(days=default_ttl_days)
        self._password_min_length = password_min_length

    def create(self, payload: CreateInviteInput, created_by: str | None) -> Invite:
        """Validate the request, stamp the expiry and insert under a fresh random code."""
        if payload.max_uses is not None and payload.max_uses < 0:
            raise ValidationError("max_uses must be zero or greater, or omitted for unlimited")
        for offsets in (payload.lifetime, payload.account_expiry):
            if min(offsets.months, offsets.days, offsets.hours, offsets.minutes) < 0:
                raise ValidationError("expiry offsets cannot be negative")
        if payload.role_id is not None and not self._accounts.role_exists(payload.role_id):
            raise ValidationError(f"role {payload.role_id} does not exist")

        now = datetime.now(timezone.utc)
        expires_at = self._invite_expiry(payload, now)
        label = (payload.label or "").strip() or generate_invite_label()

        for attempt in range(1, CODE_ATTEMPTS + 1):
            invite = self._invites.insert_invite(
                code=generate_invite_code(),
                label=label,
                payload=payload,
                expires_at=expires_at,
                created_by=created_by,
            )
            if invite is not None:
                break
            logger.warning("invite code collision on attempt %s, regenerating", attempt)
        else:
            raise ConflictError("could not allocate a unique invite code")

        self._accounts.write_audit_event(
            event_type="invite.created",
            actor=created_by,
            invite_code=invite.code,
            metadata={
                "label": invite.label,
                "max_uses": invite.max_uses,
                "expires_at": invite.expires_at.isoformat() if invite.expires_at else None,
                "profile_id": invite.profile_id,
            },
        )
        logger.info("invite %s created by %s", _short(invite.code), created_by)
        return invite

    def list_invites(self) -> list[Invite]:
        return self._invites.list_invites()

    def get_invite(self, code: str) -> Invite:
        """Return a live invite; expired or exhausted invites are deleted and reported as such."""
        invite = self._invites.get_by_code(code)
        if invite is None:
            raise NotFoundError("invite not found")
        self._ensure_live(invite, datetime.now(timezone.utc))
        return invite

    def delete_invite(self, code: str, actor: str | None) -> None:
        if not self._invites.delete_invite(code):
            raise NotFoundError("invite not found")
        self._accounts.write_audit_event(event_type="invite.deleted", actor=actor, invite_code=code)

    def cleanup(self, actor: str | None = "system") -> list[Invite]:
        """Delete every expired or exhausted invite. Safe to run repeatedly and concurrently."""
        now = datetime.now(timezone.utc)
        removed = self._invites.delete_terminal(now)
        for invite in removed:
            event_type = "invite.expired" if invite.is_expired(now) else "invite.exhausted"
            self._accounts.write_audit_event(
                event_type=event_type, actor=actor, invite_code=invite.code
            )
        if removed:
            logger.info("invite cleanup removed %d invite(s)", len(removed))
        return removed

    def redeem(self, code: str, username: str, password: str) -> Account:
        """Provision a remote and a local account from an invite.

        Validation and the usage claim happen before anything is created. The
        claim stays pending until the local account exists; only then is it
        settled, deleting the invite when that was its last use. If any step
        fails the claimed use is handed back, and a remote account that was
        already created is left behind and logged for the synchronizer to
        adopt.
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required")
        if len(password or "") < self._password_min_length:
            raise ValidationError(
                f"password must be at least {self._password_min_length} characters"
            )

        now = datetime.now(timezone.utc)
        invite = self._invites.get_by_code(code)
        if invite is None:
            raise NotFoundError("invite not found")
        self._ensure_live(invite, now)

        if self._accounts.username_exists(username):
            raise ConflictError(f"username {username!r} is already taken")

        claimed = self._claim(invite, now)

        try:
            remote_account_id = self._gateway.create_account(username, password)
        except Exception:
            self._release(claimed)
            raise

        try:
            self._grant_access(remote_account_id, claimed.profile_id)
            account = self._accounts.create_account(
                CreateAccountInput(
                    username=username,
                    password_hash=self._hasher.hash(password),
                    remote_account_id=remote_account_id,
                    expires_at=claimed.account_expires_at(now),
                    role_id=claimed.role_id or self._accounts.get_default_role_id(),
                )
            )
        except Exception as exc:
            self._release(claimed)
            logger.error(
                "redemption of invite %s failed after remote account %s was created: %s",
                _short(code),
                remote_account_id,
                exc,
            )
            self._accounts.write_audit_event(
                event_type="invite.orphaned_remote_account",
                actor=username,
                username=username,
                remote_account_id=remote_account_id,
                invite_code=code,
                metadata={"error": getattr(exc, "kind", type(exc).__name__)},
            )
            raise

        retired = self._invites.complete_use(code, datetime.now(timezone.utc))
        self._accounts.write_audit_event(
            event_type="account.created",
            actor=username,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=remote_account_id,
            invite_code=code,
            metadata={"expires_at": account.expires_at.isoformat() if account.expires_at else None},
        )
        self._accounts.write_audit_event(
            event_type="invite.used",
            actor=username,
            account_id=account.account_id,
            username=account.username,
            invite_code=code,
            metadata={"uses_remaining": claimed.uses_remaining, "deleted": retired},
        )
        logger.info("invite %s redeemed by %s", _short(code), username)
        return account

    def _invite_expiry(self, payload: CreateInviteInput, now: datetime) -> datetime:
        if payload.expires_at is not None:
            expires_at = payload.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                raise ValidationError("expires_at must be in the future")
            return expires_at
        if payload.lifetime.is_zero():
            return now + self._default_ttl
        return payload.lifetime.apply(now)

    def _ensure_live(self, invite: Invite, now: datetime) -> None:
        if invite.is_expired(now):
            self._retire(invite, now, "invite.expired")
            raise InviteExpiredError()
        if invite.is_exhausted():
            self._retire(invite, now, "invite.exhausted")
            raise InviteExhaustedError()

    def _retire(self, invite: Invite, now: datetime, event_type: str) -> None:
        if self._invites.delete_if_terminal(invite.code, now):
            self._accounts.write_audit_event(
                event_type=event_type, actor="system", invite_code=invite.code
            )

    def _claim(self, invite: Invite, now: datetime) -> Invite:
        claimed = self._invites.claim_use(invite.code, now)
        if claimed is not None:
            return claimed
        # Lost a race: other redemptions hold or used up the remaining uses,
        # or the invite expired between lookup and claim.
        current = self._invites.get_by_code(invite.code)
        if current is not None:
            self._ensure_live(current, now)
        if invite.is_expired(now):
            raise InviteExpiredError()
        raise InviteExhaustedError()

    def _release(self, claimed: Invite) -> None:
        if not self._invites.release_use(claimed.code):
            logger.warning(
                "invite %s was deleted while a redemption held a use; nothing to return",
                _short(claimed.code),
            )

    def _grant_access(self, remote_account_id: str, profile_id: int | None) -> None:
        """Copy the profile's folders onto the new account, or grant everything when no profile is set.

        An unresolvable profile revokes all folder access instead of leaving
        the server's default grant in place.
        """
        policy = self._gateway.get_account_policy(remote_account_id)
        profile = None
        if profile_id is None:
            policy.enable_all_folders = True
            policy.enabled_folders = []
        else:
            profile = self._profiles.get_profile(profile_id)
            policy.enable_all_folders = False
            if profile is None:
                logger.warning(
                    "access profile %s not found; revoking folder access for remote account %s",
                    profile_id,
                    remote_account_id,
                )
                policy.enabled_folders = []
            else:
                policy.enabled_folders = list(profile.library_folder_ids)
        self._gateway.set_account_policy(remote_account_id, policy.to_payload())

        if profile is not None and profile.home_layout:
            try:
                configuration = self._gateway.get_account_configuration(remote_account_id)
                configuration.update(profile.home_layout)
                self._gateway.set_account_configuration(remote_account_id, configuration)
            except AccessError as exc:
                logger.warning(
                    "could not apply home layout of profile %s to remote account %s: %s",
                    profile.profile_id,
                    remote_account_id,
                    exc,
                )


def _short(code: str) -> str:
    return f"{code[:6]}..."
