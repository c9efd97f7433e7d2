"""Reconciles the local Credential Store against the media server's account list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import ConflictError
from ..gateway.client import RemoteAccountGateway
from ..gateway.models import RemoteAccount, RemoteAccountPolicy
from ..repository import AccountRepository
from ..security.passwords import PasswordHasher, generate_local_password
from .account import Account
from .contracts import CreateAccountInput
from .naming import handle_candidates

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncReport:
    created: list[Account] = field(default_factory=list)
    reenabled: list[Account] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.reenabled)


class UserSynchronizer:
    """Gives every remote account a local shadow and clears stale local disables.

    A pass is idempotent: with no external change, a second run creates
    nothing and flips nothing. Each remote account is handled in isolation so
    one failure never stops the rest of the pass.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        gateway: RemoteAccountGateway,
        hasher: PasswordHasher,
        *,
        handle_attempts: int = 5,
    ) -> None:
        self._accounts = accounts
        self._gateway = gateway
        self._hasher = hasher
        self._handle_attempts = handle_attempts

    def synchronize(self) -> SyncReport:
        report = SyncReport()
        remote_accounts = self._gateway.list_accounts()
        linked = {
            account.remote_account_id: account for account in self._accounts.list_linked_accounts()
        }

        for remote in remote_accounts:
            try:
                # The list endpoint may omit or abbreviate policies.
                policy = self._gateway.get_account_policy(remote.id)
                local = linked.get(remote.id)
                if local is None:
                    created = self._provision_shadow(remote, policy)
                    if created is not None:
                        report.created.append(created)
                        linked[remote.id] = created
                    continue

                # Only remote-enabled -> local-enabled is corrected here. A remote
                # disable is never copied to the local flag; driving disables is
                # the expiry sweeper's job. An expired account whose remote
                # disable failed therefore comes back enabled locally until the
                # next sweep marks it again.
                if local.disabled and not policy.is_disabled:
                    updated = self._accounts.clear_disabled_if_set(local.account_id)
                    if updated is not None:
                        report.reenabled.append(updated)
                        self._accounts.write_audit_event(
                            event_type="account.enabled",
                            actor="sync",
                            account_id=updated.account_id,
                            username=updated.username,
                            remote_account_id=remote.id,
                            metadata={"reason": "remote account enabled"},
                        )
            except Exception:
                logger.exception("synchronizing remote account %s failed", remote.id)
                report.failed.append(remote.id)

        if report.changed or report.failed:
            logger.info(
                "sync pass: %d created, %d re-enabled, %d failed",
                len(report.created),
                len(report.reenabled),
                len(report.failed),
            )
        return report

    def _provision_shadow(self, remote: RemoteAccount, policy: RemoteAccountPolicy) -> Account | None:
        """Create a local account for a remote one; ``None`` when a concurrent pass already did."""
        # Random local password: the media server stays the credential source
        # until a local password is explicitly set.
        password_hash = self._hasher.hash(generate_local_password())
        for candidate in handle_candidates(remote.name, self._handle_attempts):
            try:
                account = self._accounts.create_account(
                    CreateAccountInput(
                        username=candidate,
                        password_hash=password_hash,
                        remote_account_id=remote.id,
                        is_admin=policy.is_admin,
                        disabled=policy.is_disabled,
                        role_id=self._accounts.get_default_role_id(),
                    )
                )
            except ConflictError:
                if self._accounts.get_by_remote_id(remote.id) is not None:
                    return None
                logger.info("handle %r taken, regenerating for remote account %s", candidate, remote.id)
                continue
            self._accounts.write_audit_event(
                event_type="account.provisioned",
                actor="sync",
                account_id=account.account_id,
                username=account.username,
                remote_account_id=remote.id,
            )
            return account
        raise ConflictError(f"no free local handle for remote account {remote.id}")
