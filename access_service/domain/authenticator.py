"""Login that accepts either the local password or the media server's password."""

from __future__ import annotations

import logging

from ..errors import ConflictError, InvalidCredentialsError, NotFoundError
from ..gateway.client import RemoteAccountGateway
from ..repository import AccountRepository
from ..security.passwords import PasswordHasher
from .account import Account
from .contracts import CreateAccountInput

logger = logging.getLogger(__name__)


class DualCredentialAuthenticator:
    """Verifies credentials locally first and falls back to the media server.

    Every rejection raises the same ``InvalidCredentialsError`` whether or
    not the username exists anywhere.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        gateway: RemoteAccountGateway,
        hasher: PasswordHasher,
    ) -> None:
        self._accounts = accounts
        self._gateway = gateway
        self._hasher = hasher

    def authenticate(self, username: str, password: str) -> Account:
        username = (username or "").strip()
        if not username or not password:
            raise InvalidCredentialsError()

        local = self._accounts.get_by_username(username)
        if local is None:
            return self._authenticate_remote_only(username, password)

        if self._hasher.verify(password, local.password_hash):
            return local

        # The password may have been changed on the media server without
        # ever reaching the local hash.
        remote_name = local.username
        if local.remote_account_id is not None:
            try:
                remote_name = self._gateway.get_account(local.remote_account_id).name
            except NotFoundError:
                logger.warning(
                    "remote account %s linked to %s no longer exists",
                    local.remote_account_id,
                    local.username,
                )
                raise InvalidCredentialsError() from None
        if self._gateway.authenticate(remote_name, password) is None:
            raise InvalidCredentialsError()
        return self._refresh_hash(local, password)

    def _authenticate_remote_only(self, username: str, password: str) -> Account:
        wanted = username.casefold()
        match = next(
            (remote for remote in self._gateway.list_accounts() if remote.name.casefold() == wanted),
            None,
        )
        if match is None:
            raise InvalidCredentialsError()
        if self._gateway.authenticate(match.name, password) is None:
            raise InvalidCredentialsError()

        # A synchronizer shadow may already exist under a placeholder handle.
        existing = self._accounts.get_by_remote_id(match.id)
        if existing is not None:
            return self._refresh_hash(existing, password)

        policy = match.policy or self._gateway.get_account_policy(match.id)
        try:
            account = self._accounts.create_account(
                CreateAccountInput(
                    username=match.name,
                    password_hash=self._hasher.hash(password),
                    remote_account_id=match.id,
                    is_admin=policy.is_admin,
                    disabled=policy.is_disabled,
                    role_id=self._accounts.get_default_role_id(),
                )
            )
        except ConflictError:
            # A concurrent login for the same account got there first.
            existing = self._accounts.get_by_remote_id(match.id)
            if existing is None:
                raise
            return existing

        self._accounts.write_audit_event(
            event_type="account.provisioned",
            actor=account.username,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=match.id,
            metadata={"source": "login"},
        )
        logger.info("provisioned local account %s on first login", account.username)
        return account

    def _refresh_hash(self, account: Account, password: str) -> Account:
        password_hash = self._hasher.hash(password)
        self._accounts.update_password_hash(account.account_id, password_hash)
        self._accounts.write_audit_event(
            event_type="account.password_refreshed",
            actor=account.username,
            account_id=account.account_id,
            username=account.username,
            remote_account_id=account.remote_account_id,
        )
        account.password_hash = password_hash
        return account
