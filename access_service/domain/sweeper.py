"""Expiry Sweeper: disables accounts whose expiry has passed, locally and on the media server."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..gateway.client import RemoteAccountGateway
from ..repository import AccountRepository
from .account import Account
from .remote_policy import push_disabled_flag

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    disabled: list[Account] = field(default_factory=list)
    remote_disabled: list[Account] = field(default_factory=list)
    remote_failed: list[Account] = field(default_factory=list)
    local_only: list[Account] = field(default_factory=list)


class ExpirySweeper:
    """One sweep = select-and-mark expired accounts, then push the disable outward.

    Local state is allowed to lead remote state: a failed remote write is
    logged and left for the next sweep, never rolled back locally.
    """

    def __init__(self, accounts: AccountRepository, gateway: RemoteAccountGateway) -> None:
        self._accounts = accounts
        self._gateway = gateway

    def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        report = SweepReport()
        report.disabled = self._accounts.mark_expired_accounts_disabled(now)

        for account in report.disabled:
            try:
                self._accounts.write_audit_event(
                    event_type="account.expired",
                    actor="sweeper",
                    account_id=account.account_id,
                    username=account.username,
                    remote_account_id=account.remote_account_id,
                    metadata={"expires_at": account.expires_at.isoformat() if account.expires_at else None},
                )
            except Exception:
                logger.exception("recording expiry of account %s failed", account.account_id)

            if account.remote_account_id is None:
                report.local_only.append(account)
                continue

            try:
                confirmed = push_disabled_flag(self._gateway, account.remote_account_id, True)
            except Exception:
                logger.exception(
                    "disabling remote account %s for %s failed",
                    account.remote_account_id,
                    account.username,
                )
                confirmed = False

            if confirmed:
                report.remote_disabled.append(account)
            else:
                logger.error(
                    "remote account %s for %s still enabled after retry; local disable kept",
                    account.remote_account_id,
                    account.username,
                )
                report.remote_failed.append(account)

        if report.disabled:
            logger.info(
                "expiry sweep disabled %d account(s), %d remote failure(s)",
                len(report.disabled),
                len(report.remote_failed),
            )
        return report
