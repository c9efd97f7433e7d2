from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass(slots=True, frozen=True)
class ExpiryOffsets:
    """Calendar offset added to a point in time (months first, then the rest)."""

    months: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def is_zero(self) -> bool:
        return not (self.months or self.days or self.hours or self.minutes)

    def apply(self, start: datetime) -> datetime:
        shifted = add_months(start, self.months) if self.months else start
        return shifted + timedelta(days=self.days, hours=self.hours, minutes=self.minutes)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the length of the target month."""
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


@dataclass(slots=True)
class Invite:
    """Redeemable token that provisions a new account.

    ``label`` is cosmetic only; ``code`` is the identifier.
    """

    invite_id: int
    code: str
    label: str | None
    profile_id: int | None
    role_id: int | None
    max_uses: int | None
    used_count: int
    expires_at: datetime | None
    account_expiry_enabled: bool
    account_expiry: ExpiryOffsets = field(default_factory=ExpiryOffsets)
    created_by: str | None = None
    created_at: datetime | None = None
    # Uses claimed by redemptions that have not finished provisioning yet.
    pending_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.used_count >= self.max_uses

    def is_terminal(self, now: datetime) -> bool:
        """Expired or out of uses, with no redemption still holding a claimed use."""
        return self.pending_count == 0 and (self.is_expired(now) or self.is_exhausted())

    @property
    def uses_remaining(self) -> int | None:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.used_count, 0)

    def account_expires_at(self, now: datetime) -> datetime | None:
        """Expiry stamped on accounts created from this invite, or ``None`` for permanent."""
        if not self.account_expiry_enabled or self.account_expiry.is_zero():
            return None
        return self.account_expiry.apply(now)
