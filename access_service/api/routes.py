"""HTTP route definitions for the access service."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from ..domain.account import AccessProfile, Account
from ..domain.contracts import CreateInviteInput, CreateProfileInput
from ..domain.invite import ExpiryOffsets, Invite
from ..domain.invites import InviteLedger
from ..domain.service import AccountService
from ..errors import AccessError, UnauthenticatedError
from ..security.rate_limiter import RateLimiter
from ..security.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of a local `Account`."""

    account_id: int
    username: str
    remote_account_id: str | None
    is_admin: bool
    disabled: bool
    expires_at: datetime | None
    role_id: int | None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain record."""
        return cls(
            account_id=account.account_id,
            username=account.username,
            remote_account_id=account.remote_account_id,
            is_admin=account.is_admin,
            disabled=account.disabled,
            expires_at=account.expires_at,
            role_id=account.role_id,
            created_at=account.created_at,
        )


class SyncSummary(BaseModel):
    created: int
    reenabled: int
    failed: int


class AccountListResponse(BaseModel):
    items: list[AccountResponse]
    sync: SyncSummary


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    """Bearer token for the session opened by a successful login."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class Offsets(BaseModel):
    months: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def to_domain(self) -> ExpiryOffsets:
        return ExpiryOffsets(months=self.months, days=self.days, hours=self.hours, minutes=self.minutes)


class AccountExpiry(Offsets):
    """Expiry applied to each account created from the invite; ``enabled`` defaults to "any offset set"."""

    enabled: bool | None = None


class CreateInviteRequest(BaseModel):
    """Payload accepted when creating an invite. ``max_uses: null`` means unlimited."""

    label: str | None = None
    profile_id: int | None = None
    role_id: int | None = None
    max_uses: int | None = 1
    expires_at: datetime | None = None
    lifetime: Offsets = Field(default_factory=Offsets)
    account_expiry: AccountExpiry = Field(default_factory=AccountExpiry)

    def to_domain(self) -> CreateInviteInput:
        account_expiry = self.account_expiry.to_domain()
        enabled = self.account_expiry.enabled
        if enabled is None:
            enabled = not account_expiry.is_zero()
        return CreateInviteInput(
            label=self.label,
            profile_id=self.profile_id,
            role_id=self.role_id,
            max_uses=self.max_uses,
            expires_at=self.expires_at,
            lifetime=self.lifetime.to_domain(),
            account_expiry_enabled=enabled,
            account_expiry=account_expiry,
        )


class InviteResponse(BaseModel):
    code: str
    label: str | None
    profile_id: int | None
    role_id: int | None
    max_uses: int | None
    used_count: int
    uses_remaining: int | None
    expires_at: datetime | None
    account_expiry_enabled: bool
    account_expiry: Offsets
    created_by: str | None
    created_at: datetime | None

    @classmethod
    def from_domain(cls, invite: Invite) -> "InviteResponse":
        offsets = invite.account_expiry
        return cls(
            code=invite.code,
            label=invite.label,
            profile_id=invite.profile_id,
            role_id=invite.role_id,
            max_uses=invite.max_uses,
            used_count=invite.used_count,
            uses_remaining=invite.uses_remaining,
            expires_at=invite.expires_at,
            account_expiry_enabled=invite.account_expiry_enabled,
            account_expiry=Offsets(
                months=offsets.months, days=offsets.days, hours=offsets.hours, minutes=offsets.minutes
            ),
            created_by=invite.created_by,
            created_at=invite.created_at,
        )


class PublicInviteResponse(BaseModel):
    """What an invitee may see before signing up."""

    label: str | None
    uses_remaining: int | None
    expires_at: datetime | None
    account_expiry_enabled: bool


class CleanupResponse(BaseModel):
    removed: int


class RedeemRequest(BaseModel):
    username: str
    password: str


class CreateProfileRequest(BaseModel):
    name: str
    source_remote_account_id: str
    is_default: bool = False


class ProfileResponse(BaseModel):
    profile_id: int
    name: str
    source_remote_account_id: str
    library_folder_ids: list[str]
    home_layout: dict[str, Any]
    is_default: bool

    @classmethod
    def from_domain(cls, profile: AccessProfile) -> "ProfileResponse":
        return cls(
            profile_id=profile.profile_id,
            name=profile.name,
            source_remote_account_id=profile.source_remote_account_id,
            library_folder_ids=profile.library_folder_ids,
            home_layout=profile.home_layout,
            is_default=profile.is_default,
        )


class SweepResponse(BaseModel):
    disabled: list[int]
    remote_failed: list[int]


class AuditLogEntry(BaseModel):
    """Activity log response entry."""

    audit_id: int
    account_id: int | None
    username: str | None
    remote_account_id: str | None
    invite_code: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated activity log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


@contextmanager
def _access_errors() -> Iterator[None]:
    """Translate domain errors into HTTP responses carrying a kind and a message."""
    try:
        yield
    except AccessError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_ledger(request: Request) -> InviteLedger:
    ledger: InviteLedger = request.app.state.invite_ledger
    return ledger


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter


def current_session(
    authorization: str | None = Header(default=None),
    service: AccountService = Depends(get_service),
) -> Session:
    """Resolve the bearer token in the Authorization header to a live session."""
    with _access_errors():
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise UnauthenticatedError()
        return service.resolve_session(token)


def admin_account(
    session: Session = Depends(current_session),
    service: AccountService = Depends(get_service),
) -> Account:
    """Admin guard; re-reads the admin flag on every request."""
    with _access_errors():
        return service.require_admin(session)


def _enforce_rate_limit(limiter: RateLimiter, key: str) -> None:
    if not limiter.allow(key):
        logger.warning("rate limit exceeded for %s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"kind": "rate_limited", "message": "rate limited"},
        )


@router.post("/auth/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> LoginResponse:
    """Log in with a local or media server password."""
    rate_key = f"login:{payload.username.strip().lower()}"
    _enforce_rate_limit(limiter, rate_key)
    with _access_errors():
        result = service.login(payload.username, payload.password)
    limiter.reset(rate_key)
    return LoginResponse(
        access_token=result.token,
        expires_in=result.expires_in,
        account=AccountResponse.from_domain(result.account),
    )


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    session: Session = Depends(current_session),
    service: AccountService = Depends(get_service),
) -> Response:
    service.logout(session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/auth/me", response_model=AccountResponse)
def me(
    session: Session = Depends(current_session),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _access_errors():
        return AccountResponse.from_domain(service.current_account(session))


@router.get("/accounts", response_model=AccountListResponse)
def list_accounts(
    _: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> AccountListResponse:
    """List local accounts after reconciling them with the media server."""
    with _access_errors():
        accounts, report = service.get_accounts_synchronized()
    return AccountListResponse(
        items=[AccountResponse.from_domain(account) for account in accounts],
        sync=SyncSummary(
            created=len(report.created), reenabled=len(report.reenabled), failed=len(report.failed)
        ),
    )


@router.post("/accounts/{account_id}/disable", response_model=AccountResponse)
def disable_account(
    account_id: int,
    admin: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _access_errors():
        return AccountResponse.from_domain(service.disable_account(account_id, admin.username))


@router.post("/accounts/{account_id}/enable", response_model=AccountResponse)
def enable_account(
    account_id: int,
    admin: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Enable an account permanently; any expiry is removed."""
    with _access_errors():
        return AccountResponse.from_domain(service.enable_account(account_id, admin.username))


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: int,
    admin: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> Response:
    with _access_errors():
        service.delete_account(account_id, admin.username)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invites", response_model=InviteResponse, status_code=status.HTTP_201_CREATED)
def create_invite(
    payload: CreateInviteRequest,
    admin: Account = Depends(admin_account),
    ledger: InviteLedger = Depends(get_ledger),
) -> InviteResponse:
    with _access_errors():
        invite = ledger.create(payload.to_domain(), created_by=admin.username)
    return InviteResponse.from_domain(invite)


@router.get("/invites", response_model=list[InviteResponse])
def list_invites(
    _: Account = Depends(admin_account),
    ledger: InviteLedger = Depends(get_ledger),
) -> list[InviteResponse]:
    return [InviteResponse.from_domain(invite) for invite in ledger.list_invites()]


@router.post("/invites/cleanup", response_model=CleanupResponse)
def cleanup_invites(
    admin: Account = Depends(admin_account),
    ledger: InviteLedger = Depends(get_ledger),
) -> CleanupResponse:
    return CleanupResponse(removed=len(ledger.cleanup(actor=admin.username)))


@router.get("/invites/{code}", response_model=PublicInviteResponse)
def get_invite(code: str, ledger: InviteLedger = Depends(get_ledger)) -> PublicInviteResponse:
    """Public invite lookup for the signup page."""
    with _access_errors():
        invite = ledger.get_invite(code)
    return PublicInviteResponse(
        label=invite.label,
        uses_remaining=invite.uses_remaining,
        expires_at=invite.expires_at,
        account_expiry_enabled=invite.account_expiry_enabled,
    )


@router.delete("/invites/{code}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invite(
    code: str,
    admin: Account = Depends(admin_account),
    ledger: InviteLedger = Depends(get_ledger),
) -> Response:
    with _access_errors():
        ledger.delete_invite(code, actor=admin.username)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/invites/{code}/redeem", response_model=AccountResponse, status_code=status.HTTP_201_CREATED
)
def redeem_invite(
    code: str,
    payload: RedeemRequest,
    request: Request,
    ledger: InviteLedger = Depends(get_ledger),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> AccountResponse:
    """Sign up with an invite code."""
    client_host = request.client.host if request.client else "unknown"
    _enforce_rate_limit(limiter, f"redeem:{client_host}")
    with _access_errors():
        account = ledger.redeem(code, payload.username, payload.password)
    return AccountResponse.from_domain(account)


@router.post("/profiles", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def create_profile(
    payload: CreateProfileRequest,
    admin: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    """Capture an access profile from a reference media server account."""
    with _access_errors():
        profile = service.create_profile(
            CreateProfileInput(
                name=payload.name,
                source_remote_account_id=payload.source_remote_account_id,
                is_default=payload.is_default,
            ),
            actor=admin.username,
        )
    return ProfileResponse.from_domain(profile)


@router.get("/profiles", response_model=list[ProfileResponse])
def list_profiles(
    _: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> list[ProfileResponse]:
    return [ProfileResponse.from_domain(profile) for profile in service.list_profiles()]


@router.delete("/profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile(
    profile_id: int,
    _: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> Response:
    with _access_errors():
        service.delete_profile(profile_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/maintenance/expiry-sweep", response_model=SweepResponse)
def run_expiry_sweep(
    _: Account = Depends(admin_account),
    service: AccountService = Depends(get_service),
) -> SweepResponse:
    """Run one expiry sweep immediately."""
    with _access_errors():
        report = service.run_expiry_sweep_once()
    return SweepResponse(
        disabled=[account.account_id for account in report.disabled],
        remote_failed=[account.account_id for account in report.remote_failed],
    )


@router.get("/activity", response_model=AuditLogResponse)
def list_activity(
    _: Account = Depends(admin_account),
    account_id: int | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated account and invite activity with optional filtering."""
    with _access_errors():
        records, next_cursor = service.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            username=record.username,
            remote_account_id=record.remote_account_id,
            invite_code=record.invite_code,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
