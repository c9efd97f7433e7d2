"""Pushing the disabled flag to a remote account policy."""

from __future__ import annotations

import logging

from ..errors import RemoteUnavailableError
from ..gateway.client import RemoteAccountGateway

logger = logging.getLogger(__name__)


def push_disabled_flag(gateway: RemoteAccountGateway, remote_account_id: str, disabled: bool) -> bool:
    """Write ``IsDisabled`` to the remote policy and confirm it took.

    The full policy is written back first. If a re-read shows the flag did not
    change, a second write sends only the disabled field, since some servers
    reject a composite policy write they would accept field by field. Returns
    whether the remote state matches ``disabled`` afterwards. Read failures
    propagate as ``RemoteUnavailableError``.
    """
    policy = gateway.get_account_policy(remote_account_id)
    if policy.is_disabled == disabled:
        return True

    policy.is_disabled = disabled
    try:
        gateway.set_account_policy(remote_account_id, policy.to_payload())
    except RemoteUnavailableError as exc:
        logger.warning("full policy write for remote account %s failed: %s", remote_account_id, exc)

    if gateway.get_account_policy(remote_account_id).is_disabled == disabled:
        return True

    logger.info("retrying remote account %s with disabled-only policy payload", remote_account_id)
    try:
        gateway.set_account_policy(remote_account_id, {"IsDisabled": disabled})
    except RemoteUnavailableError as exc:
        logger.warning("narrow policy write for remote account %s failed: %s", remote_account_id, exc)
        return False
    return gateway.get_account_policy(remote_account_id).is_disabled == disabled
