"""HTTP client for the media server's account and library endpoints.

Every transport failure and every payload that does not validate is turned
into :class:`~access_service.errors.RemoteUnavailableError` here, so callers
never see ``httpx`` or ``pydantic`` exceptions. An account lookup that the
server answers with 404 raises :class:`~access_service.errors.NotFoundError`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PayloadValidationError

from ..errors import NotFoundError, RemoteUnavailableError
from .models import (
    AuthenticationResult,
    RemoteAccount,
    RemoteAccountPolicy,
    RemoteLibraryFolder,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_ACCOUNT_LIST = TypeAdapter(list[RemoteAccount])
_FOLDER_LIST = TypeAdapter(list[RemoteLibraryFolder])

# Statuses the authenticate endpoint uses for a plain wrong password.
_REJECTED_LOGIN_STATUSES = {400, 401, 403, 404}


class RemoteAccountGateway(Protocol):
    """Operations the engine needs from the media server."""

    def list_accounts(self) -> list[RemoteAccount]: ...

    def get_account(self, remote_account_id: str) -> RemoteAccount: ...

    def get_account_policy(self, remote_account_id: str) -> RemoteAccountPolicy: ...

    def set_account_policy(self, remote_account_id: str, payload: dict[str, Any]) -> None: ...

    def get_account_configuration(self, remote_account_id: str) -> dict[str, Any]: ...

    def set_account_configuration(self, remote_account_id: str, payload: dict[str, Any]) -> None: ...

    def authenticate(self, username: str, password: str) -> str | None: ...

    def create_account(self, name: str, password: str) -> str: ...

    def list_library_folders(self) -> list[RemoteLibraryFolder]: ...


class MediaServerGateway:
    """Synchronous media server client with an explicit per-request timeout."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        client_name: str = "Access Service",
        device_id: str = "access-service",
        version: str = "0.1.0",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._auth_header = (
            f'MediaBrowser Client="{client_name}", Device="{client_name}", '
            f'DeviceId="{device_id}", Version="{version}"'
        )
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers={"Accept": "application/json", "X-Emby-Token": api_key},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def list_accounts(self) -> list[RemoteAccount]:
        response = self._send("GET", "/Users")
        return self._parse_list(_ACCOUNT_LIST, response, "account list")

    def get_account(self, remote_account_id: str) -> RemoteAccount:
        response = self._send(
            "GET", f"/Users/{remote_account_id}", not_found="remote account not found"
        )
        return self._parse(RemoteAccount, response, "account detail")

    def get_account_policy(self, remote_account_id: str) -> RemoteAccountPolicy:
        account = self.get_account(remote_account_id)
        if account.policy is None:
            raise RemoteUnavailableError(f"media server returned no policy for account {remote_account_id}")
        return account.policy

    def set_account_policy(self, remote_account_id: str, payload: dict[str, Any]) -> None:
        self._send("POST", f"/Users/{remote_account_id}/Policy", json=payload)

    def get_account_configuration(self, remote_account_id: str) -> dict[str, Any]:
        return self.get_account(remote_account_id).configuration or {}

    def set_account_configuration(self, remote_account_id: str, payload: dict[str, Any]) -> None:
        self._send("POST", f"/Users/{remote_account_id}/Configuration", json=payload)

    def authenticate(self, username: str, password: str) -> str | None:
        """Return an access token when the media server accepts the password, else ``None``."""
        try:
            response = self._client.post(
                "/Users/AuthenticateByName",
                json={"Username": username, "Pw": password},
                headers={"X-Emby-Authorization": self._auth_header},
            )
        except httpx.HTTPError as exc:
            logger.warning("media server authentication request failed: %s", exc)
            raise RemoteUnavailableError() from exc

        if response.status_code in _REJECTED_LOGIN_STATUSES:
            return None
        if response.is_error:
            logger.warning("media server authentication answered %s", response.status_code)
            raise RemoteUnavailableError()
        return self._parse(AuthenticationResult, response, "authentication result").access_token

    def create_account(self, name: str, password: str) -> str:
        response = self._send("POST", "/Users/New", json={"Name": name, "Password": password})
        return self._parse(RemoteAccount, response, "created account").id

    def list_library_folders(self) -> list[RemoteLibraryFolder]:
        response = self._send("GET", "/Library/MediaFolders")
        try:
            items = response.json().get("Items", [])
        except (ValueError, AttributeError) as exc:
            raise RemoteUnavailableError("media server returned malformed library folders") from exc
        try:
            return _FOLDER_LIST.validate_python(items)
        except PayloadValidationError as exc:
            raise RemoteUnavailableError("media server returned malformed library folders") from exc

    def _send(
        self, method: str, path: str, *, json: Any = None, not_found: str | None = None
    ) -> httpx.Response:
        """Issue a request; a 404 becomes ``NotFoundError`` when ``not_found`` names the resource."""
        try:
            response = self._client.request(method, path, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if not_found is not None and exc.response.status_code == 404:
                raise NotFoundError(not_found) from exc
            logger.warning(
                "media server answered %s for %s %s", exc.response.status_code, method, path
            )
            raise RemoteUnavailableError(
                f"media server answered {exc.response.status_code} for {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("media server request %s %s failed: %s", method, path, exc)
            raise RemoteUnavailableError() from exc
        return response

    def _parse(self, model: type[ModelT], response: httpx.Response, what: str) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, PayloadValidationError) as exc:
            raise RemoteUnavailableError(f"media server returned a malformed {what}") from exc

    def _parse_list(self, adapter: TypeAdapter, response: httpx.Response, what: str) -> list:
        try:
            return adapter.validate_python(response.json())
        except (ValueError, PayloadValidationError) as exc:
            raise RemoteUnavailableError(f"media server returned a malformed {what}") from exc
