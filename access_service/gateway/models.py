"""Typed views of the media server's account payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RemoteAccountPolicy(BaseModel):
    """Per-account permission record.

    Unknown fields are preserved so a full write-back does not reset settings
    this service never looks at.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    is_admin: bool = Field(False, alias="IsAdministrator")
    is_disabled: bool = Field(False, alias="IsDisabled")
    enabled_folders: list[str] = Field(default_factory=list, alias="EnabledFolders")
    enable_all_folders: bool = Field(False, alias="EnableAllFolders")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class RemoteAccount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="Id")
    name: str = Field(..., alias="Name")
    policy: RemoteAccountPolicy | None = Field(default=None, alias="Policy")
    configuration: dict[str, Any] | None = Field(default=None, alias="Configuration")


class RemoteLibraryFolder(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="Id")
    name: str = Field("", alias="Name")
    collection_type: str | None = Field(default=None, alias="CollectionType")


class AuthenticationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(..., alias="AccessToken")
    user: RemoteAccount = Field(..., alias="User")


HOME_LAYOUT_KEYS = ("OrderedViews", "LatestItemsExcludes", "MyMediaExcludes")


def extract_home_layout(configuration: dict[str, Any] | None) -> dict[str, Any]:
    """Keep only the display settings that make up a home screen layout."""
    if not configuration:
        return {}
    return {key: list(configuration.get(key) or []) for key in HOME_LAYOUT_KEYS}
