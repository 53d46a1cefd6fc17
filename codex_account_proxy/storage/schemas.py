from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

AccountIdSource = Literal["token", "id_token", "org", "manual"]
SwitchReason = Literal["rate-limit", "initial", "rotation"]
CooldownReason = Literal["auth-failure", "network-error"]

CURRENT_STORAGE_VERSION = 3
FLAGGED_STORAGE_VERSION = 1


class _StorageModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AccountRecord(_StorageModel):
    refresh_token: str
    organization_id: str | None = None
    account_id: str | None = None
    account_id_source: AccountIdSource | None = None
    account_label: str | None = None
    account_tags: list[str] | None = None
    account_note: str | None = None
    email: str | None = None
    enabled: bool | None = None
    added_at: int = 0
    last_used: int = 0
    last_switch_reason: SwitchReason | None = None
    rate_limit_reset_times: dict[str, int] | None = None
    cooling_down_until: int | None = None
    cooldown_reason: CooldownReason | None = None
    consecutive_auth_failures: int | None = None

    @field_validator("refresh_token")
    @classmethod
    def _require_refresh_token(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("refreshToken must be non-empty")
        return value

    @field_validator("account_tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str] | None:
        if not isinstance(value, list):
            return None
        tags: list[str] = []
        for entry in value:
            if not isinstance(entry, str):
                continue
            tag = entry.strip().lower()
            if tag and tag not in tags:
                tags.append(tag)
        return tags or None

    @field_validator("account_note", mode="before")
    @classmethod
    def _normalize_note(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @field_validator("rate_limit_reset_times", mode="before")
    @classmethod
    def _normalize_reset_times(cls, value: Any) -> dict[str, int] | None:
        if not isinstance(value, dict):
            return None
        return {
            str(key): int(raw)
            for key, raw in value.items()
            if isinstance(raw, (int, float)) and not isinstance(raw, bool)
        }


class AccountRecordV1(_StorageModel):
    refresh_token: str
    account_id: str | None = None
    account_id_source: AccountIdSource | None = None
    account_label: str | None = None
    email: str | None = None
    enabled: bool | None = None
    added_at: int = 0
    last_used: int = 0
    last_switch_reason: SwitchReason | None = None
    rate_limit_reset_time: int | None = None
    cooling_down_until: int | None = None
    cooldown_reason: CooldownReason | None = None


class AccountStorage(_StorageModel):
    version: Literal[3] = CURRENT_STORAGE_VERSION
    accounts: list[AccountRecord] = Field(default_factory=list)
    active_index: int = 0
    active_index_by_family: dict[str, int] = Field(default_factory=dict)


class FlaggedAccountRecord(AccountRecord):
    flagged_at: int = 0
    flagged_reason: str | None = None
    last_error: str | None = None


class FlaggedAccountStorage(_StorageModel):
    version: Literal[1] = FLAGGED_STORAGE_VERSION
    accounts: list[FlaggedAccountRecord] = Field(default_factory=list)
