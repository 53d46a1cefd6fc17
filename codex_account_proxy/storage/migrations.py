from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import ValidationError

from codex_account_proxy.constants import MODEL_FAMILIES
from codex_account_proxy.storage.schemas import (
    CURRENT_STORAGE_VERSION,
    AccountRecord,
    AccountRecordV1,
    AccountStorage,
    FlaggedAccountRecord,
    FlaggedAccountStorage,
)

logger = logging.getLogger("uvicorn.error")

SUPPORTED_VERSIONS = (1, CURRENT_STORAGE_VERSION)

AccountT = TypeVar("AccountT", bound=AccountRecord)


def identity_keys(account: AccountRecord) -> list[str]:
    """Identity keys in precedence order: organizationId, accountId, refreshToken."""
    keys: list[str] = []
    organization_id = (account.organization_id or "").strip()
    if organization_id:
        keys.append(f"organizationId:{organization_id}")
    account_id = (account.account_id or "").strip()
    if account_id:
        keys.append(f"accountId:{account_id}")
    refresh_token = (account.refresh_token or "").strip()
    if refresh_token:
        keys.append(f"refreshToken:{refresh_token}")
    return keys


def identity_key(account: AccountRecord) -> str | None:
    keys = identity_keys(account)
    return keys[0] if keys else None


def migrate_v1_account(account: AccountRecordV1, now_ms: int) -> AccountRecord:
    reset_times: dict[str, int] = {}
    if account.rate_limit_reset_time is not None and account.rate_limit_reset_time > now_ms:
        reset_times = {family: account.rate_limit_reset_time for family in MODEL_FAMILIES}
    payload = account.model_dump(exclude_none=True, exclude={"rate_limit_reset_time"})
    payload["rate_limit_reset_times"] = reset_times
    return AccountRecord.model_validate(payload)


def migrate_raw_storage(data: dict[str, Any], now_ms: int) -> dict[str, Any]:
    """Lift a version 1 document to version 3. Version 3 input is returned as-is."""
    if data.get("version") != 1:
        return data
    raw_accounts = data.get("accounts") if isinstance(data.get("accounts"), list) else []
    migrated: list[dict[str, Any]] = []
    for raw in raw_accounts:
        if not isinstance(raw, dict) or not str(raw.get("refreshToken") or "").strip():
            continue
        try:
            legacy = AccountRecordV1.model_validate(raw)
        except ValidationError as exc:
            logger.warning("storage_migrate_skip_account errors=%d", exc.error_count())
            continue
        migrated.append(migrate_v1_account(legacy, now_ms).to_json_dict())
    active_index = data.get("activeIndex", 0)
    return {
        "version": CURRENT_STORAGE_VERSION,
        "accounts": migrated,
        "activeIndex": active_index,
        "activeIndexByFamily": {family: active_index for family in MODEL_FAMILIES},
    }


def _select_newest(current: AccountT | None, candidate: AccountT) -> AccountT:
    if current is None:
        return candidate
    if candidate.last_used > current.last_used:
        return candidate
    if candidate.last_used < current.last_used:
        return current
    return candidate if candidate.added_at >= current.added_at else current


def _merge_records(target: AccountT, source: AccountT) -> AccountT:
    newest = _select_newest(target, source)
    older = source if newest is target else target
    merged = older.model_dump(exclude_none=True)
    merged.update(newest.model_dump(exclude_none=True))
    for field in ("organization_id", "account_id", "account_id_source", "account_label", "email"):
        value = getattr(target, field)
        merged[field] = value if value is not None else getattr(source, field)
    return type(target).model_validate({k: v for k, v in merged.items() if v is not None})


def dedupe_by_identity_key(accounts: list[AccountT]) -> list[AccountT]:
    key_to_index: dict[str, int] = {}
    for index, account in enumerate(accounts):
        key = identity_key(account)
        if key is None:
            continue
        existing_index = key_to_index.get(key)
        if existing_index is None:
            key_to_index[key] = index
            continue
        newest = _select_newest(accounts[existing_index], account)
        key_to_index[key] = index if newest is account else existing_index
    keep = set(key_to_index.values())
    return [account for index, account in enumerate(accounts) if index in keep]


def dedupe_by_email(accounts: list[AccountT]) -> list[AccountT]:
    """Collapse legacy entries by email. Entries with an organization or account id are never merged."""
    email_to_index: dict[str, int] = {}
    keep: set[int] = set()
    for index, account in enumerate(accounts):
        if (account.organization_id or "").strip() or (account.account_id or "").strip():
            keep.add(index)
            continue
        email = (account.email or "").strip()
        if not email:
            keep.add(index)
            continue
        existing_index = email_to_index.get(email)
        if existing_index is None:
            email_to_index[email] = index
            continue
        existing = accounts[existing_index]
        is_newer = account.last_used > existing.last_used or (
            account.last_used == existing.last_used and account.added_at > existing.added_at
        )
        if is_newer:
            email_to_index[email] = index
    keep.update(email_to_index.values())
    return [account for index, account in enumerate(accounts) if index in keep]


def dedupe_by_refresh_token(accounts: list[AccountT]) -> list[AccountT]:
    """Collapse refresh-token collisions while keeping workspace-distinct entries apart."""
    working = list(accounts)
    remove: set[int] = set()
    by_token: dict[str, tuple[dict[str, int], list[int]]] = {}

    def pick(existing_index: int, candidate_index: int) -> tuple[int, int]:
        newest = _select_newest(working[existing_index], working[candidate_index])
        if newest is working[candidate_index]:
            return candidate_index, existing_index
        return existing_index, candidate_index

    for index, account in enumerate(working):
        token = account.refresh_token.strip()
        if not token:
            continue
        by_org, fallback = by_token.setdefault(token, ({}, []))
        org_key = (account.organization_id or "").strip()
        if org_key:
            existing_index = by_org.get(org_key)
            if existing_index is None:
                by_org[org_key] = index
                continue
            keep_index, drop_index = pick(existing_index, index)
            working[keep_index] = _merge_records(working[keep_index], working[drop_index])
            remove.add(drop_index)
            by_org[org_key] = keep_index
            continue
        if not fallback:
            fallback.append(index)
            continue
        keep_index, drop_index = pick(fallback[0], index)
        working[keep_index] = _merge_records(working[keep_index], working[drop_index])
        remove.add(drop_index)
        fallback[0] = keep_index

    for by_org, fallback in by_token.values():
        if not fallback or not by_org:
            continue
        org_indices = list(by_org.values())
        preferred = org_indices[0]
        for org_index in org_indices[1:]:
            preferred, _ = pick(preferred, org_index)
        working[preferred] = _merge_records(working[preferred], working[fallback[0]])
        remove.add(fallback[0])

    return [account for index, account in enumerate(working) if index not in remove]


def dedupe_accounts_for_storage(accounts: list[AccountT]) -> list[AccountT]:
    return dedupe_by_refresh_token(dedupe_by_email(dedupe_by_identity_key(accounts)))


def clamp_index(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


def find_index_by_identity_keys(accounts: list[AccountRecord], keys: list[str]) -> int:
    for key in keys:
        for index, account in enumerate(accounts):
            if key in identity_keys(account):
                return index
    return -1


def _coerce_index(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def _validate_accounts(raw_accounts: list[Any]) -> list[AccountRecord]:
    accounts: list[AccountRecord] = []
    for position, raw in enumerate(raw_accounts):
        if not isinstance(raw, dict):
            continue
        token = raw.get("refreshToken")
        if not isinstance(token, str) or not token.strip():
            continue
        try:
            record = AccountRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "storage_schema_warning position=%d errors=%d", position, exc.error_count()
            )
            continue
        if record.model_extra:
            logger.warning(
                "storage_schema_warning position=%d unknown_fields=%s",
                position,
                ",".join(sorted(record.model_extra)),
            )
        accounts.append(record)
    return accounts


def normalize_account_storage(data: Any, *, now_ms: int) -> AccountStorage | None:
    """Migrate, validate, dedupe and re-map active indexes. Returns None for unusable input."""
    if isinstance(data, AccountStorage):
        data = data.to_json_dict()
    if not isinstance(data, dict):
        logger.warning("storage_invalid_format reason=not_an_object")
        return None
    version = data.get("version")
    if version not in SUPPORTED_VERSIONS:
        logger.warning("storage_unknown_version version=%s", version)
        return None
    if not isinstance(data.get("accounts"), list):
        logger.warning("storage_invalid_format reason=accounts_not_a_list")
        return None

    migrated = migrate_raw_storage(data, now_ms)
    raw_accounts: list[Any] = migrated["accounts"]
    validated = _validate_accounts(raw_accounts)

    raw_active = clamp_index(_coerce_index(migrated.get("activeIndex"), 0), len(validated))
    active_keys = identity_keys(validated[raw_active]) if validated else []
    deduped = dedupe_accounts_for_storage(validated)

    active_index = 0
    if deduped:
        mapped = find_index_by_identity_keys(deduped, active_keys)
        active_index = mapped if mapped >= 0 else clamp_index(raw_active, len(deduped))

    raw_families = migrated.get("activeIndexByFamily")
    raw_families = raw_families if isinstance(raw_families, dict) else {}
    by_family: dict[str, int] = {}
    for family in MODEL_FAMILIES:
        raw_index = _coerce_index(raw_families.get(family), raw_active)
        mapped_index = clamp_index(raw_index, len(deduped))
        if validated and deduped:
            family_keys = identity_keys(validated[clamp_index(raw_index, len(validated))])
            found = find_index_by_identity_keys(deduped, family_keys)
            if found >= 0:
                mapped_index = found
        by_family[family] = mapped_index

    return AccountStorage(
        accounts=deduped,
        active_index=active_index,
        active_index_by_family=by_family,
    )


def normalize_flagged_storage(data: Any, *, now_ms: int) -> FlaggedAccountStorage:
    if isinstance(data, FlaggedAccountStorage):
        data = data.to_json_dict()
    if not isinstance(data, dict) or data.get("version") != 1 or not isinstance(data.get("accounts"), list):
        return FlaggedAccountStorage()
    by_token: dict[str, FlaggedAccountRecord] = {}
    for raw in data["accounts"]:
        if not isinstance(raw, dict):
            continue
        token = raw.get("refreshToken")
        if not isinstance(token, str) or not token.strip():
            continue
        payload = dict(raw)
        payload["refreshToken"] = token.strip()
        flagged_at = payload.get("flaggedAt")
        if not isinstance(flagged_at, (int, float)):
            payload["flaggedAt"] = now_ms
        payload.setdefault("addedAt", payload["flaggedAt"])
        payload.setdefault("lastUsed", payload["flaggedAt"])
        try:
            record = FlaggedAccountRecord.model_validate(payload)
        except ValidationError as exc:
            logger.warning("flagged_storage_schema_warning errors=%d", exc.error_count())
            continue
        by_token[record.refresh_token] = record
    return FlaggedAccountStorage(accounts=list(by_token.values()))
