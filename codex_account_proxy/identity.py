from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jwt

from codex_account_proxy.constants import CHATGPT_ACCOUNT_CLAIM_PATH
from codex_account_proxy.storage.schemas import AccountIdSource

_CANDIDATE_KEYS = ("organizations", "orgs", "accounts", "workspaces", "teams")
_NESTED_LIST_KEYS = ("data", "items", "accounts", "organizations", "workspaces", "teams")


@dataclass(slots=True)
class AccountIdCandidate:
    account_id: str
    label: str
    source: AccountIdSource
    organization_id: str | None = None
    is_default: bool | None = None
    is_personal: bool | None = None


def decode_jwt_payload(token: str | None) -> dict[str, Any] | None:
    """Decode JWT claims without verifying the signature."""
    if not token or token.count(".") != 2:
        return None
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return payload if isinstance(payload, dict) else None


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _first_text(record: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = _text(record.get(key))
        if value:
            return value
    return None


def _first_present(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return None


def _id_suffix(account_id: str) -> str:
    return account_id[-6:] if len(account_id) > 6 else account_id


def _normalize_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in _NESTED_LIST_KEYS:
            nested = value.get(key)
            if nested is not None:
                return nested if isinstance(nested, list) else []
    return []


def _candidate_from_record(
    record: dict[str, Any],
    source: AccountIdSource,
    organization_override: str | None,
) -> AccountIdCandidate | None:
    account_id = _first_text(
        record,
        "account_id",
        "accountId",
        "chatgpt_account_id",
        "organization_id",
        "org_id",
        "workspace_id",
        "team_id",
        "id",
    )
    if not account_id:
        return None

    organization_id = (
        _first_text(record, "organization_id", "organizationId", "org_id") or organization_override
    )
    name = _first_text(
        record,
        "name",
        "display_name",
        "title",
        "organization_name",
        "workspace_name",
        "team_name",
        "slug",
    )
    kind = _first_text(record, "type", "plan_type", "kind", "account_type")
    role = _first_text(record, "role", "membership_role", "user_role")
    is_default = _as_bool(
        _first_present(
            record, "is_default", "isDefault", "default", "primary", "is_active", "isActive", "current"
        )
    )
    is_personal = _as_bool(_first_present(record, "is_personal", "isPersonal", "personal"))

    label_base = name or kind or "Workspace"
    parts: list[str] = []
    if kind and (not name or name.lower() != kind.lower()):
        parts.append(kind)
    if role:
        parts.append(f"role:{role}")
    if is_personal:
        parts.append("personal")
    meta = f" ({', '.join(parts)})" if parts else ""
    return AccountIdCandidate(
        account_id=account_id,
        organization_id=organization_id,
        label=f"{label_base}{meta} [id:{_id_suffix(account_id)}]",
        source=source,
        is_default=is_default,
        is_personal=is_personal,
    )


def _organization_ids_by_index(value: Any) -> list[str | None]:
    ids: list[str | None] = []
    for item in _normalize_list(value):
        if not isinstance(item, dict):
            ids.append(None)
            continue
        ids.append(
            _first_text(
                item, "id", "organization_id", "organizationId", "org_id", "team_id", "workspace_id"
            )
        )
    return ids


def _canonical_organization_ids(payload: dict[str, Any] | None) -> list[str | None]:
    if not payload:
        return []
    auth = payload.get(CHATGPT_ACCOUNT_CLAIM_PATH)
    if not isinstance(auth, dict):
        return []
    return _organization_ids_by_index(auth.get("organizations"))


def _organization_overrides(
    key: str, value: Any, canonical: list[str | None]
) -> list[str | None] | None:
    if key == "organizations":
        return canonical or _organization_ids_by_index(value)
    if key not in {"accounts", "workspaces", "teams"} or not canonical:
        return None
    length = len(_normalize_list(value))
    if length == 0 or length != len(canonical):
        return None
    return canonical


def _candidates_from_list(
    value: Any, source: AccountIdSource, overrides: list[str | None] | None
) -> list[AccountIdCandidate]:
    candidates: list[AccountIdCandidate] = []
    for index, item in enumerate(_normalize_list(value)):
        if not isinstance(item, dict):
            continue
        override = overrides[index] if overrides and index < len(overrides) else None
        candidate = _candidate_from_record(item, source, override)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def _candidates_from_payload(
    payload: dict[str, Any] | None, source: AccountIdSource
) -> list[AccountIdCandidate]:
    if not payload:
        return []
    candidates: list[AccountIdCandidate] = []
    root_canonical = _organization_ids_by_index(payload.get("organizations"))
    for key in _CANDIDATE_KEYS:
        if key in payload:
            candidates.extend(
                _candidates_from_list(
                    payload[key], source, _organization_overrides(key, payload[key], root_canonical)
                )
            )
    auth = payload.get(CHATGPT_ACCOUNT_CLAIM_PATH)
    if isinstance(auth, dict):
        canonical = _canonical_organization_ids(payload)
        for key in _CANDIDATE_KEYS:
            if key in auth:
                candidates.extend(
                    _candidates_from_list(
                        auth[key], source, _organization_overrides(key, auth[key], canonical)
                    )
                )
    return candidates


def _account_id_from_payload(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    auth = payload.get(CHATGPT_ACCOUNT_CLAIM_PATH)
    if isinstance(auth, dict):
        account_id = _text(auth.get("chatgpt_account_id"))
        if account_id:
            return account_id
    return _first_text(payload, "chatgpt_account_id", "account_id", "accountId")


def extract_account_id(access_token: str | None) -> str | None:
    payload = decode_jwt_payload(access_token)
    if not payload:
        return None
    auth = payload.get(CHATGPT_ACCOUNT_CLAIM_PATH)
    if not isinstance(auth, dict):
        return None
    return _text(auth.get("chatgpt_account_id"))


def unique_candidates(candidates: list[AccountIdCandidate]) -> list[AccountIdCandidate]:
    seen: set[str] = set()
    result: list[AccountIdCandidate] = []
    for candidate in candidates:
        organization_id = (candidate.organization_id or "").strip()
        key = (
            f"organizationId:{organization_id}"
            if organization_id
            else f"accountId:{candidate.account_id.strip()}"
        )
        if key in seen:
            continue
        seen.add(key)
        result.append(candidate)
    return result


def get_account_id_candidates(
    access_token: str | None, id_token: str | None = None
) -> list[AccountIdCandidate]:
    candidates: list[AccountIdCandidate] = []
    access_id = extract_account_id(access_token)
    if access_id:
        candidates.append(
            AccountIdCandidate(
                account_id=access_id,
                label=f"Token account [id:{_id_suffix(access_id)}]",
                source="token",
                is_default=True,
            )
        )
    if access_token:
        candidates.extend(_candidates_from_payload(decode_jwt_payload(access_token), "org"))
    if id_token:
        decoded = decode_jwt_payload(id_token)
        id_account = _account_id_from_payload(decoded)
        if id_account and id_account != access_id:
            canonical = _canonical_organization_ids(decoded)
            candidates.append(
                AccountIdCandidate(
                    account_id=id_account,
                    organization_id=canonical[0] if canonical else None,
                    label=f"ID token account [id:{_id_suffix(id_account)}]",
                    source="id_token",
                )
            )
        candidates.extend(_candidates_from_payload(decoded, "org"))
    return unique_candidates(candidates)


def select_best_account_candidate(
    candidates: list[AccountIdCandidate],
) -> AccountIdCandidate | None:
    if not candidates:
        return None
    preferences = (
        lambda c: c.source == "org" and c.is_default is True and c.is_personal is not True,
        lambda c: c.source == "org" and c.is_default is True,
        lambda c: c.source == "id_token",
        lambda c: c.source == "org" and c.is_personal is not True,
        lambda c: c.source == "token",
    )
    for matches in preferences:
        for candidate in candidates:
            if matches(candidate):
                return candidate
    return candidates[0]


def extract_account_email(access_token: str | None, id_token: str | None = None) -> str | None:
    id_payload = decode_jwt_payload(id_token)
    if id_payload:
        email = id_payload.get("email")
        if isinstance(email, str) and "@" in email and email.strip():
            return email
    payload = decode_jwt_payload(access_token)
    if not payload:
        return None
    auth = payload.get(CHATGPT_ACCOUNT_CLAIM_PATH)
    nested = auth if isinstance(auth, dict) else {}
    for value in (
        nested.get("email"),
        nested.get("chatgpt_user_email"),
        payload.get("email"),
        payload.get("preferred_username"),
    ):
        if value is None:
            continue
        if isinstance(value, str) and "@" in value and value.strip():
            return value
        return None
    return None


def should_update_account_id_from_token(
    source: AccountIdSource | None, current_account_id: str | None
) -> bool:
    if not current_account_id or not source:
        return True
    return source in {"token", "id_token"}


def resolve_request_account_id(
    stored_account_id: str | None,
    source: AccountIdSource | None,
    token_account_id: str | None,
) -> str | None:
    if not stored_account_id:
        return token_account_id
    if not should_update_account_id_from_token(source, stored_account_id):
        return stored_account_id
    return token_account_id or stored_account_id


def sanitize_email(email: str | None) -> str | None:
    if not email:
        return None
    trimmed = email.strip()
    if not trimmed or "@" not in trimmed:
        return None
    return trimmed.lower()
