from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

UNSUPPORTED_MODEL_CODE = "model_not_supported_with_chatgpt_account"
MAX_FALLBACK_HOPS = 4

# Each model falls back to the next entry. The 5.3 -> 5.2 edge is optional.
FALLBACK_CHAIN: tuple[str, ...] = (
    "gpt-5.3-codex-spark",
    "gpt-5.3-codex",
    "gpt-5.2-codex",
    "gpt-5-codex",
)
_GATED_EDGE = ("gpt-5.3-codex", "gpt-5.2-codex")

_UNSUPPORTED_PATTERNS = (
    re.compile(r"model is not supported when using codex with a chatgpt account", re.IGNORECASE),
    re.compile(r"not supported when using codex with a chatgpt account", re.IGNORECASE),
    re.compile(r"not currently available for this chatgpt account when using codex", re.IGNORECASE),
)
_QUOTED_MODEL_PATTERN = re.compile(r"'([A-Za-z0-9._:-]+)'")


@dataclass(slots=True, frozen=True)
class UnsupportedModelInfo:
    is_unsupported: bool
    unsupported_model: str | None = None
    message: str | None = None


def _error_fields(error_body: Any) -> tuple[str, str, str | None]:
    """(code, message, unsupported_model) from a raw or normalized error body."""
    if not isinstance(error_body, dict):
        return "", "", None
    nested = error_body.get("error")
    if isinstance(nested, dict):
        code = str(nested.get("code") or nested.get("type") or "")
        message = nested.get("message") if isinstance(nested.get("message"), str) else ""
        model = nested.get("unsupported_model")
        return code, message, model if isinstance(model, str) and model else None
    for key in ("detail", "message"):
        value = error_body.get(key)
        if isinstance(value, str):
            return "", value, None
    return "", "", None


def extract_unsupported_model(text: str) -> str | None:
    match = _QUOTED_MODEL_PATTERN.search(text or "")
    return match.group(1) if match else None


def get_unsupported_model_info(error_body: Any) -> UnsupportedModelInfo:
    code, message, model = _error_fields(error_body)
    if code != UNSUPPORTED_MODEL_CODE and not any(
        pattern.search(message) for pattern in _UNSUPPORTED_PATTERNS
    ):
        return UnsupportedModelInfo(is_unsupported=False)
    return UnsupportedModelInfo(
        is_unsupported=True,
        unsupported_model=model or extract_unsupported_model(message),
        message=message or None,
    )


def next_fallback_model(model: str | None, *, allow_gpt53_to_gpt52: bool = True) -> str | None:
    if not model or model not in FALLBACK_CHAIN:
        return None
    position = FALLBACK_CHAIN.index(model)
    for candidate in FALLBACK_CHAIN[position + 1 :]:
        if (model, candidate) == _GATED_EDGE and not allow_gpt53_to_gpt52:
            continue
        return candidate
    return None


def resolve_fallback_model(
    requested_model: str | None,
    error_body: Any,
    *,
    attempted_models: Iterable[str],
    enabled: bool,
    allow_gpt53_to_gpt52: bool = True,
    max_hops: int = MAX_FALLBACK_HOPS,
) -> str | None:
    """Next model to try after an unsupported-model rejection, or None to stop.

    Models already attempted are skipped, and the cascade stops after
    `max_hops` substitutions within one request.
    """
    if not enabled:
        return None
    info = get_unsupported_model_info(error_body)
    if not info.is_unsupported:
        return None
    attempted = list(dict.fromkeys(attempted_models))
    if len(attempted) - 1 >= max_hops:
        return None
    current = requested_model or info.unsupported_model
    seen = set(attempted)
    candidate = next_fallback_model(current, allow_gpt53_to_gpt52=allow_gpt53_to_gpt52)
    while candidate is not None and candidate in seen:
        candidate = next_fallback_model(candidate, allow_gpt53_to_gpt52=allow_gpt53_to_gpt52)
    return candidate


def unsupported_model_payload(model: str | None, *, upstream_message: str | None = None) -> dict[str, Any]:
    name = model or "requested model"
    message = (
        f"The '{name}' model is not available for this ChatGPT account when using Codex. "
        "Choose a different model, or enable CODEX_AUTH_UNSUPPORTED_MODEL_FALLBACK to fall back "
        "to a supported Codex model automatically."
    )
    error: dict[str, Any] = {
        "message": message,
        "type": "entitlement_error",
        "code": UNSUPPORTED_MODEL_CODE,
    }
    if model:
        error["unsupported_model"] = model
    if upstream_message and upstream_message != message:
        error["upstream_message"] = upstream_message
    return {"error": error}
