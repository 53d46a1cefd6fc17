from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from codex_account_proxy.config import UserConfig
from codex_account_proxy.transform.input_utils import (
    extract_message_text,
    filter_host_system_prompts,
    filter_input,
    inject_missing_tool_outputs,
    normalize_orphaned_tool_outputs,
)
from codex_account_proxy.transform.models import (
    get_model_config,
    get_reasoning_config,
    normalize_model,
)
from codex_account_proxy.transform.prompts import (
    TOOL_REMAP_MESSAGE,
    developer_message,
    render_bridge_prompt,
)
from codex_account_proxy.transform.tool_utils import (
    cleanup_tool_definitions,
    sanitize_plan_only_tools,
)

logger = logging.getLogger("uvicorn.error")

CollaborationMode = Literal["plan", "default", "unknown"]
FastSessionStrategy = Literal["hybrid", "always"]

ENCRYPTED_REASONING_INCLUDE = "reasoning.encrypted_content"
UNSUPPORTED_FIELDS = ("max_output_tokens", "max_completion_tokens", "providerOptions")

MAX_HEAD_INSTRUCTION_CHARS = 1200
MAX_HEAD_INSTRUCTION_CHARS_TRIVIAL = 400
MAX_TRIVIAL_PROMPT_CHARS = 220
FAST_SESSION_NOTE = (
    "[Fast session mode: keep answers concise, direct, and action-oriented. "
    'Do not output internal planning labels such as "Thinking:".]'
)

_PLAN_PATTERNS = (
    re.compile(r"collaboration mode:\s*plan", re.IGNORECASE),
    re.compile(r"in Plan mode", re.IGNORECASE),
)
_DEFAULT_PATTERNS = (
    re.compile(r"collaboration mode:\s*default", re.IGNORECASE),
    re.compile(r"in Default mode", re.IGNORECASE),
)
_LIST_PATTERN = re.compile(r"(^|\n)\s*(?:[-*]|\d+\.)\s+\S", re.MULTILINE)
_URL_PATTERN = re.compile(r"https?://", re.IGNORECASE)
_TABLE_PATTERN = re.compile(r"\|.+\|")


@dataclass(slots=True, frozen=True)
class TransformOptions:
    codex_mode: bool = True
    fast_session: bool = False
    fast_session_strategy: FastSessionStrategy = "hybrid"
    fast_session_max_input_items: int = 30
    collaboration_mode: str | None = None


def _role(item: Any) -> str:
    if not isinstance(item, dict):
        return ""
    role = item.get("role")
    return role.lower() if isinstance(role, str) else ""


def parse_collaboration_mode(value: str | None) -> CollaborationMode | None:
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized in ("plan", "default"):
        return normalized  # type: ignore[return-value]
    return None


def detect_collaboration_mode(body: dict[str, Any], override: str | None = None) -> CollaborationMode:
    """Collaboration mode from an explicit override, else from developer or system messages.

    Any developer or system item counts, not only the leading one, and the
    markers match case-insensitively: `# Collaboration Mode: Plan` as well as
    prose such as "you are now in Plan mode". A default marker anywhere wins
    over a plan marker.
    """
    forced = parse_collaboration_mode(override)
    if forced:
        return forced
    input_items = body.get("input")
    if not isinstance(input_items, list):
        return "unknown"

    saw_plan = False
    saw_default = False
    for item in input_items:
        if _role(item) not in ("developer", "system"):
            continue
        text = extract_message_text(item.get("content"))
        if not text:
            continue
        if any(pattern.search(text) for pattern in _PLAN_PATTERNS):
            saw_plan = True
        if any(pattern.search(text) for pattern in _DEFAULT_PATTERNS):
            saw_default = True

    if saw_plan and not saw_default:
        return "plan"
    if saw_default:
        return "default"
    return "unknown"


def is_trivial_prompt(text: str) -> bool:
    normalized = text.strip()
    if not normalized or len(normalized) > MAX_TRIVIAL_PROMPT_CHARS:
        return False
    if "\n" in normalized or "```" in normalized:
        return False
    if _LIST_PATTERN.search(normalized) or _URL_PATTERN.search(normalized):
        return False
    return not _TABLE_PATTERN.search(normalized)


def is_structurally_complex_prompt(text: str) -> bool:
    normalized = text.strip()
    if not normalized:
        return False
    if "```" in normalized:
        return True
    if len([line for line in re.split(r"\r?\n", normalized) if line]) >= 3:
        return True
    return bool(_LIST_PATTERN.search(normalized) or _TABLE_PATTERN.search(normalized))


def latest_user_text(input_items: Any) -> str | None:
    if not isinstance(input_items, list):
        return None
    for item in reversed(input_items):
        if _role(item) != "user":
            continue
        text = extract_message_text(item.get("content"))
        if text:
            return text
    return None


def is_complex_fast_session_request(body: dict[str, Any], max_items: int) -> bool:
    input_items = body.get("input") if isinstance(body.get("input"), list) else []
    lookback = max(12, max_items // 2)
    user_texts: list[str] = []
    for item in input_items[-lookback:]:
        if not isinstance(item, dict):
            continue
        if item.get("type") in ("function_call", "function_call_output"):
            return True
        if _role(item) != "user":
            continue
        text = extract_message_text(item.get("content"))
        if text:
            user_texts.append(text)

    if not user_texts:
        return False
    if is_trivial_prompt(user_texts[-1]):
        return False
    return any(is_structurally_complex_prompt(text) for text in user_texts[-3:])


def trim_input_for_fast_session(
    input_items: list[dict[str, Any]], max_items: int, *, prefer_latest_user_only: bool = False
) -> list[dict[str, Any]]:
    """Keep a short developer/system head plus the most recent items."""
    if prefer_latest_user_only:
        keep: set[int] = set()
        for index, item in enumerate(input_items):
            if _role(item) in ("developer", "system"):
                if len(extract_message_text(item.get("content"))) <= MAX_HEAD_INSTRUCTION_CHARS_TRIVIAL:
                    keep.add(index)
                break
        for index in range(len(input_items) - 1, -1, -1):
            if _role(input_items[index]) == "user":
                keep.add(index)
                break
        compacted = [item for index, item in enumerate(input_items) if index in keep]
        if compacted:
            return compacted

    safe_max = max(8, int(max_items))
    keep = set()
    excluded_head: set[int] = set()
    kept_head = 0
    for index, item in enumerate(input_items):
        if kept_head >= 2 or not isinstance(item, dict):
            break
        if _role(item) not in ("developer", "system"):
            break
        if len(extract_message_text(item.get("content"))) <= MAX_HEAD_INSTRUCTION_CHARS:
            keep.add(index)
            kept_head += 1
        else:
            excluded_head.add(index)

    for index in range(max(0, len(input_items) - safe_max), len(input_items)):
        if index not in excluded_head:
            keep.add(index)

    trimmed = [item for index, item in enumerate(input_items) if index in keep]
    if not trimmed:
        return input_items
    if len(input_items) <= max_items and not excluded_head:
        return input_items
    return trimmed[-safe_max:]


def compact_instructions_for_fast_session(instructions: str, trivial_turn: bool = False) -> str:
    normalized = instructions.strip()
    if not normalized:
        return instructions
    limit = 320 if trivial_turn else 900
    if len(normalized) <= limit:
        return instructions
    split_index = normalized.rfind("\n", 0, limit + 1)
    cutoff = split_index if split_index >= 180 else limit
    return f"{normalized[:cutoff].rstrip()}\n\n{FAST_SESSION_NOTE}"


def _provider_openai(body: dict[str, Any]) -> dict[str, Any]:
    provider = body.get("providerOptions")
    if isinstance(provider, dict) and isinstance(provider.get("openai"), dict):
        return provider["openai"]
    return {}


def _resolve_reasoning(model_name: str, model_config: dict[str, Any], body: dict[str, Any]) -> dict[str, str]:
    provider = _provider_openai(body)
    reasoning = body.get("reasoning") if isinstance(body.get("reasoning"), dict) else {}
    effort = reasoning.get("effort") or provider.get("reasoningEffort")
    summary = reasoning.get("summary") or provider.get("reasoningSummary")
    merged = dict(model_config)
    if effort:
        merged["reasoningEffort"] = effort
    if summary:
        merged["reasoningSummary"] = summary
    return get_reasoning_config(model_name, merged)


def _resolve_verbosity(model_config: dict[str, Any], body: dict[str, Any]) -> str:
    text = body.get("text") if isinstance(body.get("text"), dict) else {}
    return (
        text.get("verbosity")
        or _provider_openai(body).get("textVerbosity")
        or model_config.get("textVerbosity")
        or "medium"
    )


def _resolve_include(model_config: dict[str, Any], body: dict[str, Any]) -> list[str]:
    base = body.get("include")
    if base is None:
        base = _provider_openai(body).get("include")
    if base is None:
        base = model_config.get("include")
    if not isinstance(base, list):
        base = [ENCRYPTED_REASONING_INCLUDE]
    include = list(dict.fromkeys(value for value in base if value))
    if ENCRYPTED_REASONING_INCLUDE not in include:
        include.append(ENCRYPTED_REASONING_INCLUDE)
    return include


def transform_request_body(
    body: dict[str, Any],
    instructions: str,
    user_config: UserConfig | None = None,
    options: TransformOptions | None = None,
    *,
    host_prompt: str | None = None,
) -> dict[str, Any]:
    """Rewrite a host Responses payload into one the Codex backend accepts.

    The input is not mutated. Per-model config is looked up with the model name
    the host sent, so keys like `gpt-5-codex-low` apply before normalization.
    """
    options = options or TransformOptions()
    body = copy.deepcopy(body)

    original_model = body.get("model")
    normalized_model = normalize_model(original_model)
    lookup_model = original_model or normalized_model
    model_config = get_model_config(lookup_model, user_config)
    body["model"] = normalized_model

    fast = options.fast_session and (
        options.fast_session_strategy == "always"
        or not is_complex_fast_session_request(body, options.fast_session_max_input_items)
    )
    trivial_turn = is_trivial_prompt(latest_user_text(body.get("input")) or "")
    drop_tools = fast and trivial_turn

    body["store"] = False
    body["stream"] = True

    collaboration_mode = detect_collaboration_mode(body, options.collaboration_mode)
    if body.get("tools") and drop_tools:
        body.pop("tools", None)
    if body.get("tools"):
        tools = cleanup_tool_definitions(body["tools"])
        tools, removed = sanitize_plan_only_tools(tools, collaboration_mode)
        if removed:
            logger.warning(
                "transform_plan_tools_removed count=%d collaboration_mode=%s",
                removed,
                collaboration_mode,
            )
        body["tools"] = tools
    has_tools = bool(body.get("tools"))

    body["instructions"] = (
        compact_instructions_for_fast_session(instructions, trivial_turn) if fast else instructions
    )

    input_items = body.get("input")
    if isinstance(input_items, list):
        if fast:
            input_items = trim_input_for_fast_session(
                input_items,
                options.fast_session_max_input_items,
                prefer_latest_user_only=trivial_turn,
            )
        input_items = filter_input(input_items)
        if options.codex_mode:
            input_items = filter_host_system_prompts(input_items, host_prompt)
            if has_tools:
                input_items = [developer_message(render_bridge_prompt(body["tools"])), *input_items]
        elif has_tools:
            input_items = [developer_message(TOOL_REMAP_MESSAGE), *input_items]
        input_items = normalize_orphaned_tool_outputs(input_items)
        body["input"] = inject_missing_tool_outputs(input_items)

    reasoning = body.get("reasoning") if isinstance(body.get("reasoning"), dict) else {}
    body["reasoning"] = {**reasoning, **_resolve_reasoning(lookup_model, model_config, body)}
    text = body.get("text") if isinstance(body.get("text"), dict) else {}
    body["text"] = {**text, "verbosity": _resolve_verbosity(model_config, body)}

    if fast:
        fast_reasoning = get_reasoning_config(
            lookup_model, {"reasoningEffort": "none", "reasoningSummary": "auto"}
        )
        body["reasoning"] = {**body["reasoning"], **fast_reasoning}
        body["text"] = {**body["text"], "verbosity": "low"}

    body["include"] = _resolve_include(model_config, body)

    for field_name in UNSUPPORTED_FIELDS:
        body.pop(field_name, None)
    return body
