from __future__ import annotations

import json
from typing import Any

InputItem = dict[str, Any]

HOST_PROMPT_SIGNATURES: tuple[str, ...] = (
    "you are a coding agent running in the opencode",
    "you are opencode, an agent",
    "you are opencode, an interactive cli agent",
    "you are opencode, an interactive cli tool",
    "you are opencode, the best coding agent on the planet",
)

# Project context the host appends after its own prompt; kept when the prompt is dropped.
HOST_CONTEXT_MARKERS: tuple[str, ...] = (
    "here is some useful information about the environment you are running in:",
    "<env>",
    "instructions from:",
    "<instructions>",
)

CANCELLED_TOOL_OUTPUT = "Operation cancelled by user"
MAX_ORPHAN_OUTPUT_CHARS = 16_000
PROMPT_PREFIX_CHARS = 200

_CALL_TO_OUTPUT_TYPE = {
    "function_call": "function_call_output",
    "local_shell_call": "local_shell_call_output",
    "custom_tool_call": "custom_tool_call_output",
}
_OUTPUT_TYPES = frozenset(_CALL_TO_OUTPUT_TYPE.values())


def get_content_text(item: InputItem) -> str:
    content = item.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and part.get("type") == "input_text" and part.get("text")
        )
    return ""


def extract_message_text(content: Any) -> str:
    """Loose text extraction used for mode and triviality heuristics."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: list[str] = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "\n".join(text for text in texts if text)


def _replace_content_text(item: InputItem, text: str) -> InputItem:
    if isinstance(item.get("content"), list):
        return {**item, "content": [{"type": "input_text", "text": text}]}
    return {**item, "content": text}


def _extract_host_context(text: str) -> str | None:
    lowered = text.lower()
    positions = [lowered.find(marker) for marker in HOST_CONTEXT_MARKERS]
    found = [position for position in positions if position >= 0]
    if not found:
        return None
    return text[min(found):].lstrip()


def is_host_system_prompt(item: InputItem, cached_prompt: str | None = None) -> bool:
    if item.get("role") not in ("developer", "system"):
        return False
    text = get_content_text(item)
    if not text:
        return False

    if cached_prompt:
        content = text.strip()
        cached = cached_prompt.strip()
        if content == cached or content.startswith(cached):
            return True
        if content[:PROMPT_PREFIX_CHARS] == cached[:PROMPT_PREFIX_CHARS]:
            return True

    normalized = text.lstrip().lower()
    return any(normalized.startswith(signature) for signature in HOST_PROMPT_SIGNATURES)


def filter_host_system_prompts(
    input_items: list[InputItem], cached_prompt: str | None = None
) -> list[InputItem]:
    """Drop the host's own system prompt but keep any environment block appended to it."""
    result: list[InputItem] = []
    for item in input_items:
        if item.get("role") == "user" or not is_host_system_prompt(item, cached_prompt):
            result.append(item)
            continue
        context = _extract_host_context(get_content_text(item))
        if context:
            result.append(_replace_content_text(item, context))
    return result


def filter_input(input_items: list[InputItem]) -> list[InputItem]:
    """Drop `item_reference` items and strip ids; upstream runs with `store=false`."""
    filtered: list[InputItem] = []
    for item in input_items:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "item_reference":
            continue
        if "id" in item:
            item = {key: value for key, value in item.items() if key != "id"}
        filtered.append(item)
    return filtered


def _call_id(item: InputItem) -> str | None:
    raw = item.get("call_id")
    if not isinstance(raw, str):
        return None
    return raw.strip() or None


def _tool_name(item: InputItem) -> str:
    raw = item.get("name")
    if not isinstance(raw, str):
        return "tool"
    return raw.strip() or "tool"


def _stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    if output is None:
        return ""
    try:
        return json.dumps(output, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(output)


def _orphan_to_message(item: InputItem, call_id: str | None) -> InputItem:
    text = _stringify_output(item.get("output"))
    if len(text) > MAX_ORPHAN_OUTPUT_CHARS:
        text = text[:MAX_ORPHAN_OUTPUT_CHARS] + "\n...[truncated]"
    return {
        "type": "message",
        "role": "assistant",
        "content": f"[Previous {_tool_name(item)} result; call_id={call_id or 'unknown'}]: {text}",
    }


def normalize_orphaned_tool_outputs(input_items: list[InputItem]) -> list[InputItem]:
    """Rewrite tool outputs with no matching call into assistant text.

    Upstream rejects an output whose call is absent, which happens once an
    `item_reference` to that call has been filtered out.
    """
    function_ids: set[str] = set()
    shell_ids: set[str] = set()
    custom_ids: set[str] = set()
    for item in input_items:
        call_id = _call_id(item)
        if not call_id:
            continue
        kind = item.get("type")
        if kind == "function_call":
            function_ids.add(call_id)
        elif kind == "local_shell_call":
            shell_ids.add(call_id)
        elif kind == "custom_tool_call":
            custom_ids.add(call_id)

    result: list[InputItem] = []
    for item in input_items:
        kind = item.get("type")
        call_id = _call_id(item)
        if kind == "function_call_output":
            matched = bool(call_id) and (call_id in function_ids or call_id in shell_ids)
        elif kind == "custom_tool_call_output":
            matched = bool(call_id) and call_id in custom_ids
        elif kind == "local_shell_call_output":
            matched = bool(call_id) and call_id in shell_ids
        else:
            result.append(item)
            continue
        result.append(item if matched else _orphan_to_message(item, call_id))
    return result


def inject_missing_tool_outputs(input_items: list[InputItem]) -> list[InputItem]:
    """Follow every tool call lacking an output with a synthetic cancellation output."""
    answered = {
        call_id
        for item in input_items
        if item.get("type") in _OUTPUT_TYPES and (call_id := _call_id(item))
    }
    result: list[InputItem] = []
    for item in input_items:
        result.append(item)
        output_type = _CALL_TO_OUTPUT_TYPE.get(item.get("type", ""))
        if output_type is None:
            continue
        call_id = _call_id(item)
        if call_id and call_id not in answered:
            result.append({"type": output_type, "call_id": call_id, "output": CANCELLED_TOOL_OUTPUT})
    return result
