from __future__ import annotations

import copy
from typing import Any

TASK_TOOL_NAMES = frozenset({"task", "functions.task"})
PLAN_MODE_ONLY_TOOLS = frozenset({"request_user_input"})

PLACEHOLDER_PROPERTY = {
    "type": "boolean",
    "description": "This property is a placeholder and should be ignored.",
}
RUN_IN_BACKGROUND_HINT = "REQUIRED: pass false for normal delegation; true only for parallel exploration."

_UNSUPPORTED_KEYWORDS = ("additionalProperties", "const", "title", "$schema")


def cleanup_tool_definitions(tools: Any) -> Any:
    """Return a cleaned deep copy of `tools` that strict upstream validation accepts."""
    if not isinstance(tools, list):
        return tools
    cleaned: list[Any] = []
    for tool in tools:
        if not isinstance(tool, dict) or tool.get("type") != "function" or not tool.get("function"):
            cleaned.append(tool)
            continue
        cleaned_tool = copy.deepcopy(tool)
        parameters = cleaned_tool["function"].get("parameters")
        if isinstance(parameters, dict):
            cleanup_schema(parameters)
        _ensure_task_background_default(cleaned_tool)
        cleaned.append(cleaned_tool)
    return cleaned


def _infer_enum_type(value: Any) -> str | None:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (int, float)):
        return "number"
    return None


def cleanup_schema(schema: dict[str, Any]) -> None:
    any_of = schema.get("anyOf")
    if isinstance(any_of, list) and any_of and all(
        isinstance(option, dict) and "const" in option for option in any_of
    ):
        values = [option["const"] for option in any_of]
        schema["enum"] = values
        del schema["anyOf"]
        if not schema.get("type"):
            inferred = _infer_enum_type(values[0])
            if inferred:
                schema["type"] = inferred

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        non_null = [value for value in schema_type if value != "null"]
        if non_null:
            schema["type"] = non_null[0]
            if "null" in schema_type:
                description = schema.get("description") or ""
                if "nullable" not in description.lower():
                    schema["description"] = f"{description} (nullable)" if description else "(nullable)"

    properties = schema.get("properties")
    required = schema.get("required")
    if isinstance(required, list) and isinstance(properties, dict):
        valid = [key for key in required if key in properties]
        if not valid:
            del schema["required"]
        elif len(valid) != len(required):
            schema["required"] = valid

    if schema.get("type") == "object" and not schema.get("properties"):
        schema["properties"] = {"_placeholder": dict(PLACEHOLDER_PROPERTY)}

    for keyword in _UNSUPPORTED_KEYWORDS:
        schema.pop(keyword, None)

    properties = schema.get("properties")
    if isinstance(properties, dict):
        for value in properties.values():
            if isinstance(value, dict):
                cleanup_schema(value)

    items = schema.get("items")
    if isinstance(items, dict):
        cleanup_schema(items)


def _ensure_task_background_default(tool: dict[str, Any]) -> None:
    function = tool.get("function") or {}
    name = function.get("name")
    if not isinstance(name, str) or name.strip().lower() not in TASK_TOOL_NAMES:
        return
    parameters = function.get("parameters")
    if not isinstance(parameters, dict) or parameters.get("type") != "object":
        return
    properties = parameters.get("properties")
    if not isinstance(properties, dict):
        return
    run_in_background = properties.get("run_in_background")
    if not isinstance(run_in_background, dict):
        return

    run_in_background["type"] = "boolean"
    run_in_background.setdefault("default", False)
    description = run_in_background.get("description")
    description = description if isinstance(description, str) else ""
    if "required" not in description.lower():
        run_in_background["description"] = (
            f"{description} {RUN_IN_BACKGROUND_HINT}" if description else RUN_IN_BACKGROUND_HINT
        )

    required = list(parameters.get("required") or [])
    if "run_in_background" not in required:
        required.append("run_in_background")
    parameters["required"] = required


def tool_name(tool: Any) -> str | None:
    if not isinstance(tool, dict):
        return None
    direct = tool.get("name")
    if isinstance(direct, str) and direct.strip():
        return direct
    function = tool.get("function")
    if isinstance(function, dict):
        nested = function.get("name")
        if isinstance(nested, str) and nested.strip():
            return nested
    return None


def sanitize_plan_only_tools(tools: Any, collaboration_mode: str) -> tuple[Any, int]:
    """Drop Plan-mode-only tools outside Plan mode. Returns the tools and how many went."""
    if not isinstance(tools, list) or collaboration_mode == "plan":
        return tools, 0
    kept = [tool for tool in tools if tool_name(tool) not in PLAN_MODE_ONLY_TOOLS]
    return kept, len(tools) - len(kept)
