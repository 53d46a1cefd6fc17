from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

MAX_MANIFEST_TOOLS = 32

_HASHLINE_NAME_PATTERN = re.compile(
    r"(hashline|line[_-]?hash|anchor[_-]?insert|hash[-_ ]?verified)", re.IGNORECASE
)
_HASHLINE_SCHEMA_PATTERN = re.compile(
    r"(hashline|line[_-]?hash|expected[_-]?hash|anchor|insert[_-]?mode)", re.IGNORECASE
)
_TASK_DELEGATION_NAMES = frozenset({"delegate_task", "delegatetask", "run_task", "task", "spawn_agent"})

EditStrategy = Literal["hashline-like", "edit", "patch", "apply_patch", "replace", "none"]


@dataclass(slots=True)
class RuntimeToolCapabilities:
    has_hashline_tool_name: bool = False
    has_hashline_signals: bool = False
    has_generic_edit: bool = False
    has_patch: bool = False
    has_apply_patch: bool = False
    has_replace: bool = False
    has_task_delegation: bool = False
    supports_background_delegation: bool = False
    has_update_plan: bool = False
    has_todo_write: bool = False

    @property
    def has_hashline_capabilities(self) -> bool:
        return self.has_hashline_tool_name or self.has_hashline_signals

    @property
    def primary_edit_strategy(self) -> EditStrategy:
        if self.has_hashline_capabilities:
            return "hashline-like"
        if self.has_generic_edit:
            return "edit"
        if self.has_patch:
            return "patch"
        if self.has_apply_patch:
            return "apply_patch"
        if self.has_replace:
            return "replace"
        return "none"


@dataclass(slots=True)
class RuntimeToolManifest:
    names: list[str] = field(default_factory=list)
    required_parameters: dict[str, list[str]] = field(default_factory=dict)
    capabilities: RuntimeToolCapabilities = field(default_factory=RuntimeToolCapabilities)


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _required_parameter_names(parameters: Any) -> list[str]:
    if not isinstance(parameters, dict):
        return []
    required = parameters.get("required")
    if isinstance(required, list):
        names = [value.strip() for value in required if isinstance(value, str) and value.strip()]
        if names:
            return _dedupe(names)
    properties = parameters.get("properties")
    if parameters.get("type") != "object" or not isinstance(properties, dict):
        return []
    return _dedupe(
        [
            name.strip()
            for name, schema in properties.items()
            if isinstance(schema, dict) and schema.get("required") is True and name.strip()
        ]
    )


def _has_hashline_schema_signal(parameters: Any) -> bool:
    if not isinstance(parameters, dict):
        return False
    try:
        return bool(_HASHLINE_SCHEMA_PATTERN.search(json.dumps(parameters)))
    except (TypeError, ValueError):
        return False


def _merge_tool(
    manifest: RuntimeToolManifest, name: Any, description: Any, parameters: Any
) -> None:
    if not isinstance(name, str) or not name.strip():
        return
    name = name.strip()
    manifest.names.append(name)
    caps = manifest.capabilities
    lowered = name.lower()
    required = _required_parameter_names(parameters)

    if _HASHLINE_NAME_PATTERN.search(name):
        caps.has_hashline_tool_name = True
    if isinstance(description, str) and _HASHLINE_NAME_PATTERN.search(description):
        caps.has_hashline_signals = True
    if _has_hashline_schema_signal(parameters):
        caps.has_hashline_signals = True

    if lowered == "edit":
        caps.has_generic_edit = True
    elif lowered == "patch":
        caps.has_patch = True
    elif lowered == "replace":
        caps.has_replace = True
    elif lowered in ("apply_patch", "applypatch"):
        caps.has_apply_patch = True
    elif lowered in ("update_plan", "updateplan"):
        caps.has_update_plan = True
    elif lowered == "todowrite":
        caps.has_todo_write = True

    if lowered in _TASK_DELEGATION_NAMES:
        caps.has_task_delegation = True
        if any(param in ("run_in_background", "runInBackground") for param in required):
            caps.supports_background_delegation = True

    if required:
        existing = manifest.required_parameters.get(name, [])
        manifest.required_parameters[name] = _dedupe(existing + required)


def analyze_runtime_tools(tools: Any) -> RuntimeToolManifest:
    manifest = RuntimeToolManifest()
    if not isinstance(tools, list):
        return manifest
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        direct_name = tool.get("name")
        _merge_tool(manifest, direct_name, tool.get("description"), tool.get("parameters"))
        if isinstance(direct_name, str) and direct_name.strip() and "description" in tool:
            continue
        function = tool.get("function")
        if isinstance(function, dict):
            _merge_tool(
                manifest,
                function.get("name"),
                function.get("description"),
                function.get("parameters"),
            )
    manifest.names = _dedupe(manifest.names)
    return manifest


def render_manifest_section(manifest: RuntimeToolManifest) -> str | None:
    if not manifest.names:
        return None
    listed = manifest.names[:MAX_MANIFEST_TOOLS]
    lines = [
        "## Runtime Tool Manifest",
        "",
        "These are the exact tool names available in this request. Call them verbatim;",
        "do not translate names or invent wrapper namespaces.",
        "",
    ]
    for name in listed:
        required = manifest.required_parameters.get(name)
        suffix = f" (required: {', '.join(required)})" if required else ""
        lines.append(f"- `{name}`{suffix}")
    hidden = len(manifest.names) - len(listed)
    if hidden > 0:
        lines.append(f"- ... {hidden} more tool(s) not listed")
    return "\n".join(lines)


def render_alias_section(manifest: RuntimeToolManifest) -> str | None:
    names = {name.lower() for name in manifest.names}
    caps = manifest.capabilities
    lines: list[str] = []
    if caps.has_apply_patch and not ("patch" in names or "edit" in names):
        lines.append("- `apply_patch` is available here; use it directly for file edits.")
    if caps.has_update_plan and "todowrite" not in names:
        lines.append("- `update_plan` is available here; use it for plan updates.")
    if caps.has_task_delegation and caps.supports_background_delegation:
        lines.append(
            "- Task delegation requires `run_in_background`; pass false unless running parallel exploration."
        )
    if not lines:
        return None
    return "\n".join(["## Alias Compatibility", "", *lines])


def render_strategy_section(manifest: RuntimeToolManifest) -> str | None:
    if manifest.capabilities.primary_edit_strategy != "hashline-like":
        return None
    return "\n".join(
        [
            "## Edit Strategy",
            "",
            "A hash-anchored line editing tool is available. Read the target lines first,",
            "then pass the reported line hashes back unchanged so the edit is verified.",
        ]
    )
