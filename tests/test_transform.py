from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest

from codex_account_proxy.clock import FakeClock
from codex_account_proxy.config import ConfigError, UserConfig, load_user_config
from codex_account_proxy.transform.capabilities import analyze_runtime_tools, render_alias_section
from codex_account_proxy.transform.input_utils import (
    CANCELLED_TOOL_OUTPUT,
    filter_host_system_prompts,
    filter_input,
    inject_missing_tool_outputs,
    normalize_orphaned_tool_outputs,
)
from codex_account_proxy.transform.models import (
    get_model_config,
    get_model_family,
    get_reasoning_config,
    normalize_model,
    sanitize_reasoning_summary,
)
from codex_account_proxy.transform.prompts import (
    BRIDGE_PROMPT,
    DEFAULT_INSTRUCTIONS,
    TOOL_REMAP_MESSAGE,
    InstructionsProvider,
    render_bridge_prompt,
)
from codex_account_proxy.transform.tool_utils import (
    PLACEHOLDER_PROPERTY,
    RUN_IN_BACKGROUND_HINT,
    cleanup_tool_definitions,
    sanitize_plan_only_tools,
)
from codex_account_proxy.transform.transformer import (
    FAST_SESSION_NOTE,
    TransformOptions,
    detect_collaboration_mode,
    is_trivial_prompt,
    transform_request_body,
)

HOST_PROMPT = "You are opencode, an agent that helps with software tasks."


def _function_tool(name: str, parameters: dict[str, Any] | None = None) -> dict[str, Any]:
    function: dict[str, Any] = {"name": name}
    if parameters is not None:
        function["parameters"] = parameters
    return {"type": "function", "function": function}


def _message(role: str, text: str, **extra: Any) -> dict[str, Any]:
    return {"type": "message", "role": role, "content": text, **extra}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, "gpt-5.1"),
        ("openai/gpt-5.2-codex-high", "gpt-5.2-codex"),
        ("GPT 5 Codex Low (ChatGPT)", "gpt-5-codex"),
        ("gpt-5.1-codex", "gpt-5-codex"),
        ("codex-mini-latest", "gpt-5.1-codex-mini"),
        ("gpt-5.3-codex-spark-xhigh", "gpt-5.3-codex-spark"),
        ("my-codex-max-build", "gpt-5.1-codex-max"),
        ("gpt-5.2-turbo", "gpt-5.2"),
        ("totally-unknown", "gpt-5.1"),
    ],
)
def test_normalize_model(raw: str | None, expected: str) -> None:
    assert normalize_model(raw) == expected


def test_model_families() -> None:
    assert get_model_family("gpt-5.1-codex-max") == "codex-max"
    assert get_model_family("gpt-5.2-codex") == "gpt-5-codex"
    assert get_model_family("gpt-5.3-codex-spark") == "gpt-5-codex"
    assert get_model_family("gpt-5.1-codex-mini") == "gpt-5-codex"
    assert get_model_family("codex-mini") == "codex"
    assert get_model_family("gpt-5.2") == "gpt-5.2"
    assert get_model_family("gpt-5.1") == "gpt-5.1"


def test_reasoning_defaults_and_clamps() -> None:
    assert get_reasoning_config("gpt-5.2-codex") == {"effort": "xhigh", "summary": "auto"}
    assert get_reasoning_config("gpt-5-codex")["effort"] == "high"
    assert get_reasoning_config("gpt-5.1")["effort"] == "medium"
    assert get_reasoning_config("gpt-5-codex", {"reasoningEffort": "xhigh"})["effort"] == "high"
    assert get_reasoning_config("gpt-5-codex", {"reasoningEffort": "none"})["effort"] == "low"
    assert get_reasoning_config("gpt-5-codex", {"reasoningEffort": "minimal"})["effort"] == "low"
    assert get_reasoning_config("gpt-5.1", {"reasoningEffort": "none"})["effort"] == "none"
    assert get_reasoning_config("gpt-5.1-codex-mini", {"reasoningEffort": "low"})["effort"] == "medium"
    assert get_reasoning_config("gpt-5.1-codex-mini", {"reasoningEffort": "xhigh"})["effort"] == "high"
    assert sanitize_reasoning_summary("DETAILED") == "detailed"
    assert sanitize_reasoning_summary("verbose") == "auto"


def test_model_config_layers_global_model_and_variant() -> None:
    config = UserConfig.model_validate(
        {
            "global": {"reasoning_effort": "low", "textVerbosity": "high"},
            "models": {
                "gpt-5-codex": {
                    "options": {"reasoningSummary": "concise"},
                    "variants": {"high": {"reasoningEffort": "high", "disabled": True}},
                },
                "gpt-5-codex-low": {"options": {"reasoningEffort": "minimal"}},
            },
        }
    )

    assert get_model_config("gpt-5-codex-high", config) == {
        "reasoningEffort": "high",
        "textVerbosity": "high",
        "reasoningSummary": "concise",
    }
    assert get_model_config("openai/gpt-5-codex-low", config) == {
        "reasoningEffort": "minimal",
        "textVerbosity": "high",
    }
    assert get_model_config("gpt-5.2", config) == {"reasoningEffort": "low", "textVerbosity": "high"}


def test_load_user_config(tmp_path: Path) -> None:
    path = tmp_path / "models.yaml"
    path.write_text(
        "global:\n  reasoning_summary: detailed\nmodels:\n  gpt-5.1:\n    options:\n      textVerbosity: low\n",
        encoding="utf-8",
    )
    broken = tmp_path / "broken.yaml"
    broken.write_text("global: [unclosed\n", encoding="utf-8")
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")

    config = load_user_config(path)

    assert config.global_options == {"reasoningSummary": "detailed"}
    assert config.models["gpt-5.1"].options == {"textVerbosity": "low"}
    assert load_user_config(None) == UserConfig()
    assert load_user_config(tmp_path / "missing.yaml") == UserConfig()
    with pytest.raises(ConfigError):
        load_user_config(broken)
    with pytest.raises(ConfigError):
        load_user_config(listing)


def test_cleanup_tool_definitions_rewrites_schema_without_mutating_input() -> None:
    tools = [
        _function_tool(
            "pick",
            {
                "type": "object",
                "title": "Pick",
                "additionalProperties": False,
                "properties": {
                    "mode": {"anyOf": [{"const": "a"}, {"const": "b"}]},
                    "maybe": {"type": ["string", "null"], "description": "Maybe"},
                    "empty": {"type": "object"},
                },
                "required": ["mode", "ghost"],
            },
        ),
        {"type": "web_search"},
    ]
    original = copy.deepcopy(tools)

    cleaned = cleanup_tool_definitions(tools)
    parameters = cleaned[0]["function"]["parameters"]

    assert tools == original
    assert cleaned[1] == {"type": "web_search"}
    assert "title" not in parameters
    assert "additionalProperties" not in parameters
    assert parameters["required"] == ["mode"]
    assert parameters["properties"]["mode"] == {"enum": ["a", "b"], "type": "string"}
    assert parameters["properties"]["maybe"] == {"type": "string", "description": "Maybe (nullable)"}
    assert parameters["properties"]["empty"]["properties"] == {"_placeholder": PLACEHOLDER_PROPERTY}


def test_task_tool_requires_run_in_background() -> None:
    tools = [
        _function_tool(
            "task",
            {
                "type": "object",
                "properties": {"run_in_background": {"type": "boolean", "description": "Run async"}},
                "required": ["prompt"],
            },
        )
    ]

    parameters = cleanup_tool_definitions(tools)[0]["function"]["parameters"]
    flag = parameters["properties"]["run_in_background"]

    assert parameters["required"] == ["run_in_background"]
    assert flag["default"] is False
    assert flag["description"] == f"Run async {RUN_IN_BACKGROUND_HINT}"


def test_plan_only_tools_are_removed_outside_plan_mode() -> None:
    tools = [_function_tool("request_user_input"), _function_tool("bash")]

    kept, removed = sanitize_plan_only_tools(tools, "default")
    plan_kept, plan_removed = sanitize_plan_only_tools(tools, "plan")

    assert [tool["function"]["name"] for tool in kept] == ["bash"]
    assert removed == 1
    assert plan_kept == tools and plan_removed == 0


def test_collaboration_mode_detection() -> None:
    plan = {"input": [_message("developer", "You are now in Plan mode.")]}
    both = {"input": [_message("system", "Collaboration Mode: PLAN"), _message("developer", "in default mode")]}
    user_only = {"input": [_message("user", "Collaboration mode: plan")]}
    header = {
        "input": [
            _message("developer", "# Collaboration Mode: Plan\n\nAsk before editing."),
            _message("user", "hi"),
        ]
    }

    assert detect_collaboration_mode(plan) == "plan"
    assert detect_collaboration_mode(header) == "plan"
    assert detect_collaboration_mode(both) == "default"
    assert detect_collaboration_mode(user_only) == "unknown"
    assert detect_collaboration_mode(user_only, "Plan") == "plan"


def test_filter_input_drops_references_and_ids() -> None:
    items = [
        {"type": "item_reference", "id": "ref_1"},
        _message("user", "hello", id="msg_1"),
        "not-an-item",
    ]

    assert filter_input(items) == [_message("user", "hello")]  # type: ignore[arg-type]


def test_host_system_prompt_is_dropped_but_environment_kept() -> None:
    items = [
        _message(
            "developer",
            f"{HOST_PROMPT}\nBe nice.\nHere is some useful information about the environment you are running in:\n<env>cwd</env>",
        ),
        _message("system", HOST_PROMPT),
        _message("user", HOST_PROMPT),
        _message("developer", "Project rules: use tabs."),
    ]

    filtered = filter_host_system_prompts(items)

    assert filtered[0]["content"].startswith("Here is some useful information")
    assert [item["role"] for item in filtered] == ["developer", "user", "developer"]
    assert filtered[2]["content"] == "Project rules: use tabs."


def test_host_prompt_detection_uses_cached_prompt() -> None:
    cached = "Custom host prompt that has no known signature."
    items = [{"type": "message", "role": "system", "content": [{"type": "input_text", "text": cached}]}]

    assert filter_host_system_prompts(items, cached) == []
    assert filter_host_system_prompts(items) == items


def test_orphaned_outputs_become_assistant_text() -> None:
    items = [
        {"type": "function_call", "call_id": "c1", "name": "bash", "arguments": "{}"},
        {"type": "function_call_output", "call_id": "c1", "output": "ok"},
        {"type": "function_call_output", "call_id": "c9", "output": {"lines": 2}},
        {"type": "custom_tool_call_output", "call_id": "c1", "output": "x"},
    ]

    normalized = normalize_orphaned_tool_outputs(items)

    assert normalized[:2] == items[:2]
    assert normalized[2] == {
        "type": "message",
        "role": "assistant",
        "content": '[Previous tool result; call_id=c9]: {"lines": 2}',
    }
    assert normalized[3]["type"] == "message"


def test_missing_tool_outputs_are_injected_after_their_call() -> None:
    items = [
        {"type": "function_call", "call_id": "c1", "name": "bash"},
        {"type": "local_shell_call", "call_id": "c2"},
        {"type": "function_call_output", "call_id": "c2", "output": "answered elsewhere"},
        _message("user", "next"),
    ]

    injected = inject_missing_tool_outputs(items)

    assert injected[1] == {"type": "function_call_output", "call_id": "c1", "output": CANCELLED_TOOL_OUTPUT}
    assert len(injected) == 5


def test_runtime_tool_manifest_and_bridge_prompt() -> None:
    tools = [
        _function_tool("apply_patch", {"type": "object", "properties": {"input": {}}, "required": ["input"]}),
        _function_tool("update_plan"),
        {"name": "hashline_edit", "description": "Edit by line hash"},
    ]

    manifest = analyze_runtime_tools(tools)
    alias = render_alias_section(manifest)
    bridge = render_bridge_prompt(tools)

    assert manifest.names == ["apply_patch", "update_plan", "hashline_edit"]
    assert manifest.required_parameters == {"apply_patch": ["input"]}
    assert manifest.capabilities.primary_edit_strategy == "hashline-like"
    assert alias is not None and "`apply_patch` is available" in alias and "`update_plan`" in alias
    assert bridge.startswith(BRIDGE_PROMPT)
    assert "- `apply_patch` (required: input)" in bridge
    assert "## Edit Strategy" in bridge


def test_instructions_provider_reads_family_files_with_ttl(tmp_path: Path) -> None:
    clock = FakeClock()
    prompt_file = tmp_path / "gpt_5_codex_prompt.md"
    prompt_file.write_text("CODEX PROMPT", encoding="utf-8")
    (tmp_path / "host_prompt.md").write_text(HOST_PROMPT, encoding="utf-8")
    provider = InstructionsProvider(tmp_path, ttl_seconds=60, clock=clock)

    assert provider.get_instructions("gpt-5.2-codex") == "CODEX PROMPT"
    assert provider.get_instructions("gpt-5.1") == DEFAULT_INSTRUCTIONS
    assert provider.get_host_prompt() == HOST_PROMPT

    prompt_file.write_text("UPDATED", encoding="utf-8")
    assert provider.get_instructions("gpt-5-codex") == "CODEX PROMPT"
    clock.advance(60_000)
    assert provider.get_instructions("gpt-5-codex") == "UPDATED"
    assert InstructionsProvider(None).get_instructions("gpt-5.2") == DEFAULT_INSTRUCTIONS


def test_transform_request_body_codex_mode() -> None:
    body = {
        "model": "openai/gpt-5.2-codex-high",
        "store": True,
        "stream": False,
        "max_output_tokens": 100,
        "providerOptions": {"openai": {}},
        "input": [
            {"type": "item_reference", "id": "ref_1"},
            _message("developer", HOST_PROMPT),
            {"type": "message", "role": "user", "id": "msg_1", "content": [{"type": "input_text", "text": "fix it"}]},
            {"type": "function_call", "call_id": "c1", "name": "bash", "arguments": "{}"},
        ],
        "tools": [_function_tool("bash", {"type": "object", "properties": {"cmd": {"type": "string"}}})],
    }
    original = copy.deepcopy(body)

    result = transform_request_body(body, "BASE INSTRUCTIONS")

    assert body == original
    assert result["model"] == "gpt-5.2-codex"
    assert result["store"] is False
    assert result["stream"] is True
    assert result["instructions"] == "BASE INSTRUCTIONS"
    assert "max_output_tokens" not in result
    assert "providerOptions" not in result
    assert result["reasoning"] == {"effort": "xhigh", "summary": "auto"}
    assert result["text"] == {"verbosity": "medium"}
    assert result["include"] == ["reasoning.encrypted_content"]
    types = [(item["type"], item.get("role")) for item in result["input"]]
    assert types == [
        ("message", "developer"),
        ("message", "user"),
        ("function_call", None),
        ("function_call_output", None),
    ]
    assert result["input"][0]["content"][0]["text"].startswith(BRIDGE_PROMPT)
    assert "id" not in result["input"][1]
    assert result["input"][3]["output"] == CANCELLED_TOOL_OUTPUT


def test_transform_without_codex_mode_uses_tool_remap_message() -> None:
    body = {
        "model": "gpt-5.1",
        "input": [_message("developer", HOST_PROMPT), _message("user", "hi there")],
        "tools": [_function_tool("bash")],
    }

    result = transform_request_body(body, "BASE", options=TransformOptions(codex_mode=False))

    assert result["input"][0]["content"][0]["text"] == TOOL_REMAP_MESSAGE
    assert result["input"][1]["content"] == HOST_PROMPT


def test_transform_applies_user_config_and_request_overrides() -> None:
    config = UserConfig.model_validate(
        {"models": {"gpt-5.1": {"options": {"textVerbosity": "high", "include": ["file_search_call.results"]}}}}
    )
    body = {
        "model": "gpt-5.1",
        "input": [_message("user", "hello")],
        "reasoning": {"summary": "detailed"},
    }

    result = transform_request_body(body, "BASE", config)

    assert result["text"]["verbosity"] == "high"
    assert result["include"] == ["file_search_call.results", "reasoning.encrypted_content"]
    assert result["reasoning"] == {"summary": "detailed", "effort": "medium"}


def test_transform_strips_plan_tools_in_default_mode() -> None:
    body = {
        "model": "gpt-5-codex",
        "input": [_message("developer", "Collaboration Mode: Default"), _message("user", "go")],
        "tools": [_function_tool("request_user_input"), _function_tool("bash")],
    }

    default_result = transform_request_body(body, "BASE")
    plan_result = transform_request_body(body, "BASE", options=TransformOptions(collaboration_mode="plan"))

    assert [tool["function"]["name"] for tool in default_result["tools"]] == ["bash"]
    assert len(plan_result["tools"]) == 2


def test_fast_session_trivial_turn_compacts_everything() -> None:
    body = {
        "model": "gpt-5.1",
        "input": [
            _message("system", "Be brief."),
            _message("user", "earlier question"),
            _message("assistant", "earlier answer"),
            _message("user", "hi"),
        ],
        "tools": [_function_tool("bash")],
    }

    result = transform_request_body(
        body, "x" * 1000, options=TransformOptions(fast_session=True)
    )

    assert is_trivial_prompt("hi")
    assert "tools" not in result
    assert [item["content"] for item in result["input"]] == ["Be brief.", "hi"]
    assert result["instructions"] == "x" * 320 + "\n\n" + FAST_SESSION_NOTE
    assert result["reasoning"]["effort"] == "none"
    assert result["text"]["verbosity"] == "low"


def test_fast_session_hybrid_skips_complex_requests() -> None:
    body = {
        "model": "gpt-5.1",
        "input": [_message("user", "Please do these:\n- one\n- two\n- three")],
    }

    result = transform_request_body(body, "BASE", options=TransformOptions(fast_session=True))

    assert result["instructions"] == "BASE"
    assert result["text"]["verbosity"] == "medium"
