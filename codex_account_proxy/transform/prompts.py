from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from codex_account_proxy.clock import Clock
from codex_account_proxy.transform.capabilities import (
    analyze_runtime_tools,
    render_alias_section,
    render_manifest_section,
    render_strategy_section,
)
from codex_account_proxy.transform.models import get_model_family

logger = logging.getLogger("uvicorn.error")

INSTRUCTION_FILES: dict[str, str] = {
    "gpt-5-codex": "gpt_5_codex_prompt.md",
    "codex-max": "gpt-5.1-codex-max_prompt.md",
    "codex": "gpt_5_codex_prompt.md",
    "gpt-5.2": "gpt_5_2_prompt.md",
    "gpt-5.1": "gpt_5_1_prompt.md",
}
HOST_PROMPT_FILE = "host_prompt.md"

DEFAULT_INSTRUCTIONS = """You are Codex, a coding agent working in the user's terminal.

- Read the relevant code before changing it and keep edits focused on the request.
- Prefer the tools provided in this request; follow their schemas exactly.
- Keep answers concise. Reference files with workspace-relative paths.
- Do not run destructive commands unless the user explicitly asked for them."""

BRIDGE_PROMPT = """# Codex Running Behind a Host Agent

The host supplies its own tools. The base instructions may mention tools that are not
present here; map those intents onto the tools in this request.

## Tool Usage

- Call only tool names that appear in this request. Do not invent wrapper namespaces.
- When the base instructions say `apply_patch`, use the host's `patch` or `edit` tool unless
  `apply_patch` itself is listed.
- When the base instructions say `update_plan`, use `todowrite` unless `update_plan` is listed.
- If no parallel helper tool is listed, run tool calls sequentially.
- When a call fails validation, fix the arguments against the listed schema and retry.

## Safety

- Never run `git reset --hard` or `git checkout --` unless the user asked for exactly that.
- `request_user_input` is for Plan mode only."""

TOOL_REMAP_MESSAGE = """<user_instructions priority="0">
<environment_override priority="0">
You are running in a different environment. These instructions override earlier tool references.
</environment_override>

<tool_replacements priority="0">
- apply_patch is not available: use `patch` for diff-style edits and `edit` for exact replacements.
- update_plan is not available: use `todowrite` to update plans and `todoread` to read them.
</tool_replacements>

<tool_call_guardrails priority="0">
- Call only tool names listed in the active tool schema.
- Never call `request_user_input` unless collaboration mode is Plan mode.
</tool_call_guardrails>
</user_instructions>"""


def render_bridge_prompt(tools: Any) -> str:
    """Bridge text plus sections derived from the tools actually present."""
    manifest = analyze_runtime_tools(tools)
    sections = [BRIDGE_PROMPT]
    for section in (
        render_manifest_section(manifest),
        render_alias_section(manifest),
        render_strategy_section(manifest),
    ):
        if section:
            sections.append(section)
    return "\n\n".join(sections)


def developer_message(text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "role": "developer",
        "content": [{"type": "input_text", "text": text}],
    }


@dataclass(slots=True)
class _CachedText:
    content: str | None
    loaded_at: int


class InstructionsProvider:
    """Model-family instructions read from a local directory, cached with a TTL.

    Families with no file on disk fall back to DEFAULT_INSTRUCTIONS. The same
    directory may hold `host_prompt.md`, the host's stock system prompt, which
    improves host prompt detection.
    """

    def __init__(
        self,
        directory: str | Path | None = None,
        *,
        ttl_seconds: int = 900,
        clock: Clock | None = None,
    ) -> None:
        self.directory = Path(directory).expanduser() if directory else None
        self.ttl_ms = max(0, ttl_seconds) * 1000
        self._clock = clock or Clock()
        self._cache: dict[str, _CachedText] = {}

    def _read(self, filename: str) -> str | None:
        now = self._clock.now_ms()
        cached = self._cache.get(filename)
        if cached is not None and now - cached.loaded_at < self.ttl_ms:
            return cached.content
        content: str | None = None
        if self.directory is not None:
            path = self.directory / filename
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                content = None
            except OSError as exc:
                logger.warning("instructions_read_failed path=%s error=%s", path, exc)
                content = cached.content if cached else None
        self._cache[filename] = _CachedText(content=content, loaded_at=now)
        return content

    def get_instructions(self, normalized_model: str) -> str:
        family = get_model_family(normalized_model)
        content = self._read(INSTRUCTION_FILES[family])
        return content if content and content.strip() else DEFAULT_INSTRUCTIONS

    def get_host_prompt(self) -> str | None:
        content = self._read(HOST_PROMPT_FILE)
        return content if content and content.strip() else None
