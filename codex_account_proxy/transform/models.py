from __future__ import annotations

import re
from typing import Any, Literal

from codex_account_proxy.config import UserConfig

ReasoningEffort = Literal["none", "minimal", "low", "medium", "high", "xhigh"]
ReasoningSummary = Literal["auto", "concise", "detailed"]

DEFAULT_MODEL = "gpt-5.1"
EFFORT_SUFFIXES: tuple[str, ...] = ("none", "minimal", "low", "medium", "high", "xhigh")
_EFFORT_SUFFIX_PATTERN = re.compile(r"-(none|minimal|low|medium|high|xhigh)$", re.IGNORECASE)

# Upstream ids the Codex backend accepts as-is. Each also accepts the
# `-<effort>` suffixes in EFFORT_SUFFIXES.
KNOWN_MODELS: tuple[str, ...] = (
    "gpt-5.3-codex-spark",
    "gpt-5.3-codex",
    "gpt-5.2-codex",
    "gpt-5.1-codex-max",
    "gpt-5.1-codex-mini",
    "gpt-5-codex",
    "gpt-5.2",
    "gpt-5.1",
)

LEGACY_ALIASES: dict[str, str] = {
    "gpt-5.1-codex": "gpt-5-codex",
    "codex-mini-latest": "gpt-5.1-codex-mini",
    "gpt-5-codex-mini": "gpt-5.1-codex-mini",
    "gpt-5.1-chat-latest": "gpt-5.1",
    "gpt-5": "gpt-5.1",
    "gpt-5-mini": "gpt-5.1",
    "gpt-5-nano": "gpt-5.1",
}


def _build_model_map() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for model in KNOWN_MODELS:
        mapping[model] = model
        for effort in EFFORT_SUFFIXES:
            mapping[f"{model}-{effort}"] = model
    for alias, target in LEGACY_ALIASES.items():
        mapping.setdefault(alias, target)
        for effort in EFFORT_SUFFIXES:
            mapping.setdefault(f"{alias}-{effort}", target)
    return mapping


MODEL_MAP: dict[str, str] = _build_model_map()

# Substring routing for names missing from MODEL_MAP, most specific first.
_PATTERN_ROUTES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("gpt-5.3-codex-spark", "gpt 5.3 codex spark"), "gpt-5-codex"),
    (("gpt-5.3-codex", "gpt 5.3 codex"), "gpt-5-codex"),
    (("gpt-5.2-codex", "gpt 5.2 codex"), "gpt-5-codex"),
    (("gpt-5.2", "gpt 5.2"), "gpt-5.2"),
    (("codex-max", "codex max"), "gpt-5.1-codex-max"),
    (("gpt-5.1-codex-mini", "gpt 5.1 codex mini"), "gpt-5.1-codex-mini"),
    (("codex-mini-latest", "gpt-5-codex-mini", "gpt 5 codex mini"), "gpt-5.1-codex-mini"),
    (("gpt-5-codex", "gpt 5 codex"), "gpt-5-codex"),
    (("gpt-5.1-codex", "gpt 5.1 codex"), "gpt-5-codex"),
    (("gpt-5.1", "gpt 5.1"), "gpt-5.1"),
    (("codex",), "gpt-5-codex"),
    (("gpt-5", "gpt 5"), "gpt-5.1"),
)


def strip_provider_prefix(model: str) -> str:
    if "/" not in model:
        return model
    return model.rsplit("/", 1)[-1] or model


def strip_effort_suffix(model: str) -> str:
    return _EFFORT_SUFFIX_PATTERN.sub("", strip_provider_prefix(model))


def effort_suffix(model: str) -> str | None:
    match = _EFFORT_SUFFIX_PATTERN.search(strip_provider_prefix(model).lower())
    return match.group(1).lower() if match else None


def normalize_model(model: str | None) -> str:
    """Map a host model name onto an id the Codex backend accepts.

    `openai/gpt-5.2-codex-high` -> `gpt-5.2-codex`; `GPT 5 Codex Low (ChatGPT)`
    -> `gpt-5-codex`; anything unrecognised -> `gpt-5.1`.
    """
    if not model:
        return DEFAULT_MODEL
    model_id = strip_provider_prefix(model.strip())
    lowered = model_id.lower()
    mapped = MODEL_MAP.get(lowered)
    if mapped:
        return mapped
    for needles, target in _PATTERN_ROUTES:
        if any(needle in lowered for needle in needles):
            return target
    return DEFAULT_MODEL


def get_model_family(normalized_model: str) -> str:
    name = normalized_model.lower()
    if "codex-max" in name:
        return "codex-max"
    if any(
        needle in name
        for needle in (
            "gpt-5-codex",
            "gpt 5 codex",
            "gpt-5.3-codex",
            "gpt 5.3 codex",
            "gpt-5.2-codex",
            "gpt 5.2 codex",
            "gpt-5.1-codex",
            "gpt 5.1 codex",
        )
    ):
        return "gpt-5-codex"
    if "codex" in name:
        return "codex"
    if "gpt-5.2" in name:
        return "gpt-5.2"
    return "gpt-5.1"


def get_model_config(model_name: str, user_config: UserConfig | None = None) -> dict[str, Any]:
    """Merge `global`, per-model and per-variant options for `model_name`.

    An exact key (e.g. `gpt-5-codex-low`) wins outright. Otherwise the base
    model entry is found by suffix-free name, then by normalized name, and the
    requested variant's options (minus `disabled`) are layered on top.
    """
    config = user_config or UserConfig()
    global_options = dict(config.global_options)
    models = config.models

    stripped = strip_provider_prefix(model_name)
    for key in (model_name, stripped):
        entry = models.get(key)
        if entry is not None:
            return {**global_options, **entry.options}

    base_name = strip_effort_suffix(stripped)
    base_entry = None
    for key in (base_name, normalize_model(base_name), normalize_model(stripped)):
        base_entry = models.get(key)
        if base_entry is not None:
            break

    base_options: dict[str, Any] = dict(base_entry.options) if base_entry else {}
    variant_options: dict[str, Any] = {}
    variant = effort_suffix(stripped)
    if variant and base_entry is not None:
        raw_variant = base_entry.variants.get(variant)
        if raw_variant:
            variant_options = {key: value for key, value in raw_variant.items() if key != "disabled"}
    return {**global_options, **base_options, **variant_options}


def sanitize_reasoning_summary(summary: Any) -> ReasoningSummary:
    if not isinstance(summary, str) or not summary:
        return "auto"
    lowered = summary.lower()
    if lowered in ("auto", "concise", "detailed"):
        return lowered  # type: ignore[return-value]
    return "auto"


def get_reasoning_config(model_name: str | None, options: dict[str, Any] | None = None) -> dict[str, str]:
    """Resolve `{effort, summary}` for a model, clamping efforts the model rejects."""
    options = options or {}
    name = (model_name or "").lower()

    is_gpt5_codex = "gpt-5-codex" in name or "gpt 5 codex" in name
    is_gpt53_codex = "gpt-5.3-codex" in name or "gpt 5.3 codex" in name
    is_gpt52_codex = "gpt-5.2-codex" in name or "gpt 5.2 codex" in name
    is_gpt52_general = ("gpt-5.2" in name or "gpt 5.2" in name) and not is_gpt52_codex
    is_codex_max = "codex-max" in name or "codex max" in name
    is_codex_mini = any(
        needle in name for needle in ("codex-mini", "codex mini", "codex_mini")
    )
    is_codex = "codex" in name and not is_codex_mini
    is_lightweight = not is_codex_mini and ("nano" in name or "mini" in name)
    is_gpt51_general = (
        ("gpt-5.1" in name or "gpt 5.1" in name or name == "gpt-5" or name.startswith("gpt-5-"))
        and not is_codex
        and not is_gpt52_general
        and not is_codex_max
        and not is_codex_mini
    )

    supports_xhigh = is_gpt52_general or is_gpt53_codex or is_gpt52_codex or is_codex_max
    supports_none = is_gpt52_general or is_gpt51_general

    if is_codex_mini:
        default_effort = "medium"
    elif is_gpt5_codex:
        default_effort = "high"
    elif is_gpt53_codex or is_gpt52_codex:
        default_effort = "xhigh"
    elif supports_xhigh:
        default_effort = "high"
    elif is_lightweight:
        default_effort = "minimal"
    else:
        default_effort = "medium"

    effort = options.get("reasoningEffort") or default_effort
    if is_codex_mini:
        if effort in ("minimal", "low", "none"):
            effort = "medium"
        if effort == "xhigh":
            effort = "high"
        if effort not in ("high", "medium"):
            effort = "medium"
    if not supports_xhigh and effort == "xhigh":
        effort = "high"
    if not supports_none and effort == "none":
        effort = "low"
    if is_codex and effort == "minimal":
        effort = "low"

    return {
        "effort": effort,
        "summary": sanitize_reasoning_summary(options.get("reasoningSummary")),
    }
