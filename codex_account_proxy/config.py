from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

_OPTION_ALIASES = {
    "reasoning_effort": "reasoningEffort",
    "reasoning_summary": "reasoningSummary",
    "text_verbosity": "textVerbosity",
}


class ConfigError(ValueError):
    """Raised when the user model config cannot be loaded."""


def _normalize_options(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("options must be a mapping")
    normalized: dict[str, Any] = {}
    for key, raw in value.items():
        name = _OPTION_ALIASES.get(str(key), str(key))
        normalized[name] = raw
    return normalized


class ModelConfigEntry(BaseModel):
    options: dict[str, Any] = Field(default_factory=dict)
    variants: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> dict[str, Any]:
        return _normalize_options(value)

    @field_validator("variants", mode="before")
    @classmethod
    def _coerce_variants(cls, value: Any) -> dict[str, dict[str, Any]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("variants must be a mapping")
        return {str(name): _normalize_options(options) for name, options in value.items()}


class UserConfig(BaseModel):
    """Per-model request defaults: `global`, then `models.<name>.options`, then variants."""

    model_config = ConfigDict(populate_by_name=True)

    global_options: dict[str, Any] = Field(default_factory=dict, alias="global")
    models: dict[str, ModelConfigEntry] = Field(default_factory=dict)

    @field_validator("global_options", mode="before")
    @classmethod
    def _coerce_global(cls, value: Any) -> dict[str, Any]:
        return _normalize_options(value)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        return value


def load_user_config(path: str | Path | None) -> UserConfig:
    if not path:
        return UserConfig()
    resolved = Path(path).expanduser()
    if not resolved.exists():
        return UserConfig()
    try:
        with resolved.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in '{resolved}': {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected YAML object in '{resolved}'.")
    return UserConfig.model_validate(raw)
