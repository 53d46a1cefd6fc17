from __future__ import annotations

import dataclasses
import sys
from pathlib import Path
from typing import Any, TextIO

import yaml

SECRET_KEYS = frozenset({"access", "access_token", "refresh", "refresh_token", "id_token"})
REDACTED = "<redacted>"


def _plain(payload: Any) -> Any:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    if isinstance(payload, dict):
        return {
            str(key): REDACTED if key in SECRET_KEYS and value else _plain(value)
            for key, value in payload.items()
        }
    if isinstance(payload, (list, tuple)):
        return [_plain(item) for item in payload]
    if isinstance(payload, Path):
        return str(payload)
    return payload


def render_yaml(payload: Any) -> str:
    """Render a CLI report; token fields never reach the terminal."""
    return yaml.safe_dump(_plain(payload), sort_keys=False, allow_unicode=True).rstrip()


def print_yaml(payload: Any, *, stream: TextIO | None = None) -> None:
    (stream or sys.stdout).write(render_yaml(payload) + "\n")
