from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from codex_account_proxy.constants import (
    ACCOUNTS_FILE_NAME,
    FLAGGED_ACCOUNTS_FILE_NAME,
    LEGACY_FLAGGED_ACCOUNTS_FILE_NAME,
)

DEFAULT_BACKUP_PREFIX = "codex-backup"


@dataclass(slots=True, frozen=True)
class StoragePaths:
    config_dir: Path
    project_root: Path | None = None

    @classmethod
    def from_dir(cls, config_dir: str | Path, project_root: str | Path | None = None) -> StoragePaths:
        return cls(
            config_dir=Path(config_dir).expanduser(),
            project_root=Path(project_root).expanduser() if project_root else None,
        )

    @property
    def accounts_path(self) -> Path:
        return self.config_dir / ACCOUNTS_FILE_NAME

    @property
    def flagged_path(self) -> Path:
        return self.config_dir / FLAGGED_ACCOUNTS_FILE_NAME

    @property
    def legacy_flagged_path(self) -> Path:
        return self.config_dir / LEGACY_FLAGGED_ACCOUNTS_FILE_NAME

    @property
    def backups_dir(self) -> Path:
        return self.config_dir / "backups"

    def backup_path(self, prefix: str = DEFAULT_BACKUP_PREFIX, *, now: datetime | None = None) -> Path:
        stamp = format_backup_timestamp(now or datetime.now())
        nonce = secrets.token_hex(3)
        return self.backups_dir / f"{sanitize_backup_prefix(prefix)}-{stamp}-{nonce}.json"


def format_backup_timestamp(value: datetime) -> str:
    millis = value.microsecond // 1000
    return f"{value:%Y%m%d-%H%M%S}{millis:03d}"


def sanitize_backup_prefix(prefix: str) -> str:
    safe = re.sub(r"[^a-zA-Z0-9_-]+", "-", prefix.strip())
    safe = re.sub(r"-+", "-", safe).strip("-")
    return safe or DEFAULT_BACKUP_PREFIX
