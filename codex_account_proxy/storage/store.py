from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import os
import secrets
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeVar

from codex_account_proxy.clock import Clock
from codex_account_proxy.constants import MAX_ACCOUNTS, MODEL_FAMILIES
from codex_account_proxy.storage.migrations import (
    clamp_index,
    dedupe_accounts_for_storage,
    find_index_by_identity_keys,
    identity_keys,
    normalize_account_storage,
    normalize_flagged_storage,
)
from codex_account_proxy.storage.paths import StoragePaths
from codex_account_proxy.storage.schemas import (
    AccountStorage,
    FlaggedAccountStorage,
)

logger = logging.getLogger("uvicorn.error")

RENAME_RETRY_ATTEMPTS = 5
RENAME_RETRY_BASE_DELAY_SECONDS = 0.01
BACKUP_WRITE_TIMEOUT_SECONDS = 3.0

BackupMode = Literal["none", "best-effort", "required"]
BackupStatus = Literal["created", "skipped", "failed"]

T = TypeVar("T")


class StorageError(RuntimeError):
    """File-system failure while persisting account data."""

    def __init__(self, message: str, *, code: str, path: Path | str, hint: str) -> None:
        super().__init__(message)
        self.code = code
        self.path = str(path)
        self.hint = hint


class ImportAccountsError(ValueError):
    """Raised when an import file is missing, malformed, or would overflow the pool."""


@dataclass(slots=True)
class ImportPreview:
    imported: int
    total: int
    skipped: int


@dataclass(slots=True)
class ImportAccountsResult:
    imported: int
    total: int
    skipped: int
    backup_status: BackupStatus
    backup_path: str | None = None
    backup_error: str | None = None


def error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno, "UNKNOWN")
    return "UNKNOWN"


def format_storage_error_hint(code: str, path: Path | str, *, platform: str | None = None) -> str:
    is_windows = (platform or sys.platform) == "win32"
    if code in {"EACCES", "EPERM"}:
        if is_windows:
            return (
                f"Permission denied writing to {path}. Check antivirus exclusions for this "
                "folder. Ensure you have write permissions."
            )
        return f"Permission denied writing to {path}. Check folder permissions. Try: chmod 755 ~/.opencode"
    if code == "EBUSY":
        return (
            f"File is locked at {path}. The file may be open in another program. "
            "Close any editors or processes accessing it."
        )
    if code == "ENOSPC":
        return f"Disk is full. Free up space and try again. Path: {path}"
    if code == "EEMPTY":
        return f"File written but is empty. This may indicate a disk or filesystem issue. Path: {path}"
    if is_windows:
        return f"Failed to write to {path}. Check folder permissions and ensure path contains no special characters."
    return f"Failed to write to {path}. Check folder permissions and disk space."


class _EmptyWriteError(OSError):
    code = "EEMPTY"


def _temp_path(path: Path) -> Path:
    return path.with_name(f"{path.name}.{int(time.time() * 1000)}.{secrets.token_hex(3)}.tmp")


def _replace_with_retry(source: Path, destination: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(RENAME_RETRY_ATTEMPTS):
        try:
            source.replace(destination)
            return
        except OSError as exc:
            if exc.errno not in {errno.EPERM, errno.EBUSY}:
                raise
            last_error = exc
            time.sleep(RENAME_RETRY_BASE_DELAY_SECONDS * 2**attempt)
    if last_error is not None:
        raise last_error


def write_json_atomic(path: Path, payload: Any, *, verify_size: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_path(path)
    try:
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        if verify_size and temp_path.stat().st_size == 0:
            raise _EmptyWriteError("File written but size is 0")
        _replace_with_retry(temp_path, path)
    except Exception:
        with contextlib.suppress(Exception):
            temp_path.unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def ensure_gitignore(paths: StoragePaths) -> None:
    if paths.project_root is None:
        return
    candidates = [paths.project_root, paths.config_dir.parent]
    project_root = next((root for root in candidates if (root / ".git").exists()), None)
    if project_root is None:
        return
    entry = paths.config_dir.name
    gitignore = project_root / ".gitignore"
    try:
        content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        lines = {line.strip() for line in content.splitlines()}
        if lines & {entry, f"{entry}/", f"/{entry}", f"/{entry}/"}:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(f"{content}{entry}/\n", encoding="utf-8")
        logger.debug("storage_gitignore_updated path=%s entry=%s", gitignore, entry)
    except OSError as exc:
        logger.warning("storage_gitignore_failed path=%s error=%s", gitignore, exc)


class AccountStore:
    """Versioned JSON persistence for the account pool.

    Every public operation runs under one FIFO `asyncio.Lock`, so writes are
    totally ordered. Blocking file I/O happens in worker threads.
    """

    def __init__(self, paths: StoragePaths, *, clock: Clock | None = None) -> None:
        self.paths = paths
        self.clock = clock or Clock()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self.paths.accounts_path

    async def _locked(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            return await fn()

    async def load(self) -> AccountStorage | None:
        return await self._locked(self._load_unlocked)

    async def save(self, storage: AccountStorage) -> None:
        await self._locked(lambda: self._save_unlocked(storage))

    async def transaction(
        self,
        handler: Callable[
            [AccountStorage | None, Callable[[AccountStorage], Awaitable[None]]],
            Awaitable[T],
        ],
    ) -> T:
        async def _run() -> T:
            current = await self._load_unlocked()
            return await handler(current, self._save_unlocked)

        return await self._locked(_run)

    async def _load_unlocked(self) -> AccountStorage | None:
        try:
            data = await asyncio.to_thread(_read_json, self.path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.error("storage_load_error path=%s error=%s", self.path, exc)
            return None

        normalized = normalize_account_storage(data, now_ms=self.clock.now_ms())
        stored_version = data.get("version") if isinstance(data, dict) else None
        if normalized is not None and stored_version != normalized.version:
            logger.info(
                "storage_migrate path=%s from_version=%s to_version=%s",
                self.path,
                stored_version,
                normalized.version,
            )
            try:
                await self._save_unlocked(normalized)
            except StorageError as exc:
                logger.warning("storage_migrate_persist_failed path=%s code=%s", self.path, exc.code)
        return normalized

    async def _save_unlocked(self, storage: AccountStorage) -> None:
        normalized = normalize_account_storage(storage, now_ms=self.clock.now_ms()) or storage
        payload = normalized.to_json_dict()
        try:
            await asyncio.to_thread(self._write_with_gitignore, payload)
        except OSError as exc:
            code = error_code(exc)
            hint = format_storage_error_hint(code, self.path)
            logger.error(
                "storage_save_error path=%s code=%s error=%s hint=%s", self.path, code, exc, hint
            )
            raise StorageError(
                f"Failed to save accounts: {exc}", code=code, path=self.path, hint=hint
            ) from exc

    def _write_with_gitignore(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        ensure_gitignore(self.paths)
        write_json_atomic(self.path, payload)

    # Flagged accounts

    async def load_flagged(self) -> FlaggedAccountStorage:
        path = self.paths.flagged_path
        now_ms = self.clock.now_ms()
        try:
            data = await asyncio.to_thread(_read_json, path)
            return normalize_flagged_storage(data, now_ms=now_ms)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.error("flagged_storage_load_error path=%s error=%s", path, exc)
            return FlaggedAccountStorage()

        legacy_path = self.paths.legacy_flagged_path
        if not legacy_path.exists():
            return FlaggedAccountStorage()
        try:
            legacy = normalize_flagged_storage(
                await asyncio.to_thread(_read_json, legacy_path), now_ms=now_ms
            )
            if legacy.accounts:
                await self.save_flagged(legacy)
            with contextlib.suppress(OSError):
                legacy_path.unlink()
        except (OSError, ValueError) as exc:
            logger.error(
                "flagged_storage_migrate_error from=%s to=%s error=%s", legacy_path, path, exc
            )
            return FlaggedAccountStorage()
        logger.info(
            "flagged_storage_migrated from=%s to=%s accounts=%d",
            legacy_path,
            path,
            len(legacy.accounts),
        )
        return legacy

    async def save_flagged(self, storage: FlaggedAccountStorage) -> None:
        path = self.paths.flagged_path
        payload = normalize_flagged_storage(storage, now_ms=self.clock.now_ms()).to_json_dict()

        async def _save() -> None:
            try:
                await asyncio.to_thread(write_json_atomic, path, payload, verify_size=False)
            except OSError as exc:
                code = error_code(exc)
                logger.error("flagged_storage_save_error path=%s error=%s", path, exc)
                raise StorageError(
                    f"Failed to save flagged accounts: {exc}",
                    code=code,
                    path=path,
                    hint=format_storage_error_hint(code, path),
                ) from exc

        await self._locked(_save)

    async def clear_flagged(self) -> None:
        path = self.paths.flagged_path

        async def _clear() -> None:
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                return
            except OSError as exc:
                code = error_code(exc)
                logger.error("flagged_storage_clear_error path=%s error=%s", path, exc)
                raise StorageError(
                    f"Failed to clear flagged accounts: {exc}",
                    code=code,
                    path=path,
                    hint=format_storage_error_hint(code, path),
                ) from exc

        await self._locked(_clear)

    # Export / import

    async def export_accounts(self, file_path: str | Path, *, force: bool = True) -> Path:
        destination = Path(file_path).expanduser().resolve()
        if not force and destination.exists():
            raise FileExistsError(f"File already exists: {destination}")
        storage = await self.transaction(_return_current)
        if storage is None or not storage.accounts:
            raise ImportAccountsError("No accounts to export")
        await asyncio.to_thread(write_json_atomic, destination, storage.to_json_dict())
        logger.info("accounts_exported path=%s count=%d", destination, len(storage.accounts))
        return destination

    def _read_import_file(self, file_path: str | Path) -> AccountStorage:
        source = Path(file_path).expanduser().resolve()
        if not source.exists():
            raise ImportAccountsError(f"Import file not found: {source}")
        try:
            data = _read_json(source)
        except ValueError as exc:
            raise ImportAccountsError(f"Invalid JSON in import file: {source}") from exc
        normalized = normalize_account_storage(data, now_ms=self.clock.now_ms())
        if normalized is None:
            raise ImportAccountsError("Invalid account storage format")
        return normalized

    async def preview_import(self, file_path: str | Path) -> ImportPreview:
        incoming = await asyncio.to_thread(self._read_import_file, file_path)

        async def _preview(current: AccountStorage | None, _persist: Any) -> ImportPreview:
            existing = current.accounts if current else []
            merged = _merge_with_limit(existing, incoming)
            imported = len(merged) - len(existing)
            return ImportPreview(
                imported=imported,
                total=len(merged),
                skipped=len(incoming.accounts) - imported,
            )

        return await self.transaction(_preview)

    async def import_accounts(
        self,
        file_path: str | Path,
        *,
        backup_mode: BackupMode = "none",
        backup_prefix: str = "codex-pre-import-backup",
    ) -> ImportAccountsResult:
        incoming = await asyncio.to_thread(self._read_import_file, file_path)

        async def _apply(
            current: AccountStorage | None,
            persist: Callable[[AccountStorage], Awaitable[None]],
        ) -> ImportAccountsResult:
            existing_storage = current or AccountStorage()
            existing = existing_storage.accounts
            active = clamp_index(existing_storage.active_index, len(existing))
            active_keys = identity_keys(existing[active]) if existing else []

            backup_status: BackupStatus = "skipped"
            backup_path: Path | None = None
            backup_error: str | None = None
            if backup_mode != "none" and existing:
                backup_path = self.paths.backup_path(backup_prefix)
                try:
                    await asyncio.wait_for(
                        asyncio.to_thread(
                            write_json_atomic, backup_path, existing_storage.to_json_dict()
                        ),
                        timeout=BACKUP_WRITE_TIMEOUT_SECONDS,
                    )
                    backup_status = "created"
                except (OSError, TimeoutError) as exc:
                    backup_status = "failed"
                    backup_error = str(exc) or exc.__class__.__name__
                    if backup_mode == "required":
                        raise ImportAccountsError(f"Pre-import backup failed: {backup_error}") from exc
                    logger.warning(
                        "import_backup_failed path=%s error=%s", backup_path, backup_error
                    )

            merged = _merge_with_limit(existing, incoming)
            mapped_active = 0
            if merged:
                found = find_index_by_identity_keys(merged, active_keys)
                mapped_active = found if found >= 0 else clamp_index(active, len(merged))
            by_family: dict[str, int] = {}
            for family in MODEL_FAMILIES:
                raw_index = existing_storage.active_index_by_family.get(family, active)
                family_keys = (
                    identity_keys(existing[clamp_index(raw_index, len(existing))]) if existing else []
                )
                found = find_index_by_identity_keys(merged, family_keys) if family_keys else -1
                by_family[family] = found if found >= 0 else mapped_active

            await persist(
                AccountStorage(
                    accounts=merged,
                    active_index=mapped_active,
                    active_index_by_family=by_family,
                )
            )
            imported = len(merged) - len(existing)
            return ImportAccountsResult(
                imported=imported,
                total=len(merged),
                skipped=len(incoming.accounts) - imported,
                backup_status=backup_status,
                backup_path=str(backup_path) if backup_path else None,
                backup_error=backup_error,
            )

        result = await self.transaction(_apply)
        logger.info(
            "accounts_imported path=%s imported=%d skipped=%d total=%d backup_status=%s",
            file_path,
            result.imported,
            result.skipped,
            result.total,
            result.backup_status,
        )
        return result


async def _return_current(current: AccountStorage | None, _persist: Any) -> AccountStorage | None:
    return current


def _merge_with_limit(existing: list[Any], incoming: AccountStorage) -> list[Any]:
    merged = dedupe_accounts_for_storage([*existing, *incoming.accounts])
    if len(merged) > MAX_ACCOUNTS:
        raise ImportAccountsError(
            f"Import would exceed maximum of {MAX_ACCOUNTS} accounts (would have {len(merged)})"
        )
    return merged
