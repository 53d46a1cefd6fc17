from __future__ import annotations

from codex_account_proxy.storage.paths import StoragePaths
from codex_account_proxy.storage.schemas import (
    AccountRecord,
    AccountStorage,
    FlaggedAccountRecord,
    FlaggedAccountStorage,
)
from codex_account_proxy.storage.store import (
    AccountStore,
    ImportAccountsError,
    ImportAccountsResult,
    StorageError,
)

__all__ = [
    "AccountRecord",
    "AccountStorage",
    "AccountStore",
    "FlaggedAccountRecord",
    "FlaggedAccountStorage",
    "ImportAccountsError",
    "ImportAccountsResult",
    "StorageError",
    "StoragePaths",
]
