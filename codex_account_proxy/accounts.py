from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from codex_account_proxy.clock import Clock
from codex_account_proxy.constants import (
    AUTH_FAILURE_THRESHOLD,
    DEFAULT_MODEL_FAMILY,
    MAX_ACCOUNTS,
    MODEL_FAMILIES,
)
from codex_account_proxy.identity import (
    AccountIdCandidate,
    extract_account_email,
    extract_account_id,
    sanitize_email,
    should_update_account_id_from_token,
)
from codex_account_proxy.oauth.flow import TokenSuccess
from codex_account_proxy.rotation import (
    AccountWithMetrics,
    HealthScoreTracker,
    TokenBucketTracker,
    select_hybrid_account,
)
from codex_account_proxy.storage.migrations import clamp_index, identity_keys
from codex_account_proxy.storage.schemas import (
    AccountIdSource,
    AccountRecord,
    AccountStorage,
    CooldownReason,
    FlaggedAccountRecord,
    SwitchReason,
)
from codex_account_proxy.storage.store import AccountStore

logger = logging.getLogger("uvicorn.error")

SelectionStrategy = Literal["hybrid", "round-robin"]
RateLimitReason = Literal["quota", "tokens", "concurrent", "unknown"]
EligibilityReason = Literal["eligible", "disabled", "rate-limited", "token-bucket-empty", "cooling-down"]

DEFAULT_SAVE_DEBOUNCE_MS = 400
DEFAULT_TOAST_DEBOUNCE_MS = 60_000
DEFAULT_AUTH_FAILURE_COOLDOWN_MS = 30_000

_RECORD_FIELDS = (
    "organization_id",
    "account_id",
    "account_id_source",
    "account_label",
    "account_tags",
    "account_note",
    "email",
    "enabled",
    "added_at",
    "last_used",
    "last_switch_reason",
    "cooling_down_until",
    "cooldown_reason",
)


def quota_key(family: str, model: str | None = None) -> str:
    return f"{family}:{model}" if model else family


@dataclass(slots=True)
class ManagedAccount:
    index: int
    refresh_token: str
    organization_id: str | None = None
    account_id: str | None = None
    account_id_source: AccountIdSource | None = None
    account_label: str | None = None
    account_tags: list[str] | None = None
    account_note: str | None = None
    email: str | None = None
    enabled: bool | None = None
    added_at: int = 0
    last_used: int = 0
    last_switch_reason: SwitchReason | None = None
    rate_limit_reset_times: dict[str, int] = field(default_factory=dict)
    cooling_down_until: int | None = None
    cooldown_reason: CooldownReason | None = None
    consecutive_auth_failures: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    # Runtime only
    access: str | None = None
    expires: int | None = None
    last_rate_limit_reason: RateLimitReason | None = None
    request_count: int = 0
    success_count: int = 0
    rate_limit_count: int = 0
    failure_count: int = 0

    @classmethod
    def from_record(cls, index: int, record: AccountRecord) -> ManagedAccount:
        values = {name: getattr(record, name) for name in _RECORD_FIELDS}
        return cls(
            index=index,
            refresh_token=record.refresh_token,
            rate_limit_reset_times=dict(record.rate_limit_reset_times or {}),
            consecutive_auth_failures=record.consecutive_auth_failures or 0,
            extra=dict(record.model_extra or {}),
            **values,
        )

    def to_record(self) -> AccountRecord:
        payload: dict[str, Any] = {name: getattr(self, name) for name in _RECORD_FIELDS}
        payload["refresh_token"] = self.refresh_token
        payload["rate_limit_reset_times"] = dict(self.rate_limit_reset_times) or None
        payload["consecutive_auth_failures"] = self.consecutive_auth_failures or None
        payload.update(self.extra)
        return AccountRecord.model_validate(payload)

    @property
    def is_enabled(self) -> bool:
        return self.enabled is not False


@dataclass(slots=True, frozen=True)
class AccountEligibility:
    index: int
    eligible: bool
    reasons: list[EligibilityReason]


class AccountSelectionObserver(Protocol):
    def notify_account_selected(self, index: int, account: ManagedAccount, reason: SwitchReason) -> None: ...


class AccountManager:
    """Owns the in-memory account pool.

    Mutations are synchronous, so on one event loop each call is a critical
    section for the account it touches. Every mutation schedules a debounced
    write through the store.
    """

    def __init__(
        self,
        store: AccountStore | None = None,
        stored: AccountStorage | None = None,
        *,
        fallback_auth: TokenSuccess | None = None,
        clock: Clock | None = None,
        strategy: SelectionStrategy = "hybrid",
        health: HealthScoreTracker | None = None,
        tokens: TokenBucketTracker | None = None,
        save_debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
        toast_debounce_ms: int = DEFAULT_TOAST_DEBOUNCE_MS,
        auth_failure_cooldown_ms: int = DEFAULT_AUTH_FAILURE_COOLDOWN_MS,
        forced_account_id: str | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.strategy: SelectionStrategy = strategy
        self.health = health or HealthScoreTracker(clock=self.clock)
        self.tokens = tokens or TokenBucketTracker(clock=self.clock)
        self.save_debounce_ms = max(0, save_debounce_ms)
        self.toast_debounce_ms = max(0, toast_debounce_ms)
        self.auth_failure_cooldown_ms = max(0, auth_failure_cooldown_ms)

        self._accounts: list[ManagedAccount] = []
        self._cursor_by_family: dict[str, int] = {family: 0 for family in MODEL_FAMILIES}
        self._active_by_family: dict[str, int] = {family: -1 for family in MODEL_FAMILIES}
        self._last_toast_at: dict[int, int] = {}
        self._observers: list[AccountSelectionObserver] = []
        self._removal_hooks: list[Callable[[int], None]] = []
        self._save_timer: asyncio.Task[None] | None = None
        self._pending_save: asyncio.Task[None] | None = None

        self._seed(stored, fallback_auth)
        if forced_account_id:
            self._apply_forced_account(forced_account_id)

    @classmethod
    async def load(
        cls,
        store: AccountStore,
        *,
        fallback_auth: TokenSuccess | None = None,
        **kwargs: Any,
    ) -> AccountManager:
        stored = await store.load()
        return cls(store, stored, fallback_auth=fallback_auth, **kwargs)

    def _seed(self, stored: AccountStorage | None, fallback: TokenSuccess | None) -> None:
        if stored is not None:
            self._accounts = [
                ManagedAccount.from_record(index, record) for index, record in enumerate(stored.accounts)
            ]
        if fallback is not None:
            self._merge_fallback(fallback)
        if not self._accounts:
            return

        count = len(self._accounts)
        default_index = clamp_index(stored.active_index, count) if stored else 0
        families = stored.active_index_by_family if stored else {}
        for family in MODEL_FAMILIES:
            index = clamp_index(families.get(family, default_index), count)
            self._active_by_family[family] = index
            self._cursor_by_family[family] = index

    def _merge_fallback(self, fallback: TokenSuccess) -> None:
        account_id = extract_account_id(fallback.access)
        email = sanitize_email(extract_account_email(fallback.access, fallback.id_token))
        match: ManagedAccount | None = None
        if account_id:
            match = next((a for a in self._accounts if a.account_id == account_id), None)
        if match is None and email:
            match = next((a for a in self._accounts if a.email == email), None)
        if match is None:
            match = next((a for a in self._accounts if a.refresh_token == fallback.refresh), None)

        if match is not None:
            match.refresh_token = fallback.refresh or match.refresh_token
            match.access = fallback.access
            match.expires = fallback.expires
            match.email = email or match.email
            return

        now = self.clock.now_ms()
        self._accounts.append(
            ManagedAccount(
                index=len(self._accounts),
                refresh_token=fallback.refresh,
                account_id=account_id,
                account_id_source="token" if account_id else None,
                email=email,
                access=fallback.access,
                expires=fallback.expires,
                added_at=now,
                last_used=now,
                last_switch_reason="initial",
            )
        )

    def _apply_forced_account(self, account_id: str) -> None:
        for account in self._accounts:
            if account.account_id == account_id:
                for family in MODEL_FAMILIES:
                    self._active_by_family[family] = account.index
                    self._cursor_by_family[family] = account.index
                logger.info("account_forced index=%d", account.index)
                return
        logger.warning("account_forced_not_found account_id_suffix=%s", account_id[-6:])

    # Pool access

    @property
    def account_count(self) -> int:
        return len(self._accounts)

    @property
    def accounts(self) -> list[ManagedAccount]:
        return list(self._accounts)

    def get(self, index: int) -> ManagedAccount | None:
        if 0 <= index < len(self._accounts):
            return self._accounts[index]
        return None

    def has_refresh_token(self, refresh_token: str) -> bool:
        return any(account.refresh_token == refresh_token for account in self._accounts)

    def get_active_index(self, family: str = DEFAULT_MODEL_FAMILY) -> int:
        index = self._active_by_family.get(family, -1)
        if index < 0 or index >= len(self._accounts):
            return 0 if self._accounts else -1
        return index

    def set_active_index(self, index: int) -> ManagedAccount | None:
        if not self._accounts:
            return None
        index = clamp_index(index, len(self._accounts))
        for family in MODEL_FAMILIES:
            self._active_by_family[family] = index
            self._cursor_by_family[family] = index
        account = self._accounts[index]
        account.last_used = self.clock.now_ms()
        account.last_switch_reason = "rotation"
        self.schedule_save()
        return account

    # Eligibility

    def _clear_expired_rate_limits(self, account: ManagedAccount) -> None:
        now = self.clock.now_ms()
        for key in [key for key, reset_at in account.rate_limit_reset_times.items() if now >= reset_at]:
            del account.rate_limit_reset_times[key]

    def is_rate_limited(self, account: ManagedAccount, family: str, model: str | None = None) -> bool:
        self._clear_expired_rate_limits(account)
        now = self.clock.now_ms()
        keys = [quota_key(family)]
        if model:
            keys.append(quota_key(family, model))
        return any(now < account.rate_limit_reset_times.get(key, 0) for key in keys)

    def is_cooling_down(self, account: ManagedAccount) -> bool:
        if account.cooling_down_until is None:
            return False
        if self.clock.now_ms() >= account.cooling_down_until:
            self.clear_account_cooldown(account)
            return False
        return True

    def eligibility_reasons(
        self, account: ManagedAccount, family: str, model: str | None = None
    ) -> list[EligibilityReason]:
        reasons: list[EligibilityReason] = []
        if not account.is_enabled:
            reasons.append("disabled")
        if self.is_rate_limited(account, family, model):
            reasons.append("rate-limited")
        if not self.tokens.has_tokens(account.index, quota_key(family, model)):
            reasons.append("token-bucket-empty")
        if self.is_cooling_down(account):
            reasons.append("cooling-down")
        return reasons or ["eligible"]

    def is_eligible(self, account: ManagedAccount, family: str, model: str | None = None) -> bool:
        return self.eligibility_reasons(account, family, model) == ["eligible"]

    def explain_eligibility(self, family: str, model: str | None = None) -> list[AccountEligibility]:
        explained: list[AccountEligibility] = []
        for account in self._accounts:
            reasons = self.eligibility_reasons(account, family, model)
            explained.append(
                AccountEligibility(index=account.index, eligible=reasons == ["eligible"], reasons=reasons)
            )
        return explained

    # Selection

    def select_account(
        self,
        family: str,
        model: str | None = None,
        *,
        exclude: set[int] | None = None,
    ) -> ManagedAccount | None:
        if self.strategy == "round-robin":
            return self.get_current_or_next_round_robin(family, model, exclude=exclude)
        return self.get_current_or_next_hybrid(family, model, exclude=exclude)

    def get_current_or_next_round_robin(
        self,
        family: str,
        model: str | None = None,
        *,
        exclude: set[int] | None = None,
    ) -> ManagedAccount | None:
        count = len(self._accounts)
        if count == 0:
            return None
        cursor = self._cursor_by_family.get(family, 0)
        for offset in range(count):
            index = (cursor + offset) % count
            account = self._accounts[index]
            if exclude and index in exclude:
                continue
            if not self.is_eligible(account, family, model):
                continue
            self._cursor_by_family[family] = (index + 1) % count
            self._select(account, family)
            return account
        return None

    def get_current_or_next_hybrid(
        self,
        family: str,
        model: str | None = None,
        *,
        exclude: set[int] | None = None,
    ) -> ManagedAccount | None:
        count = len(self._accounts)
        if count == 0:
            return None

        current = self.get(self._active_by_family.get(family, -1))
        if (
            current is not None
            and not (exclude and current.index in exclude)
            and self.is_eligible(current, family, model)
        ):
            current.last_used = self.clock.now_ms()
            return current

        candidates = [
            AccountWithMetrics(
                index=account.index,
                is_available=not (exclude and account.index in exclude)
                and self.is_eligible(account, family, model),
                last_used=account.last_used,
            )
            for account in self._accounts
        ]
        selected = select_hybrid_account(
            candidates,
            self.health,
            self.tokens,
            quota_key(family, model),
            now_ms=self.clock.now_ms(),
        )
        if selected is None:
            return None
        account = self._accounts[selected.index]
        self._cursor_by_family[family] = (account.index + 1) % count
        self._select(account, family)
        return account

    def _select(self, account: ManagedAccount, family: str) -> None:
        previous = self._active_by_family.get(family, -1)
        self._active_by_family[family] = account.index
        account.last_used = self.clock.now_ms()
        if previous != account.index:
            reason: SwitchReason = "initial" if previous < 0 else "rotation"
            self.mark_switched(account, reason, family)

    def mark_switched(self, account: ManagedAccount, reason: SwitchReason, family: str) -> None:
        account.last_switch_reason = reason
        self._active_by_family[family] = account.index
        for observer in list(self._observers):
            try:
                observer.notify_account_selected(account.index, account, reason)
            except Exception:
                logger.exception("account_observer_failed index=%d", account.index)

    def add_observer(self, observer: AccountSelectionObserver) -> None:
        self._observers.append(observer)

    def on_account_removed(self, hook: Callable[[int], None]) -> None:
        """Register a callback that receives the index of each removed account."""
        self._removal_hooks.append(hook)

    # Outcome bookkeeping

    def consume_token(self, account: ManagedAccount, family: str, model: str | None = None) -> bool:
        return self.tokens.try_consume(account.index, quota_key(family, model))

    def refund_token(self, account: ManagedAccount, family: str, model: str | None = None) -> None:
        self.tokens.refund(account.index, quota_key(family, model))

    def record_success(self, account: ManagedAccount, family: str, model: str | None = None) -> None:
        account.success_count += 1
        self.health.record_success(account.index, quota_key(family, model))
        self.schedule_save()

    def record_failure(self, account: ManagedAccount, family: str, model: str | None = None) -> None:
        account.failure_count += 1
        self.health.record_failure(account.index, quota_key(family, model))
        self.schedule_save()

    def mark_rate_limited_with_reason(
        self,
        account: ManagedAccount,
        delay_ms: float,
        family: str,
        reason: RateLimitReason = "unknown",
        model: str | None = None,
    ) -> int:
        """Store `now + delay` under the family and `family:model` keys. Reset times never move backwards."""
        reset_at = self.clock.now_ms() + max(0, int(delay_ms))
        keys = [quota_key(family)]
        if model:
            keys.append(quota_key(family, model))
        for key in keys:
            account.rate_limit_reset_times[key] = max(account.rate_limit_reset_times.get(key, 0), reset_at)
        account.last_rate_limit_reason = reason
        account.rate_limit_count += 1
        bucket_key = quota_key(family, model)
        self.health.record_rate_limit(account.index, bucket_key)
        self.tokens.drain(account.index, bucket_key)
        self.schedule_save()
        return reset_at

    def mark_account_cooling_down(
        self, account: ManagedAccount, cooldown_ms: float, reason: CooldownReason
    ) -> None:
        account.cooling_down_until = self.clock.now_ms() + max(0, int(cooldown_ms))
        account.cooldown_reason = reason
        self.schedule_save()

    def clear_account_cooldown(self, account: ManagedAccount) -> None:
        account.cooling_down_until = None
        account.cooldown_reason = None

    def increment_auth_failures(self, account: ManagedAccount) -> int:
        account.consecutive_auth_failures += 1
        if account.consecutive_auth_failures >= AUTH_FAILURE_THRESHOLD:
            self.mark_account_cooling_down(account, self.auth_failure_cooldown_ms, "auth-failure")
        else:
            self.schedule_save()
        return account.consecutive_auth_failures

    def clear_auth_failures(self, account: ManagedAccount) -> None:
        if account.consecutive_auth_failures:
            account.consecutive_auth_failures = 0
            self.schedule_save()

    def should_show_account_toast(self, index: int, debounce_ms: int | None = None) -> bool:
        window = self.toast_debounce_ms if debounce_ms is None else debounce_ms
        last = self._last_toast_at.get(index)
        return last is None or self.clock.now_ms() - last >= window

    def mark_toast_shown(self, index: int) -> None:
        self._last_toast_at[index] = self.clock.now_ms()

    def update_from_auth(self, account: ManagedAccount, auth: TokenSuccess) -> None:
        account.refresh_token = auth.refresh or account.refresh_token
        account.access = auth.access
        account.expires = auth.expires
        token_account_id = extract_account_id(auth.access)
        if token_account_id and should_update_account_id_from_token(
            account.account_id_source, account.account_id
        ):
            account.account_id = token_account_id
            account.account_id_source = "token"
        account.email = sanitize_email(extract_account_email(auth.access, auth.id_token)) or account.email
        self.schedule_save()

    def add_or_update_account(
        self,
        auth: TokenSuccess,
        candidate: AccountIdCandidate | None = None,
    ) -> ManagedAccount:
        """Bind freshly minted tokens to an account, updating a matching entry in place."""
        if not auth.refresh.strip():
            raise ValueError("Token response did not include a refresh token")
        email = sanitize_email(extract_account_email(auth.access, auth.id_token))
        account_id = candidate.account_id if candidate else extract_account_id(auth.access)
        candidate_account = ManagedAccount(
            index=-1,
            refresh_token=auth.refresh,
            organization_id=candidate.organization_id if candidate else None,
            account_id=account_id,
        )
        keys = identity_keys(candidate_account.to_record())
        existing = next(
            (account for key in keys for account in self._accounts if key in identity_keys(account.to_record())),
            None,
        )
        now = self.clock.now_ms()
        if existing is not None:
            existing.refresh_token = auth.refresh or existing.refresh_token
            existing.access = auth.access
            existing.expires = auth.expires
            existing.email = email or existing.email
            if candidate is not None:
                existing.account_label = candidate.label
                existing.account_id_source = candidate.source
            existing.consecutive_auth_failures = 0
            self.clear_account_cooldown(existing)
            self.schedule_save()
            return existing

        if len(self._accounts) >= MAX_ACCOUNTS:
            raise ValueError(f"Maximum of {MAX_ACCOUNTS} accounts reached")
        account = ManagedAccount(
            index=len(self._accounts),
            refresh_token=auth.refresh,
            organization_id=candidate_account.organization_id,
            account_id=account_id,
            account_id_source=candidate.source if candidate else ("token" if account_id else None),
            account_label=candidate.label if candidate else None,
            email=email,
            access=auth.access,
            expires=auth.expires,
            added_at=now,
            last_used=now,
            last_switch_reason="initial",
        )
        self._accounts.append(account)
        if len(self._accounts) == 1:
            for family in MODEL_FAMILIES:
                self._active_by_family[family] = 0
                self._cursor_by_family[family] = 0
        self.schedule_save()
        return account

    def get_min_wait_time_for_family(self, family: str, model: str | None = None) -> int:
        """0 when any account is usable now, else ms until the earliest reset or cooldown end."""
        if any(
            account.is_enabled
            and not self.is_rate_limited(account, family, model)
            and not self.is_cooling_down(account)
            for account in self._accounts
        ):
            return 0
        now = self.clock.now_ms()
        keys = [quota_key(family)]
        if model:
            keys.append(quota_key(family, model))
        waits: list[int] = []
        for account in self._accounts:
            for key in keys:
                reset_at = account.rate_limit_reset_times.get(key)
                if reset_at is not None:
                    waits.append(max(0, reset_at - now))
            if account.cooling_down_until is not None:
                waits.append(max(0, account.cooling_down_until - now))
        return min(waits) if waits else 0

    def remove_account(self, account: ManagedAccount) -> bool:
        """Drop an account; per-index state of the accounts after it moves down one slot."""
        try:
            position = self._accounts.index(account)
        except ValueError:
            return False
        del self._accounts[position]
        for index, remaining in enumerate(self._accounts):
            remaining.index = index
        self.health.remove_account(position)
        self.tokens.remove_account(position)
        self._last_toast_at = {
            (index - 1 if index > position else index): shown_at
            for index, shown_at in self._last_toast_at.items()
            if index != position
        }
        for hook in list(self._removal_hooks):
            hook(position)

        count = len(self._accounts)
        for family in MODEL_FAMILIES:
            if count == 0:
                self._active_by_family[family] = -1
                self._cursor_by_family[family] = 0
                continue
            active = self._active_by_family[family]
            if active > position:
                active -= 1
            self._active_by_family[family] = active if active < count else -1
            cursor = self._cursor_by_family[family]
            if cursor > position:
                cursor -= 1
            self._cursor_by_family[family] = cursor % count
        self.schedule_save()
        return True

    # Flagged accounts

    async def flag_account(
        self,
        account: ManagedAccount,
        *,
        reason: str | None = None,
        last_error: str | None = None,
    ) -> FlaggedAccountRecord:
        if self.store is None:
            raise RuntimeError("flagging requires a store")
        record = account.to_record()
        flagged = FlaggedAccountRecord.model_validate(
            {
                **record.model_dump(exclude_none=True),
                "flagged_at": self.clock.now_ms(),
                "flagged_reason": reason,
                "last_error": last_error,
            }
        )
        storage = await self.store.load_flagged()
        storage.accounts = [
            item for item in storage.accounts if item.refresh_token != flagged.refresh_token
        ]
        storage.accounts.append(flagged)
        await self.store.save_flagged(storage)
        self.remove_account(account)
        await self.flush_pending_save()
        logger.warning(
            "account_flagged label=%s reason=%s",
            format_account_label(account, account.index),
            reason,
        )
        return flagged

    async def restore_flagged(self, refresh_token: str) -> ManagedAccount | None:
        if self.store is None:
            raise RuntimeError("restoring requires a store")
        storage = await self.store.load_flagged()
        match = next((item for item in storage.accounts if item.refresh_token == refresh_token), None)
        if match is None:
            return None
        if self.has_refresh_token(refresh_token):
            storage.accounts = [item for item in storage.accounts if item is not match]
            await self.store.save_flagged(storage)
            return next(account for account in self._accounts if account.refresh_token == refresh_token)
        if len(self._accounts) >= MAX_ACCOUNTS:
            raise ValueError(f"Maximum of {MAX_ACCOUNTS} accounts reached")
        record = AccountRecord.model_validate(
            match.model_dump(exclude_none=True, exclude={"flagged_at", "flagged_reason", "last_error"})
        )
        account = ManagedAccount.from_record(len(self._accounts), record)
        account.cooling_down_until = None
        account.cooldown_reason = None
        account.consecutive_auth_failures = 0
        self._accounts.append(account)
        storage.accounts = [item for item in storage.accounts if item is not match]
        await self.store.save_flagged(storage)
        self.schedule_save()
        await self.flush_pending_save()
        logger.info("account_restored index=%d", account.index)
        return account

    # Persistence

    def to_storage(self) -> AccountStorage:
        for account in self._accounts:
            self._clear_expired_rate_limits(account)
        by_family = {family: max(0, self._active_by_family[family]) for family in MODEL_FAMILIES}
        return AccountStorage(
            accounts=[account.to_record() for account in self._accounts],
            active_index=by_family[DEFAULT_MODEL_FAMILY],
            active_index_by_family=by_family,
        )

    async def save(self) -> None:
        if self.store is None:
            return
        await self.store.save(self.to_storage())

    def schedule_save(self) -> None:
        if self.store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._save_timer is not None and not self._save_timer.done():
            self._save_timer.cancel()
        self._save_timer = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.save_debounce_ms / 1000)
        self._save_timer = None
        self._pending_save = asyncio.ensure_future(self._save_logged())
        await self._pending_save

    async def _save_logged(self) -> None:
        try:
            await self.save()
        except Exception:
            logger.exception("accounts_save_failed")
        finally:
            self._pending_save = None

    async def flush_pending_save(self) -> None:
        timer = self._save_timer
        if timer is not None and not timer.done():
            timer.cancel()
            self._save_timer = None
            await self.save()
        pending = self._pending_save
        if pending is not None:
            await pending


def format_account_label(account: ManagedAccount | AccountRecord | None, index: int) -> str:
    label = ((account.account_label if account else None) or "").strip()
    email = ((account.email if account else None) or "").strip()
    account_id = ((account.account_id if account else None) or "").strip()
    id_suffix = (account_id[-6:] if len(account_id) > 6 else account_id) or None

    details: list[str] = []
    if label:
        details.append(label)
    if email:
        details.append(email)
    if id_suffix:
        details.append(f"id:{id_suffix}" if label or email else id_suffix)
    if not details:
        return f"Account {index + 1}"
    return f"Account {index + 1} ({', '.join(details)})"


def format_wait_time(ms: float) -> str:
    total_seconds = max(0, int(ms // 1000))
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_cooldown(account: ManagedAccount | AccountRecord, now_ms: int) -> str | None:
    if account.cooling_down_until is None:
        return None
    remaining = account.cooling_down_until - now_ms
    if remaining <= 0:
        return None
    reason = f" ({account.cooldown_reason})" if account.cooldown_reason else ""
    return f"{format_wait_time(remaining)}{reason}"


def describe_accounts(
    manager: AccountManager,
    family: str = DEFAULT_MODEL_FAMILY,
    model: str | None = None,
) -> list[dict[str, Any]]:
    """Per-account status rows shared by the HTTP surface and the CLI."""
    now = manager.clock.now_ms()
    active = manager.get_active_index(family)
    key = quota_key(family, model)
    explained = {item.index: item for item in manager.explain_eligibility(family, model)}
    rows: list[dict[str, Any]] = []
    for account in manager.accounts:
        eligibility = explained[account.index]
        resets = {
            name: format_wait_time(reset_at - now)
            for name, reset_at in sorted(account.rate_limit_reset_times.items())
            if reset_at > now
        }
        rows.append(
            {
                "index": account.index,
                "label": format_account_label(account, account.index),
                "email": account.email,
                "account_id": account.account_id,
                "enabled": account.is_enabled,
                "active": account.index == active,
                "eligible": eligibility.eligible,
                "reasons": list(eligibility.reasons),
                "rate_limited_for": resets or None,
                "cooldown": format_cooldown(account, now),
                "consecutive_auth_failures": account.consecutive_auth_failures,
                "health_score": round(manager.health.get_score(account.index, key), 1),
                "consecutive_failures": manager.health.get_consecutive_failures(account.index, key),
                "tokens": round(manager.tokens.get_tokens(account.index, key), 1),
                "last_used": account.last_used or None,
                "last_switch_reason": account.last_switch_reason,
            }
        )
    return rows


def account_counters(manager: AccountManager) -> list[dict[str, Any]]:
    return [
        {
            "index": account.index,
            "label": format_account_label(account, account.index),
            "requests": account.request_count,
            "successes": account.success_count,
            "rate_limits": account.rate_limit_count,
            "failures": account.failure_count,
            "last_rate_limit_reason": account.last_rate_limit_reason,
        }
        for account in manager.accounts
    ]
