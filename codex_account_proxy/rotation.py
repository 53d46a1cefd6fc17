from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TypeVar

from codex_account_proxy.clock import Clock

MS_PER_HOUR = 3_600_000
MS_PER_MINUTE = 60_000

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class HealthScoreConfig:
    success_delta: float = 1
    rate_limit_delta: float = -10
    failure_delta: float = -20
    max_score: float = 100
    min_score: float = 0
    passive_recovery_per_hour: float = 2


@dataclass(slots=True)
class _HealthEntry:
    score: float
    last_updated: int
    consecutive_failures: int


def _tracker_key(account_index: int, quota_key: str | None) -> str:
    return f"{account_index}:{quota_key}" if quota_key else str(account_index)


def shift_account_keys(entries: dict[str, T], removed_index: int) -> dict[str, T]:
    """Drop entries of a removed account and renumber the ones that followed it."""
    shifted: dict[str, T] = {}
    for key, value in entries.items():
        index_text, separator, rest = key.partition(":")
        index = int(index_text)
        if index == removed_index:
            continue
        if index > removed_index:
            index -= 1
        shifted[f"{index}{separator}{rest}"] = value
    return shifted


class HealthScoreTracker:
    def __init__(self, config: HealthScoreConfig | None = None, clock: Clock | None = None) -> None:
        self.config = config or HealthScoreConfig()
        self._clock = clock or Clock()
        self._entries: dict[str, _HealthEntry] = {}

    def _recovered(self, entry: _HealthEntry) -> float:
        hours = (self._clock.now_ms() - entry.last_updated) / MS_PER_HOUR
        return min(entry.score + hours * self.config.passive_recovery_per_hour, self.config.max_score)

    def get_score(self, account_index: int, quota_key: str | None = None) -> float:
        entry = self._entries.get(_tracker_key(account_index, quota_key))
        if entry is None:
            return self.config.max_score
        return self._recovered(entry)

    def get_consecutive_failures(self, account_index: int, quota_key: str | None = None) -> int:
        entry = self._entries.get(_tracker_key(account_index, quota_key))
        return entry.consecutive_failures if entry else 0

    def _apply(self, account_index: int, quota_key: str | None, delta: float, *, failed: bool) -> None:
        key = _tracker_key(account_index, quota_key)
        entry = self._entries.get(key)
        base = self._recovered(entry) if entry else self.config.max_score
        score = min(max(base + delta, self.config.min_score), self.config.max_score)
        failures = 0
        if failed:
            failures = (entry.consecutive_failures if entry else 0) + 1
        self._entries[key] = _HealthEntry(
            score=score,
            last_updated=self._clock.now_ms(),
            consecutive_failures=failures,
        )

    def record_success(self, account_index: int, quota_key: str | None = None) -> None:
        self._apply(account_index, quota_key, self.config.success_delta, failed=False)

    def record_rate_limit(self, account_index: int, quota_key: str | None = None) -> None:
        self._apply(account_index, quota_key, self.config.rate_limit_delta, failed=True)

    def record_failure(self, account_index: int, quota_key: str | None = None) -> None:
        self._apply(account_index, quota_key, self.config.failure_delta, failed=True)

    def remove_account(self, account_index: int) -> None:
        self._entries = shift_account_keys(self._entries, account_index)


@dataclass(slots=True, frozen=True)
class TokenBucketConfig:
    max_tokens: float = 50
    tokens_per_minute: float = 6
    drain_amount: float = 10


@dataclass(slots=True)
class _BucketEntry:
    tokens: float
    last_refill: int


class TokenBucketTracker:
    """Local admission hint per (account, quota key). A full bucket holds 50 tokens."""

    def __init__(self, config: TokenBucketConfig | None = None, clock: Clock | None = None) -> None:
        self.config = config or TokenBucketConfig()
        self._clock = clock or Clock()
        self._buckets: dict[str, _BucketEntry] = {}

    def _refilled(self, entry: _BucketEntry) -> float:
        minutes = (self._clock.now_ms() - entry.last_refill) / MS_PER_MINUTE
        return min(entry.tokens + minutes * self.config.tokens_per_minute, self.config.max_tokens)

    def get_tokens(self, account_index: int, quota_key: str | None = None) -> float:
        entry = self._buckets.get(_tracker_key(account_index, quota_key))
        if entry is None:
            return self.config.max_tokens
        return self._refilled(entry)

    def has_tokens(self, account_index: int, quota_key: str | None = None) -> bool:
        return self.get_tokens(account_index, quota_key) >= 1

    def try_consume(self, account_index: int, quota_key: str | None = None) -> bool:
        key = _tracker_key(account_index, quota_key)
        current = self.get_tokens(account_index, quota_key)
        if current < 1:
            return False
        self._buckets[key] = _BucketEntry(tokens=current - 1, last_refill=self._clock.now_ms())
        return True

    def refund(self, account_index: int, quota_key: str | None = None) -> None:
        key = _tracker_key(account_index, quota_key)
        if key not in self._buckets:
            return
        current = self.get_tokens(account_index, quota_key)
        self._buckets[key] = _BucketEntry(
            tokens=min(current + 1, self.config.max_tokens),
            last_refill=self._clock.now_ms(),
        )

    def drain(
        self, account_index: int, quota_key: str | None = None, amount: float | None = None
    ) -> None:
        key = _tracker_key(account_index, quota_key)
        current = self.get_tokens(account_index, quota_key)
        drain = self.config.drain_amount if amount is None else amount
        self._buckets[key] = _BucketEntry(
            tokens=max(0.0, current - drain), last_refill=self._clock.now_ms()
        )

    def remove_account(self, account_index: int) -> None:
        self._buckets = shift_account_keys(self._buckets, account_index)


@dataclass(slots=True, frozen=True)
class AccountWithMetrics:
    index: int
    is_available: bool
    last_used: int


@dataclass(slots=True, frozen=True)
class HybridSelectionConfig:
    health_weight: float = 2
    token_weight: float = 5
    freshness_weight: float = 0.1


def select_hybrid_account(
    accounts: list[AccountWithMetrics],
    health: HealthScoreTracker,
    tokens: TokenBucketTracker,
    quota_key: str | None = None,
    *,
    now_ms: int,
    config: HybridSelectionConfig | None = None,
) -> AccountWithMetrics | None:
    """Highest weighted score among available accounts; ties go to the earlier index."""
    cfg = config or HybridSelectionConfig()
    available = [account for account in accounts if account.is_available]
    if not available:
        return None
    if len(available) == 1:
        return available[0]

    best: AccountWithMetrics | None = None
    best_score = float("-inf")
    for account in available:
        hours_idle = (now_ms - account.last_used) / MS_PER_HOUR
        score = (
            health.get_score(account.index, quota_key) * cfg.health_weight
            + tokens.get_tokens(account.index, quota_key) * cfg.token_weight
            + hours_idle * cfg.freshness_weight
        )
        if score > best_score:
            best_score = score
            best = account
    return best


def add_jitter(base_ms: float, jitter_factor: float = 0.1) -> int:
    jitter = base_ms * jitter_factor * (random.random() * 2 - 1)
    return max(0, int(base_ms + jitter))

