from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Literal, get_args

RetryProfile = Literal["conservative", "balanced", "aggressive"]
RetryBudgetClass = Literal[
    "auth_refresh",
    "network",
    "server",
    "rate_limit_short",
    "rate_limit_global",
    "empty_response",
]
RETRY_BUDGET_CLASSES: tuple[RetryBudgetClass, ...] = get_args(RetryBudgetClass)

PROFILE_LIMITS: dict[str, dict[str, int]] = {
    "conservative": {
        "auth_refresh": 2,
        "network": 2,
        "server": 2,
        "rate_limit_short": 2,
        "rate_limit_global": 1,
        "empty_response": 1,
    },
    "balanced": {
        "auth_refresh": 4,
        "network": 4,
        "server": 4,
        "rate_limit_short": 4,
        "rate_limit_global": 3,
        "empty_response": 2,
    },
    "aggressive": {
        "auth_refresh": 8,
        "network": 8,
        "server": 8,
        "rate_limit_short": 8,
        "rate_limit_global": 10,
        "empty_response": 4,
    },
}


def normalize_budget_value(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return math.floor(value)


def resolve_retry_budget_limits(
    profile: str, overrides: Mapping[str, Any] | None = None
) -> dict[str, int]:
    merged = dict(PROFILE_LIMITS.get(profile, PROFILE_LIMITS["balanced"]))
    for bucket in RETRY_BUDGET_CLASSES:
        value = normalize_budget_value((overrides or {}).get(bucket))
        if value is not None:
            merged[bucket] = value
    return merged


class RetryBudgetTracker:
    """Per-request counters; `consume` fails once a class has used its limit."""

    def __init__(self, limits: Mapping[str, int]) -> None:
        self._limits = {bucket: int(limits.get(bucket, 0)) for bucket in RETRY_BUDGET_CLASSES}
        self._used = {bucket: 0 for bucket in RETRY_BUDGET_CLASSES}

    def consume(self, bucket: RetryBudgetClass) -> bool:
        if self._used[bucket] >= self._limits[bucket]:
            return False
        self._used[bucket] += 1
        return True

    def remaining(self, bucket: RetryBudgetClass) -> int:
        return max(0, self._limits[bucket] - self._used[bucket])

    @property
    def limits(self) -> dict[str, int]:
        return dict(self._limits)

    @property
    def usage(self) -> dict[str, int]:
        return dict(self._used)
