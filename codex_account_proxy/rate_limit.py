from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

from codex_account_proxy.clock import Clock
from codex_account_proxy.rotation import shift_account_keys

RATE_LIMIT_DEDUP_WINDOW_MS = 2_000
RATE_LIMIT_STATE_RESET_MS = 120_000
MAX_BACKOFF_MS = 60_000
DEFAULT_RETRY_AFTER_MS = 60_000
RATE_LIMIT_SHORT_RETRY_THRESHOLD_MS = 5_000

_EPOCH_SECONDS_CEILING = 10_000_000_000
_RESET_AT_HEADERS = (
    "x-codex-primary-reset-at",
    "x-codex-secondary-reset-at",
    "x-ratelimit-reset",
)
_ENTITLEMENT_PATTERN = re.compile(
    r"usage_not_included|not.included.in.your.plan|subscription.does.not.include", re.IGNORECASE
)
_USAGE_LIMIT_404_PATTERN = re.compile(r"usage_limit_reached|rate_limit_exceeded|usage limit", re.IGNORECASE)
_RATE_LIMIT_PATTERN = re.compile(
    r"usage_limit_reached|rate_limit_exceeded|rate_limit|usage limit", re.IGNORECASE
)

ENTITLEMENT_MESSAGE = (
    "This model is not included in your ChatGPT subscription. "
    "Please check that your account or workspace has access to Codex models "
    "(Plus/Pro/Business/Enterprise). If you recently subscribed or switched workspaces, "
    "log in again with `codex-account-proxy login`."
)


@dataclass(slots=True, frozen=True)
class RateLimitBackoffResult:
    attempt: int
    delay_ms: int
    is_duplicate: bool


@dataclass(slots=True)
class _BackoffState:
    consecutive_429: int
    last_at: int
    quota_key: str


class RateLimitBackoff:
    """Exponential backoff per (account, quota key) with a burst dedup window.

    Hits inside the dedup window report the current attempt without advancing
    it, so a burst of parallel 429s counts once. State older than the reset
    window starts over at attempt 1.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or Clock()
        self._states: dict[str, _BackoffState] = {}

    @staticmethod
    def _key(account_index: int, quota_key: str) -> str:
        return f"{account_index}:{quota_key}"

    def get_backoff(
        self,
        account_index: int,
        quota_key: str,
        server_retry_after_ms: float | None = None,
    ) -> RateLimitBackoffResult:
        now = self._clock.now_ms()
        key = self._key(account_index, quota_key)
        previous = self._states.get(key)
        base = _normalize_delay_ms(server_retry_after_ms, 1000)

        if previous is not None and now - previous.last_at < RATE_LIMIT_DEDUP_WINDOW_MS:
            return RateLimitBackoffResult(
                attempt=previous.consecutive_429,
                delay_ms=_backoff_delay(base, previous.consecutive_429),
                is_duplicate=True,
            )

        attempt = 1
        if previous is not None and now - previous.last_at < RATE_LIMIT_STATE_RESET_MS:
            attempt = previous.consecutive_429 + 1
        self._states[key] = _BackoffState(consecutive_429=attempt, last_at=now, quota_key=quota_key)
        return RateLimitBackoffResult(
            attempt=attempt,
            delay_ms=_backoff_delay(base, attempt),
            is_duplicate=False,
        )

    def reset(self, account_index: int, quota_key: str) -> None:
        self._states.pop(self._key(account_index, quota_key), None)

    def remove_account(self, account_index: int) -> None:
        self._states = shift_account_keys(self._states, account_index)


def _normalize_delay_ms(value: float | None, fallback: int) -> int:
    if value is None or not math.isfinite(value):
        return max(0, fallback)
    return max(0, math.floor(value))


def _backoff_delay(base: int, attempt: int) -> int:
    exponential = min(base * 2 ** max(0, attempt - 1), MAX_BACKOFF_MS)
    return max(base, exponential)


@dataclass(slots=True)
class RateLimitBody:
    code: str = ""
    resets_at: float | None = None
    retry_after_ms: float | None = None


@dataclass(slots=True, frozen=True)
class RateLimitInfo:
    retry_after_ms: int
    code: str | None = None


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _error_record(body_text: str) -> dict[str, Any] | None:
    if not body_text:
        return None
    try:
        parsed = json.loads(body_text)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return {}
    error = parsed.get("error")
    return error if isinstance(error, dict) else {}


def error_code_from_body(body_text: str) -> str:
    error = _error_record(body_text) or {}
    code = error.get("code")
    if code is None:
        code = error.get("type")
    return "" if code is None else str(code)


def parse_rate_limit_body(body_text: str) -> RateLimitBody | None:
    error = _error_record(body_text)
    if error is None:
        return None
    code = error.get("code")
    if code is None:
        code = error.get("type")
    resets_at = error.get("resets_at")
    if resets_at is None:
        resets_at = error.get("reset_at")
    retry_after = error.get("retry_after_ms")
    if retry_after is None:
        retry_after = error.get("retry_after")
    return RateLimitBody(
        code="" if code is None else str(code),
        resets_at=_to_number(resets_at),
        retry_after_ms=_to_number(retry_after),
    )


def is_entitlement_error(code: str, body_text: str) -> bool:
    return bool(_ENTITLEMENT_PATTERN.search(f"{code} {body_text}"))


def entitlement_error_payload() -> dict[str, Any]:
    return {
        "error": {
            "message": ENTITLEMENT_MESSAGE,
            "type": "entitlement_error",
            "code": "usage_not_included",
        }
    }


def reclassify_status(status_code: int, body_text: str) -> int:
    """Map usage-limit 404s to 429 and entitlement 404s to 403. Other statuses pass through."""
    if status_code != 404 or not body_text:
        return status_code
    code = error_code_from_body(body_text)
    if is_entitlement_error(code, body_text):
        return 403
    if _USAGE_LIMIT_404_PATTERN.search(f"{code} {body_text}"):
        return 429
    return status_code


def _normalize_retry_after(value: float) -> int:
    if not math.isfinite(value):
        return DEFAULT_RETRY_AFTER_MS
    if 0 < value < 1000:
        return math.floor(value * 1000)
    return math.floor(value)


def _epoch_to_ms(value: float) -> float:
    return value * 1000 if value < _EPOCH_SECONDS_CEILING else value


def _parse_int_header(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if not raw:
        return None
    match = re.match(r"\s*(-?\d+)", raw)
    if match is None:
        return None
    return int(match.group(1))


def _parse_http_date_delta_ms(raw: str | None, now_ms: int) -> int | None:
    if not raw:
        return None
    try:
        retry_dt = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError):
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = int(retry_dt.timestamp() * 1000) - now_ms
    return delta if delta > 0 else None


def parse_retry_after_ms(
    headers: Mapping[str, str],
    body: RateLimitBody | None,
    *,
    now_ms: int | None = None,
) -> int | None:
    now = now_ms if now_ms is not None else int(datetime.now(timezone.utc).timestamp() * 1000)
    if body is not None and body.retry_after_ms is not None:
        return _normalize_retry_after(body.retry_after_ms)

    retry_after_ms = _parse_int_header(headers, "retry-after-ms")
    if retry_after_ms is not None and retry_after_ms > 0:
        return retry_after_ms

    retry_after = _parse_int_header(headers, "retry-after")
    if retry_after is not None and retry_after > 0:
        return retry_after * 1000
    if retry_after is None:
        http_date_delta = _parse_http_date_delta_ms(headers.get("retry-after"), now)
        if http_date_delta is not None:
            return http_date_delta

    candidates: list[float] = []
    for name in _RESET_AT_HEADERS:
        value = _parse_int_header(headers, name)
        if value is not None and value > 0:
            delta = _epoch_to_ms(value) - now
            if delta > 0:
                candidates.append(delta)
    if body is not None and body.resets_at:
        delta = _epoch_to_ms(body.resets_at) - now
        if delta > 0:
            candidates.append(delta)
    if candidates:
        return math.floor(min(candidates))
    return None


def extract_rate_limit_info(
    status_code: int,
    headers: Mapping[str, str],
    body_text: str,
    *,
    now_ms: int | None = None,
) -> RateLimitInfo | None:
    body = parse_rate_limit_body(body_text)
    code = body.code if body else ""
    if is_entitlement_error(code, body_text):
        return None
    if status_code != 429 and not _RATE_LIMIT_PATTERN.search(f"{code} {body_text}"):
        return None
    retry_after_ms = parse_retry_after_ms(headers, body, now_ms=now_ms)
    return RateLimitInfo(
        retry_after_ms=DEFAULT_RETRY_AFTER_MS if retry_after_ms is None else retry_after_ms,
        code=code or None,
    )
