from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from codex_account_proxy.clock import Clock
from codex_account_proxy.oauth.flow import TokenFailure, TokenResult, refresh_access_token

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_ENTRY_AGE_MS = 30_000

Refresher = Callable[[str], Awaitable[TokenResult]]


def _token_suffix(refresh_token: str) -> str:
    return refresh_token[-6:]


@dataclass(slots=True)
class _RefreshEntry:
    task: asyncio.Task[TokenResult]
    started_at: int


class RefreshQueue:
    """Coalesces concurrent refreshes of one refresh token onto a single request.

    The shared task is shielded, so a cancelled waiter never aborts a refresh
    other callers are still waiting on.
    """

    def __init__(
        self,
        refresher: Refresher | None = None,
        *,
        clock: Clock | None = None,
        max_entry_age_ms: int = DEFAULT_MAX_ENTRY_AGE_MS,
    ) -> None:
        self._refresher = refresher or refresh_access_token
        self._clock = clock or Clock()
        self._max_entry_age_ms = max_entry_age_ms
        self._pending: dict[str, _RefreshEntry] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def refresh(self, refresh_token: str) -> TokenResult:
        self._cleanup()
        entry = self._pending.get(refresh_token)
        if entry is not None:
            logger.info(
                "oauth_refresh_coalesced token_suffix=%s waiting_ms=%d",
                _token_suffix(refresh_token),
                self._clock.now_ms() - entry.started_at,
            )
        else:
            task = asyncio.ensure_future(self._execute(refresh_token))
            entry = _RefreshEntry(task=task, started_at=self._clock.now_ms())
            self._pending[refresh_token] = entry
            task.add_done_callback(lambda _done: self._release(refresh_token, entry))
        return await asyncio.shield(entry.task)

    def _release(self, refresh_token: str, entry: _RefreshEntry) -> None:
        if self._pending.get(refresh_token) is entry:
            del self._pending[refresh_token]

    async def _execute(self, refresh_token: str) -> TokenResult:
        started = self._clock.monotonic()
        logger.info("oauth_refresh_start token_suffix=%s", _token_suffix(refresh_token))
        try:
            result = await self._refresher(refresh_token)
        except Exception as exc:
            logger.error(
                "oauth_refresh_error token_suffix=%s error=%s",
                _token_suffix(refresh_token),
                exc,
            )
            return TokenFailure(
                reason="network_error",
                message=str(exc) or "Unknown error during refresh",
            )
        duration_ms = int((self._clock.monotonic() - started) * 1000)
        if result.type == "success":
            logger.info(
                "oauth_refresh_success token_suffix=%s duration_ms=%d",
                _token_suffix(refresh_token),
                duration_ms,
            )
        else:
            logger.warning(
                "oauth_refresh_failed token_suffix=%s reason=%s duration_ms=%d",
                _token_suffix(refresh_token),
                result.reason,
                duration_ms,
            )
        return result

    def _cleanup(self) -> None:
        now = self._clock.now_ms()
        stale = [
            token
            for token, entry in self._pending.items()
            if now - entry.started_at > self._max_entry_age_ms
        ]
        for token in stale:
            logger.warning("oauth_refresh_stale_entry token_suffix=%s", _token_suffix(token))
            del self._pending[token]
