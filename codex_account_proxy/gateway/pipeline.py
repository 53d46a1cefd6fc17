from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Coroutine, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar
from uuid import uuid4

import httpx
from fastapi.responses import JSONResponse, Response

from codex_account_proxy.accounts import (
    AccountManager,
    ManagedAccount,
    RateLimitReason,
    format_account_label,
    format_wait_time,
    quota_key,
)
from codex_account_proxy.clock import Clock
from codex_account_proxy.config import UserConfig
from codex_account_proxy.constants import (
    BETA_RESPONSES,
    CHATGPT_ORIGINATOR,
    CODEX_BASE_URL,
    CODEX_RESPONSES_PATH,
    HEADER_ACCOUNT_ID,
    HEADER_BETA,
    HEADER_CONVERSATION_ID,
    HEADER_ORIGINATOR,
    HEADER_SESSION_ID,
    RESPONSES_PATH,
)
from codex_account_proxy.gateway.fallback import (
    get_unsupported_model_info,
    resolve_fallback_model,
    unsupported_model_payload,
)
from codex_account_proxy.gateway.responses import (
    StreamStalledError,
    StreamTooLargeError,
    UpstreamDiagnostics,
    collect_diagnostics,
    error_json_response,
    is_empty_response,
    log_deprecation_headers,
    materialize_sse_response,
    normalize_error_payload,
    parse_error_body,
    stream_passthrough_response,
)
from codex_account_proxy.gateway.retry_budget import (
    RetryBudgetTracker,
    resolve_retry_budget_limits,
)
from codex_account_proxy.identity import extract_account_id, resolve_request_account_id
from codex_account_proxy.oauth.refresh_queue import RefreshQueue
from codex_account_proxy.rate_limit import (
    DEFAULT_RETRY_AFTER_MS,
    RATE_LIMIT_SHORT_RETRY_THRESHOLD_MS,
    RateLimitBackoff,
    entitlement_error_payload,
    error_code_from_body,
    extract_rate_limit_info,
    is_entitlement_error,
    reclassify_status,
)
from codex_account_proxy.rotation import add_jitter
from codex_account_proxy.settings import Settings
from codex_account_proxy.storage.schemas import SwitchReason
from codex_account_proxy.transform.models import get_model_family, normalize_model
from codex_account_proxy.transform.prompts import InstructionsProvider
from codex_account_proxy.transform.transformer import TransformOptions, transform_request_body

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

MIN_SHORT_RETRY_DELAY_MS = 500
EMPTY_RESPONSE_RETRY_DELAY_MS = 1_000
LOGIN_HINT = "Run `codex-account-proxy login` to add or re-authenticate an account."

_DROPPED_REQUEST_HEADERS = {
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "upgrade",
    "proxy-authorization",
    "authorization",
    "x-api-key",
    "cookie",
    "accept-encoding",
    HEADER_SESSION_ID,
    HEADER_CONVERSATION_ID,
}

AttemptOutcome = Literal["rotate", "restart"]


class CallerAbortedError(RuntimeError):
    """The host request went away; stop retrying and drop any in-flight upstream call."""


def _request_error_details(exc: Exception) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)),
    }
    try:
        request = exc.request if isinstance(exc, httpx.RequestError) else None
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def rewrite_upstream_url(url: str | httpx.URL | None, base_url: str = CODEX_BASE_URL) -> str:
    """Point a host Responses URL at the Codex endpoint.

    Host, scheme and credentials come from `base_url`; anything after the
    responses segment and the query string are kept.
    """
    base = httpx.URL(base_url.rstrip("/"))
    incoming = httpx.URL(str(url)) if url is not None else httpx.URL(RESPONSES_PATH)
    path = incoming.path or ""
    position = path.find(RESPONSES_PATH)
    suffix = path[position + len(RESPONSES_PATH) :] if position >= 0 else ""
    components: dict[str, Any] = {
        "scheme": "https",
        "host": base.host,
        "path": f"{base.path.rstrip('/')}{CODEX_RESPONSES_PATH}{suffix}",
    }
    if base.port:
        components["port"] = base.port
    if incoming.query:
        components["query"] = incoming.query
    if incoming.fragment:
        components["fragment"] = incoming.fragment
    return str(httpx.URL(**components))


def build_upstream_headers(
    incoming_headers: Mapping[str, str] | None,
    *,
    access_token: str,
    account_id: str,
    prompt_cache_key: str | None = None,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in (incoming_headers or {}).items():
        if name.lower() in _DROPPED_REQUEST_HEADERS:
            continue
        headers[name.lower()] = value

    headers["authorization"] = f"Bearer {access_token}"
    headers[HEADER_ACCOUNT_ID] = account_id
    headers[HEADER_BETA.lower()] = BETA_RESPONSES
    headers[HEADER_ORIGINATOR] = CHATGPT_ORIGINATOR
    headers["accept"] = "text/event-stream"
    headers["content-type"] = "application/json"
    if prompt_cache_key:
        headers[HEADER_SESSION_ID] = prompt_cache_key
        headers[HEADER_CONVERSATION_ID] = prompt_cache_key
    return headers


def _rate_limit_reason(code: str | None) -> RateLimitReason:
    normalized = (code or "").lower()
    if "concurrent" in normalized:
        return "concurrent"
    if "token" in normalized:
        return "tokens"
    if "usage" in normalized or "quota" in normalized:
        return "quota"
    return "unknown"


@dataclass(slots=True, frozen=True)
class PipelineOptions:
    base_url: str = CODEX_BASE_URL
    token_refresh_skew_ms: int = 60_000
    toast_debounce_ms: int = 60_000
    fetch_timeout_ms: int = 600_000
    stream_stall_timeout_ms: int | None = 45_000
    retry_all_rate_limited: bool = True
    retry_all_max_wait_ms: int = 0
    retry_all_max_retries: int = 3
    retry_limits: dict[str, int] = field(default_factory=lambda: resolve_retry_budget_limits("balanced"))
    unsupported_model_fallback: bool = True
    fallback_gpt53_to_gpt52: bool = True
    network_cooldown_ms: int = 10_000
    transform: TransformOptions = field(default_factory=TransformOptions)

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineOptions:
        return cls(
            base_url=settings.codex_base_url,
            token_refresh_skew_ms=max(0, settings.codex_auth_token_refresh_skew_ms),
            toast_debounce_ms=max(0, settings.codex_auth_rate_limit_toast_debounce_ms),
            fetch_timeout_ms=max(1_000, settings.codex_auth_fetch_timeout_ms),
            stream_stall_timeout_ms=(
                settings.codex_auth_stream_stall_timeout_ms
                if settings.codex_auth_stream_stall_enabled
                else None
            ),
            retry_all_rate_limited=settings.codex_auth_retry_all_rate_limited,
            retry_all_max_wait_ms=max(0, settings.codex_auth_retry_all_max_wait_ms),
            retry_all_max_retries=max(0, settings.codex_auth_retry_all_max_retries),
            retry_limits=resolve_retry_budget_limits(
                settings.codex_auth_retry_profile, settings.retry_budget_overrides
            ),
            unsupported_model_fallback=settings.codex_auth_unsupported_model_fallback,
            fallback_gpt53_to_gpt52=settings.codex_auth_fallback_gpt53_to_gpt52,
            network_cooldown_ms=max(0, settings.codex_auth_network_cooldown_ms),
            transform=TransformOptions(
                codex_mode=settings.codex_mode,
                fast_session=settings.codex_fast_session,
                fast_session_strategy=settings.codex_fast_session_strategy,
                fast_session_max_input_items=max(8, settings.codex_fast_session_max_input_items),
                collaboration_mode=settings.codex_collaboration_mode,
            ),
        )


@dataclass(slots=True)
class PipelineMetrics:
    total_requests: int = 0
    upstream_attempts: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_responses: int = 0
    server_errors: int = 0
    network_errors: int = 0
    auth_refresh_failures: int = 0
    account_rotations: int = 0
    empty_response_retries: int = 0
    model_fallbacks: int = 0
    all_rate_limited_waits: int = 0
    client_aborts: int = 0
    account_switches: dict[str, int] = field(default_factory=dict)
    cumulative_latency_ms: float = 0.0
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "upstream_attempts": self.upstream_attempts,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rate_limited_responses": self.rate_limited_responses,
            "server_errors": self.server_errors,
            "network_errors": self.network_errors,
            "auth_refresh_failures": self.auth_refresh_failures,
            "account_rotations": self.account_rotations,
            "empty_response_retries": self.empty_response_retries,
            "model_fallbacks": self.model_fallbacks,
            "all_rate_limited_waits": self.all_rate_limited_waits,
            "client_aborts": self.client_aborts,
            "account_switches": dict(self.account_switches),
            "average_latency_ms": (
                round(self.cumulative_latency_ms / self.successful_requests, 2)
                if self.successful_requests
                else None
            ),
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class _FailureSnapshot:
    status_code: int
    payload: dict[str, Any]
    headers: dict[str, str]
    diagnostics: UpstreamDiagnostics | None = None


@dataclass(slots=True)
class ProxyRequestContext:
    request_id: str
    source_body: dict[str, Any]
    url: str
    incoming_headers: Mapping[str, str]
    stream: bool
    budget: RetryBudgetTracker
    model: str = ""
    family: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    prompt_cache_key: str | None = None
    attempted_models: list[str] = field(default_factory=list)
    last_failure: _FailureSnapshot | None = None
    abort: asyncio.Event | None = None

    @property
    def quota_key(self) -> str:
        return quota_key(self.family, self.model)


class ProxyPipeline:
    """Runs one host request against the account pool.

    Each traversal visits every eligible account at most once. An unsupported
    model restarts the traversal with the next fallback model, and a pool that
    is entirely rate limited may be waited on before giving up.
    """

    def __init__(
        self,
        manager: AccountManager,
        *,
        options: PipelineOptions | None = None,
        client: httpx.AsyncClient | None = None,
        refresh_queue: RefreshQueue | None = None,
        rate_backoff: RateLimitBackoff | None = None,
        instructions: InstructionsProvider | None = None,
        user_config: UserConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.manager = manager
        self.options = options or PipelineOptions()
        self.clock = clock or manager.clock
        fetch_timeout = self.options.fetch_timeout_ms / 1000.0
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=fetch_timeout, connect=min(10.0, fetch_timeout)),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )
        self._owns_client = client is None
        self.refresh_queue = refresh_queue or RefreshQueue(clock=self.clock)
        self.rate_backoff = rate_backoff or RateLimitBackoff(clock=self.clock)
        self.instructions = instructions or InstructionsProvider(clock=self.clock)
        self.user_config = user_config
        self.metrics = PipelineMetrics()
        manager.on_account_removed(self.rate_backoff.remove_account)
        manager.add_observer(self)

    def notify_account_selected(self, index: int, account: ManagedAccount, reason: SwitchReason) -> None:
        self.metrics.account_switches[reason] = self.metrics.account_switches.get(reason, 0) + 1

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def handle(
        self,
        body: dict[str, Any],
        incoming_headers: Mapping[str, str] | None = None,
        *,
        url: str | httpx.URL | None = None,
        request_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> Response:
        """Proxy one request. Setting `abort` stops retries, sleeps and the in-flight upstream call."""
        ctx = self._build_context(body, incoming_headers, url=url, request_id=request_id)
        ctx.abort = abort
        self.metrics.total_requests += 1
        try:
            return await self._run(ctx)
        except CallerAbortedError:
            self.metrics.client_aborts += 1
            logger.info("proxy_caller_aborted request_id=%s model=%s", ctx.request_id, ctx.model)
            return error_json_response(
                499,
                {
                    "error": {
                        "message": "Client closed the request.",
                        "type": "client_closed_request",
                        "code": "client_closed_request",
                    }
                },
            )

    async def _run(self, ctx: ProxyRequestContext) -> Response:
        logger.info(
            "proxy_start request_id=%s model=%s family=%s stream=%s accounts=%d",
            ctx.request_id,
            ctx.model,
            ctx.family,
            ctx.stream,
            self.manager.account_count,
        )

        all_rate_limited_retries = 0
        while True:
            result = await self._traverse_accounts(ctx)
            if isinstance(result, Response):
                return result
            if result == "restart":
                continue

            wait_ms = self.manager.get_min_wait_time_for_family(ctx.family, ctx.model)
            rate_limited = self._any_rate_limited(ctx)
            if (
                self.options.retry_all_rate_limited
                and rate_limited
                and wait_ms > 0
                and (self.options.retry_all_max_wait_ms == 0 or wait_ms <= self.options.retry_all_max_wait_ms)
                and all_rate_limited_retries < self.options.retry_all_max_retries
                and ctx.budget.consume("rate_limit_global")
            ):
                all_rate_limited_retries += 1
                self.metrics.all_rate_limited_waits += 1
                delay_ms = add_jitter(wait_ms, 0.2)
                logger.warning(
                    "proxy_all_accounts_rate_limited request_id=%s accounts=%d wait_ms=%d retry=%d",
                    ctx.request_id,
                    self.manager.account_count,
                    delay_ms,
                    all_rate_limited_retries,
                )
                await self._sleep(ctx, delay_ms / 1000)
                continue
            return self._exhausted_response(ctx, wait_ms, rate_limited)

    @staticmethod
    def _raise_if_aborted(ctx: ProxyRequestContext) -> None:
        if ctx.abort is not None and ctx.abort.is_set():
            raise CallerAbortedError(ctx.request_id)

    async def _until_aborted(self, ctx: ProxyRequestContext, operation: Coroutine[Any, Any, T]) -> T:
        """Await `operation`, cancelling it if the caller aborts first."""
        if ctx.abort is None:
            return await operation
        if ctx.abort.is_set():
            operation.close()
            raise CallerAbortedError(ctx.request_id)

        task = asyncio.ensure_future(operation)
        waiter = asyncio.ensure_future(ctx.abort.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise CallerAbortedError(ctx.request_id)
        return task.result()

    async def _sleep(self, ctx: ProxyRequestContext, seconds: float) -> None:
        await self._until_aborted(ctx, self.clock.sleep(seconds))

    def _build_context(
        self,
        body: dict[str, Any],
        incoming_headers: Mapping[str, str] | None,
        *,
        url: str | httpx.URL | None,
        request_id: str | None,
    ) -> ProxyRequestContext:
        cache_key = body.get("prompt_cache_key")
        ctx = ProxyRequestContext(
            request_id=request_id or uuid4().hex[:12],
            source_body=dict(body),
            url=rewrite_upstream_url(url, self.options.base_url),
            incoming_headers=incoming_headers or {},
            stream=body.get("stream") is True,
            budget=RetryBudgetTracker(self.options.retry_limits),
            prompt_cache_key=cache_key.strip() if isinstance(cache_key, str) and cache_key.strip() else None,
        )
        self._prepare_payload(ctx)
        ctx.attempted_models.append(ctx.model)
        return ctx

    def _prepare_payload(self, ctx: ProxyRequestContext) -> None:
        normalized = normalize_model(ctx.source_body.get("model"))
        ctx.payload = transform_request_body(
            ctx.source_body,
            self.instructions.get_instructions(normalized),
            self.user_config,
            self.options.transform,
            host_prompt=self.instructions.get_host_prompt(),
        )
        ctx.model = ctx.payload["model"]
        ctx.family = get_model_family(ctx.model)

    def _switch_model(self, ctx: ProxyRequestContext, model: str) -> None:
        previous = ctx.model
        ctx.source_body = {**ctx.source_body, "model": model}
        self._prepare_payload(ctx)
        ctx.attempted_models.append(ctx.model)
        self.metrics.model_fallbacks += 1
        logger.warning(
            "proxy_model_fallback request_id=%s from=%s to=%s hop=%d",
            ctx.request_id,
            previous,
            ctx.model,
            len(ctx.attempted_models) - 1,
        )

    def _any_rate_limited(self, ctx: ProxyRequestContext) -> bool:
        return any(
            self.manager.is_rate_limited(account, ctx.family, ctx.model)
            for account in self.manager.accounts
        )

    def _has_other_eligible(self, ctx: ProxyRequestContext, attempted: set[int]) -> bool:
        return any(
            account.index not in attempted and self.manager.is_eligible(account, ctx.family, ctx.model)
            for account in self.manager.accounts
        )

    async def _traverse_accounts(self, ctx: ProxyRequestContext) -> Response | AttemptOutcome | None:
        attempted: set[int] = set()
        while len(attempted) < self.manager.account_count:
            account = self.manager.select_account(ctx.family, ctx.model, exclude=attempted)
            if account is None:
                break
            attempted.add(account.index)
            result = await self._attempt_account(ctx, account, attempted)
            if result == "rotate":
                self.metrics.account_rotations += 1
                continue
            return result
        return None

    async def _ensure_access(self, ctx: ProxyRequestContext, account: ManagedAccount, *, force: bool = False) -> bool:
        now = self.clock.now_ms()
        if (
            not force
            and account.access
            and account.expires is not None
            and account.expires - self.options.token_refresh_skew_ms > now
        ):
            return True

        result = await self.refresh_queue.refresh(account.refresh_token)
        if result.type == "success":
            self.manager.update_from_auth(account, result)
            self.manager.clear_auth_failures(account)
            return True

        self.metrics.auth_refresh_failures += 1
        self.metrics.last_error = result.message or result.reason
        failures = self.manager.increment_auth_failures(account)
        logger.warning(
            "proxy_auth_refresh_failed request_id=%s account=%s reason=%s failures=%d",
            ctx.request_id,
            format_account_label(account, account.index),
            result.reason,
            failures,
        )
        ctx.last_failure = _FailureSnapshot(
            status_code=401,
            payload={
                "error": {
                    "message": f"Token refresh failed for {format_account_label(account, account.index)}. {LOGIN_HINT}",
                    "type": "authentication_error",
                    "code": result.reason,
                }
            },
            headers={},
        )
        return False

    def _announce_account(self, ctx: ProxyRequestContext, account: ManagedAccount) -> None:
        count = self.manager.account_count
        if count <= 1 or not self.manager.should_show_account_toast(account.index, self.options.toast_debounce_ms):
            return
        logger.info(
            "account_switched request_id=%s account=%s position=%d/%d family=%s",
            ctx.request_id,
            format_account_label(account, account.index),
            account.index + 1,
            count,
            ctx.family,
        )
        self.manager.mark_toast_shown(account.index)

    async def _attempt_account(
        self, ctx: ProxyRequestContext, account: ManagedAccount, attempted: set[int]
    ) -> Response | AttemptOutcome:
        if not await self._ensure_access(ctx, account):
            return "rotate"

        account_id = resolve_request_account_id(
            account.account_id, account.account_id_source, extract_account_id(account.access)
        )
        if not account_id:
            logger.warning(
                "proxy_account_id_missing request_id=%s account=%s",
                ctx.request_id,
                format_account_label(account, account.index),
            )
            self.manager.mark_account_cooling_down(
                account, self.manager.auth_failure_cooldown_ms, "auth-failure"
            )
            return "rotate"
        if not account.account_id:
            account.account_id = account_id
            account.account_id_source = account.account_id_source or "token"

        self._announce_account(ctx, account)

        if not self.manager.consume_token(account, ctx.family, ctx.model):
            self.manager.health.record_rate_limit(account.index, ctx.quota_key)
            logger.warning(
                "proxy_token_bucket_empty request_id=%s account=%s quota_key=%s",
                ctx.request_id,
                format_account_label(account, account.index),
                ctx.quota_key,
            )
            return "rotate"

        while True:
            started = time.perf_counter()
            try:
                upstream = await self._send(ctx, account, account_id)
            except CallerAbortedError:
                self.manager.refund_token(account, ctx.family, ctx.model)
                raise
            if upstream is None:
                self.manager.refund_token(account, ctx.family, ctx.model)
                self.manager.record_failure(account, ctx.family, ctx.model)
                if self.options.network_cooldown_ms:
                    self.manager.mark_account_cooling_down(
                        account, self.options.network_cooldown_ms, "network-error"
                    )
                if not ctx.budget.consume("network"):
                    return self._budget_exhausted_response(ctx, "network")
                return "rotate"

            status = upstream.status_code
            if 200 <= status < 300:
                latency_ms = (time.perf_counter() - started) * 1000.0
                outcome = await self._handle_success(ctx, account, upstream, latency_ms)
                if outcome is None:
                    continue
                return outcome

            body_text = await self._read_error_body(upstream)
            status = reclassify_status(status, body_text)
            diagnostics = collect_diagnostics(
                upstream.headers,
                status_code=status,
                correlation_id=ctx.request_id,
                thread_id=ctx.prompt_cache_key,
            )
            error_body = parse_error_body(body_text)
            logger.warning(
                "proxy_upstream_error request_id=%s account=%s model=%s status=%d upstream_status=%d",
                ctx.request_id,
                format_account_label(account, account.index),
                ctx.model,
                status,
                upstream.status_code,
            )

            if status == 403 and is_entitlement_error(error_code_from_body(body_text), body_text):
                self.manager.refund_token(account, ctx.family, ctx.model)
                self.metrics.failed_requests += 1
                self.metrics.last_error = "entitlement_error"
                return error_json_response(403, entitlement_error_payload(), diagnostics=diagnostics)

            unsupported = get_unsupported_model_info(error_body) if status == 400 else None
            if unsupported is not None and unsupported.is_unsupported:
                self.manager.refund_token(account, ctx.family, ctx.model)
                fallback = resolve_fallback_model(
                    ctx.model,
                    error_body,
                    attempted_models=ctx.attempted_models,
                    enabled=self.options.unsupported_model_fallback,
                    allow_gpt53_to_gpt52=self.options.fallback_gpt53_to_gpt52,
                )
                if fallback is not None:
                    self._switch_model(ctx, fallback)
                    return "restart"
                self.metrics.failed_requests += 1
                self.metrics.last_error = f"unsupported model {unsupported.unsupported_model or ctx.model}"
                return error_json_response(
                    400,
                    unsupported_model_payload(
                        unsupported.unsupported_model or ctx.model,
                        upstream_message=unsupported.message,
                    ),
                    diagnostics=diagnostics,
                )

            if status == 429:
                retry_same = await self._handle_rate_limit(
                    ctx, account, upstream.headers, body_text, attempted
                )
                if retry_same:
                    continue
                return "rotate"

            if status == 401:
                self.manager.refund_token(account, ctx.family, ctx.model)
                ctx.last_failure = self._failure_snapshot(
                    401, error_body, body_text, upstream, diagnostics, hint=LOGIN_HINT
                )
                if ctx.budget.consume("auth_refresh"):
                    account.access = None
                    if await self._ensure_access(ctx, account, force=True) and self.manager.consume_token(
                        account, ctx.family, ctx.model
                    ):
                        continue
                self.manager.record_failure(account, ctx.family, ctx.model)
                return "rotate"

            if status >= 500:
                self.metrics.server_errors += 1
                self.metrics.last_error = f"HTTP {status}"
                self.manager.refund_token(account, ctx.family, ctx.model)
                self.manager.record_failure(account, ctx.family, ctx.model)
                ctx.last_failure = self._failure_snapshot(status, error_body, body_text, upstream, diagnostics)
                if not ctx.budget.consume("server"):
                    return self._budget_exhausted_response(ctx, "server")
                return "rotate"

            self.manager.refund_token(account, ctx.family, ctx.model)
            self.metrics.failed_requests += 1
            self.metrics.last_error = f"HTTP {status}"
            return error_json_response(
                status,
                normalize_error_payload(error_body, body_text, upstream.reason_phrase),
                headers=upstream.headers,
                diagnostics=diagnostics,
            )

    async def _send(
        self, ctx: ProxyRequestContext, account: ManagedAccount, account_id: str
    ) -> httpx.Response | None:
        self._raise_if_aborted(ctx)
        headers = build_upstream_headers(
            ctx.incoming_headers,
            access_token=account.access or "",
            account_id=account_id,
            prompt_cache_key=ctx.prompt_cache_key,
        )
        request = self.client.build_request("POST", ctx.url, json=ctx.payload, headers=headers)
        account.request_count += 1
        self.metrics.upstream_attempts += 1
        logger.info(
            "proxy_attempt request_id=%s account=%s model=%s quota_key=%s",
            ctx.request_id,
            format_account_label(account, account.index),
            ctx.model,
            ctx.quota_key,
        )
        try:
            return await self._until_aborted(
                ctx,
                asyncio.wait_for(
                    self.client.send(request, stream=True),
                    timeout=self.options.fetch_timeout_ms / 1000.0,
                ),
            )
        except (httpx.RequestError, asyncio.TimeoutError) as exc:
            details = _request_error_details(exc)
            self.metrics.network_errors += 1
            self.metrics.last_error = details["error"]
            logger.warning(
                "proxy_request_error request_id=%s account=%s error_type=%s is_timeout=%s error=%s",
                ctx.request_id,
                format_account_label(account, account.index),
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            ctx.last_failure = _FailureSnapshot(
                status_code=502,
                payload={
                    "error": {
                        "message": f"Could not reach Codex backend ({details['error_type']}): {details['error']}",
                        "type": "upstream_connection_error",
                        "code": "network_error",
                    }
                },
                headers={},
            )
            return None

    @staticmethod
    async def _read_error_body(upstream: httpx.Response) -> str:
        try:
            raw = await upstream.aread()
        except httpx.HTTPError as exc:
            logger.warning("proxy_error_body_unreadable status=%d error=%s", upstream.status_code, exc)
            return ""
        finally:
            await upstream.aclose()
        return raw.decode("utf-8", errors="replace")

    async def _handle_rate_limit(
        self,
        ctx: ProxyRequestContext,
        account: ManagedAccount,
        headers: Mapping[str, str],
        body_text: str,
        attempted: set[int],
    ) -> bool:
        """Record a 429 and decide whether to retry the same account after a short sleep."""
        self.metrics.rate_limited_responses += 1
        info = extract_rate_limit_info(429, headers, body_text, now_ms=self.clock.now_ms())
        retry_after_ms = info.retry_after_ms if info else DEFAULT_RETRY_AFTER_MS
        backoff = self.rate_backoff.get_backoff(account.index, ctx.quota_key, retry_after_ms)
        delay_ms = backoff.delay_ms
        self.manager.mark_rate_limited_with_reason(
            account,
            delay_ms,
            ctx.family,
            _rate_limit_reason(info.code if info else None),
            ctx.model,
        )
        account.last_switch_reason = "rate-limit"
        self.metrics.last_error = f"rate limited for {format_wait_time(delay_ms)}"

        short_retry = (
            delay_ms <= RATE_LIMIT_SHORT_RETRY_THRESHOLD_MS
            and not self._has_other_eligible(ctx, attempted)
            and ctx.budget.consume("rate_limit_short")
        )
        logger.warning(
            "proxy_rate_limited request_id=%s account=%s quota_key=%s attempt=%d delay_ms=%d duplicate=%s action=%s",
            ctx.request_id,
            format_account_label(account, account.index),
            ctx.quota_key,
            backoff.attempt,
            delay_ms,
            backoff.is_duplicate,
            "retry_same_account" if short_retry else "rotate",
        )
        if not short_retry:
            return False
        await self._sleep(ctx, add_jitter(max(MIN_SHORT_RETRY_DELAY_MS, delay_ms), 0.2) / 1000)
        return True

    async def _handle_success(
        self,
        ctx: ProxyRequestContext,
        account: ManagedAccount,
        upstream: httpx.Response,
        latency_ms: float,
    ) -> Response | None:
        """Return the client response, or None to retry an empty reply on the same account."""
        self.rate_backoff.reset(account.index, ctx.quota_key)
        log_deprecation_headers(upstream.headers, request_id=ctx.request_id)

        if ctx.stream:
            self._record_success(ctx, account, latency_ms)
            return stream_passthrough_response(
                upstream,
                stall_timeout_ms=self.options.stream_stall_timeout_ms,
                request_id=ctx.request_id,
            )

        try:
            materialized = await materialize_sse_response(
                upstream, stall_timeout_ms=self.options.stream_stall_timeout_ms
            )
        except (StreamStalledError, StreamTooLargeError, httpx.HTTPError) as exc:
            self.manager.record_failure(account, ctx.family, ctx.model)
            self.metrics.failed_requests += 1
            self.metrics.last_error = str(exc)
            stalled = isinstance(exc, StreamStalledError)
            logger.warning(
                "proxy_stream_failed request_id=%s account=%s stalled=%s error=%s",
                ctx.request_id,
                format_account_label(account, account.index),
                stalled,
                exc,
            )
            return error_json_response(
                503 if stalled else 502,
                {
                    "error": {
                        "message": str(exc) or exc.__class__.__name__,
                        "type": "stream_stalled" if stalled else "stream_error",
                        "code": "stream_stalled" if stalled else "stream_error",
                    }
                },
                diagnostics=collect_diagnostics(
                    upstream.headers,
                    status_code=upstream.status_code,
                    correlation_id=ctx.request_id,
                    thread_id=ctx.prompt_cache_key,
                ),
            )

        if materialized.is_error:
            self.manager.record_failure(account, ctx.family, ctx.model)
            self.metrics.failed_requests += 1
            self.metrics.last_error = "stream error event"
            return materialized.to_response()

        if materialized.body is not None and is_empty_response(materialized.body):
            if ctx.budget.consume("empty_response"):
                self.metrics.empty_response_retries += 1
                self.manager.record_failure(account, ctx.family, ctx.model)
                logger.warning(
                    "proxy_empty_response_retry request_id=%s account=%s remaining=%d",
                    ctx.request_id,
                    format_account_label(account, account.index),
                    ctx.budget.remaining("empty_response"),
                )
                await self._sleep(ctx, add_jitter(EMPTY_RESPONSE_RETRY_DELAY_MS, 0.2) / 1000)
                return None
            logger.warning("proxy_empty_response_returned request_id=%s", ctx.request_id)

        self._record_success(ctx, account, latency_ms)
        return materialized.to_response()

    def _record_success(self, ctx: ProxyRequestContext, account: ManagedAccount, latency_ms: float) -> None:
        self.manager.record_success(account, ctx.family, ctx.model)
        self.metrics.successful_requests += 1
        self.metrics.cumulative_latency_ms += latency_ms
        self.metrics.last_error = None
        logger.info(
            "proxy_success request_id=%s account=%s model=%s latency_ms=%.2f",
            ctx.request_id,
            format_account_label(account, account.index),
            ctx.model,
            latency_ms,
        )

    @staticmethod
    def _failure_snapshot(
        status_code: int,
        error_body: Any,
        body_text: str,
        upstream: httpx.Response,
        diagnostics: UpstreamDiagnostics,
        *,
        hint: str | None = None,
    ) -> _FailureSnapshot:
        payload = normalize_error_payload(error_body, body_text, upstream.reason_phrase)
        if hint:
            payload["error"]["message"] = f"{payload['error']['message']} {hint}"
        return _FailureSnapshot(
            status_code=status_code,
            payload=payload,
            headers=dict(upstream.headers),
            diagnostics=diagnostics,
        )

    def _budget_exhausted_response(self, ctx: ProxyRequestContext, bucket: str) -> JSONResponse:
        self.metrics.failed_requests += 1
        logger.error(
            "proxy_retry_budget_exhausted request_id=%s bucket=%s usage=%s",
            ctx.request_id,
            bucket,
            ctx.budget.usage,
        )
        failure = ctx.last_failure
        if failure is not None:
            payload = {"error": {**failure.payload["error"], "retry_budget": bucket}}
            return error_json_response(
                failure.status_code, payload, headers=failure.headers, diagnostics=failure.diagnostics
            )
        return error_json_response(
            502,
            {
                "error": {
                    "message": f"Retry budget for {bucket} errors exhausted.",
                    "type": "retry_budget_exhausted",
                    "code": bucket,
                }
            },
        )

    def _exhausted_response(self, ctx: ProxyRequestContext, wait_ms: int, rate_limited: bool) -> JSONResponse:
        count = self.manager.account_count
        self.metrics.failed_requests += 1
        if count == 0:
            message = f"No Codex accounts configured. {LOGIN_HINT}"
            self.metrics.last_error = message
            logger.error("proxy_no_accounts request_id=%s", ctx.request_id)
            return error_json_response(
                503, {"error": {"message": message, "type": "service_unavailable", "code": "no_accounts"}}
            )

        if rate_limited and wait_ms > 0:
            message = (
                f"All {count} account(s) are rate-limited. Try again in {format_wait_time(wait_ms)} "
                "or add another account with `codex-account-proxy login`."
            )
            self.metrics.last_error = message
            logger.error(
                "proxy_all_accounts_rate_limited_exhausted request_id=%s wait_ms=%d", ctx.request_id, wait_ms
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "message": message,
                        "type": "rate_limit_error",
                        "code": "all_accounts_rate_limited",
                        "retry_after_ms": wait_ms,
                    }
                },
                headers={"retry-after": str(max(1, math.ceil(wait_ms / 1000)))},
            )

        failure = ctx.last_failure
        if failure is not None:
            self.metrics.last_error = failure.payload["error"].get("message")
            logger.error(
                "proxy_accounts_exhausted request_id=%s last_status=%d", ctx.request_id, failure.status_code
            )
            return error_json_response(
                failure.status_code, failure.payload, headers=failure.headers, diagnostics=failure.diagnostics
            )

        if wait_ms > 0:
            message = (
                f"No eligible Codex accounts. The next account becomes available in {format_wait_time(wait_ms)}."
            )
        else:
            message = (
                f"All {count} account(s) failed (server errors or auth issues). "
                "Check account health with `codex-account-proxy health`."
            )
        self.metrics.last_error = message
        logger.error("proxy_no_eligible_accounts request_id=%s wait_ms=%d", ctx.request_id, wait_ms)
        payload: dict[str, Any] = {
            "error": {"message": message, "type": "service_unavailable", "code": "no_eligible_accounts"}
        }
        if wait_ms > 0:
            payload["error"]["retry_after_ms"] = wait_ms
        return error_json_response(503, payload)
