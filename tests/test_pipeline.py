from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from fastapi.responses import Response, StreamingResponse

from codex_account_proxy.accounts import AccountManager
from codex_account_proxy.clock import FakeClock
from codex_account_proxy.constants import MODEL_FAMILIES
from codex_account_proxy.gateway.fallback import UNSUPPORTED_MODEL_CODE
from codex_account_proxy.gateway.pipeline import (
    LOGIN_HINT,
    PipelineOptions,
    ProxyPipeline,
    build_upstream_headers,
    rewrite_upstream_url,
)
from codex_account_proxy.oauth.flow import TokenFailure, TokenResult, TokenSuccess
from codex_account_proxy.oauth.refresh_queue import RefreshQueue
from codex_account_proxy.storage.schemas import AccountRecord, AccountStorage
from tests.client_test_utils import ChunkStream, completed_sse, make_access_token, sse_body

NOW_MS = 1_700_000_000_000
HOUR_MS = 3_600_000
CODEX_URL = "https://chatgpt.com/backend-api/codex/responses"


@dataclass
class _Upstream:
    """MockTransport handler that records calls and replays scripted replies."""

    reply: Callable[[httpx.Request, int], httpx.Response]
    calls: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.reply(request, len(self.calls))

    @property
    def account_ids(self) -> list[str]:
        return [request.headers["chatgpt-account-id"] for request in self.calls]

    @property
    def models(self) -> list[str]:
        return [json.loads(request.content)["model"] for request in self.calls]


def _ok(_: httpx.Request, __: int) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=completed_sse())


def _rate_limited(seconds: int = 30) -> httpx.Response:
    return httpx.Response(
        429,
        headers={"retry-after": str(seconds)},
        json={"error": {"type": "usage_limit_reached", "message": "slow down"}},
    )


def _manager(count: int, clock: FakeClock, *, expires: int | None = NOW_MS + HOUR_MS) -> AccountManager:
    storage = AccountStorage(
        accounts=[
            AccountRecord(refresh_token=f"rt-{index}", account_id=f"acct-{index}", account_id_source="token")
            for index in range(count)
        ],
        active_index=0,
        active_index_by_family={family: 0 for family in MODEL_FAMILIES},
    )
    manager = AccountManager(None, storage, clock=clock)
    for account in manager.accounts:
        account.access = make_access_token(account.account_id or "")
        account.expires = expires
    return manager


def _pipeline(
    upstream: Callable[[httpx.Request], Any],
    manager: AccountManager,
    *,
    refresher: Callable[[str], Any] | None = None,
    **options: Any,
) -> ProxyPipeline:
    async def _unused_refresher(_: str) -> TokenResult:
        raise AssertionError("unexpected refresh")

    return ProxyPipeline(
        manager,
        options=PipelineOptions(**options),
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        refresh_queue=RefreshQueue(refresher or _unused_refresher, clock=manager.clock),
        clock=manager.clock,
    )


def _body(**overrides: Any) -> dict[str, Any]:
    return {
        "model": "gpt-5.2-codex",
        "input": [{"type": "message", "role": "user", "content": "fix the failing test"}],
        **overrides,
    }


def _run(pipeline: ProxyPipeline, body: dict[str, Any], **kwargs: Any) -> Response:
    async def _handle() -> Response:
        try:
            return await pipeline.handle(body, **kwargs)
        finally:
            await pipeline.client.aclose()

    return asyncio.run(_handle())


def _json(response: Response) -> Any:
    return json.loads(response.body)


@pytest.fixture(autouse=True)
def _no_jitter(monkeypatch: Any) -> None:
    monkeypatch.setattr("codex_account_proxy.gateway.pipeline.add_jitter", lambda value, factor=0.2: value)


def test_rewrite_upstream_url_keeps_suffix_and_query() -> None:
    assert rewrite_upstream_url("http://127.0.0.1:8787/v1/responses?trace=1") == f"{CODEX_URL}?trace=1"
    assert rewrite_upstream_url("http://localhost/v1/responses/resp_1/cancel") == f"{CODEX_URL}/resp_1/cancel"
    assert rewrite_upstream_url(None) == CODEX_URL
    assert rewrite_upstream_url("/responses", "https://proxy.internal:8443/api/") == (
        "https://proxy.internal:8443/api/codex/responses"
    )


def test_build_upstream_headers_replaces_credentials() -> None:
    headers = build_upstream_headers(
        {
            "Authorization": "Bearer host-key",
            "Host": "localhost",
            "Cookie": "a=b",
            "session_id": "stale",
            "X-Custom": "1",
        },
        access_token="access-1",
        account_id="acct-1",
        prompt_cache_key="thread-1",
    )

    assert headers == {
        "x-custom": "1",
        "authorization": "Bearer access-1",
        "chatgpt-account-id": "acct-1",
        "openai-beta": "responses=experimental",
        "originator": "codex_cli_rs",
        "accept": "text/event-stream",
        "content-type": "application/json",
        "session_id": "thread-1",
        "conversation_id": "thread-1",
    }


def test_success_sends_transformed_request_with_account_credentials() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(_ok)
    pipeline = _pipeline(upstream, manager)

    response = _run(
        pipeline,
        _body(prompt_cache_key="thread-1", stream=False),
        incoming_headers={"authorization": "Bearer host-key", "x-client": "host"},
        url="http://127.0.0.1:8787/v1/responses",
    )
    request = upstream.calls[0]
    sent = json.loads(request.content)

    assert response.status_code == 200
    assert _json(response)["id"] == "resp_1"
    assert str(request.url) == CODEX_URL
    assert request.headers["authorization"] == f"Bearer {manager.accounts[0].access}"
    assert request.headers["chatgpt-account-id"] == "acct-0"
    assert request.headers["session_id"] == "thread-1"
    assert request.headers["x-client"] == "host"
    assert (sent["store"], sent["stream"], sent["model"]) == (False, True, "gpt-5.2-codex")
    assert "reasoning.encrypted_content" in sent["include"]
    assert pipeline.metrics.successful_requests == 1
    assert manager.accounts[0].success_count == 1


def test_rate_limit_rotates_to_next_account() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(lambda request, call: _rate_limited(30) if call == 1 else _ok(request, call))
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert upstream.account_ids == ["acct-0", "acct-1"]
    assert manager.is_rate_limited(manager.accounts[0], "gpt-5-codex", "gpt-5.2-codex")
    assert manager.accounts[0].last_rate_limit_reason == "quota"
    assert pipeline.metrics.rate_limited_responses == 1
    assert pipeline.metrics.account_rotations == 1
    assert pipeline.metrics.account_switches == {"rotation": 1}
    assert clock.sleeps == []


def test_short_rate_limit_retries_the_only_account() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        if call == 1:
            return httpx.Response(429, headers={"retry-after-ms": "1000"})
        return _ok(request, call)

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert upstream.account_ids == ["acct-0", "acct-0"]
    assert clock.sleeps == [1.0]


def test_all_rate_limited_pool_waits_for_earliest_reset() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(lambda request, call: _rate_limited(10) if call <= 2 else _ok(request, call))
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert len(upstream.calls) == 3
    assert clock.sleeps == [10.0]
    assert pipeline.metrics.all_rate_limited_waits == 1


def test_all_rate_limited_without_waiting_returns_429() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(lambda request, call: _rate_limited(30))
    pipeline = _pipeline(upstream, manager, retry_all_rate_limited=False)

    response = _run(pipeline, _body())
    payload = _json(response)

    assert response.status_code == 429
    assert response.headers["retry-after"] == "30"
    assert payload["error"]["code"] == "all_accounts_rate_limited"
    assert payload["error"]["retry_after_ms"] == 30_000
    assert "2 account(s)" in payload["error"]["message"]


def test_unsupported_model_falls_back_to_next_model() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        model = json.loads(request.content)["model"]
        if model == "gpt-5.3-codex":
            return httpx.Response(
                400,
                json={
                    "error": {
                        "code": UNSUPPORTED_MODEL_CODE,
                        "message": "The 'gpt-5.3-codex' model is not supported when using Codex with a ChatGPT account.",
                    }
                },
            )
        return _ok(request, call)

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body(model="gpt-5.3-codex"))

    assert response.status_code == 200
    assert upstream.models == ["gpt-5.3-codex", "gpt-5.2-codex"]
    assert pipeline.metrics.model_fallbacks == 1


def test_unsupported_model_without_fallback_is_reported() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(
        lambda request, call: httpx.Response(
            400, json={"error": {"code": UNSUPPORTED_MODEL_CODE, "message": "not for you"}}
        )
    )
    pipeline = _pipeline(upstream, manager, unsupported_model_fallback=False)

    response = _run(pipeline, _body(model="gpt-5.3-codex"))
    payload = _json(response)

    assert response.status_code == 400
    assert len(upstream.calls) == 1
    assert payload["error"]["code"] == UNSUPPORTED_MODEL_CODE
    assert payload["error"]["unsupported_model"] == "gpt-5.3-codex"


def _unsupported(model: str) -> httpx.Response:
    return httpx.Response(
        400,
        json={
            "error": {
                "code": UNSUPPORTED_MODEL_CODE,
                "message": f"The '{model}' model is not supported when using Codex with a ChatGPT account.",
            }
        },
    )


def test_fallback_cascade_retries_every_account_for_each_model() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    rejected = {("acct-1", "gpt-5.3-codex-spark"), ("acct-0", "gpt-5.3-codex")}

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        model = json.loads(request.content)["model"]
        if (request.headers["chatgpt-account-id"], model) in rejected:
            return _unsupported(model)
        if model == "gpt-5.2-codex":
            return _ok(request, call)
        return httpx.Response(500, json={"error": {"message": "backend hiccup"}})

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body(model="gpt-5.3-codex-spark"))

    assert response.status_code == 200
    assert list(zip(upstream.account_ids, upstream.models)) == [
        ("acct-0", "gpt-5.3-codex-spark"),
        ("acct-1", "gpt-5.3-codex-spark"),
        ("acct-1", "gpt-5.3-codex"),
        ("acct-0", "gpt-5.3-codex"),
        ("acct-0", "gpt-5.2-codex"),
    ]
    assert pipeline.metrics.model_fallbacks == 2


def test_fallback_skips_gated_edge_when_disabled() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        model = json.loads(request.content)["model"]
        return _unsupported(model) if model != "gpt-5-codex" else _ok(request, call)

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager, fallback_gpt53_to_gpt52=False)

    response = _run(pipeline, _body(model="gpt-5.3-codex"))

    assert response.status_code == 200
    assert upstream.models == ["gpt-5.3-codex", "gpt-5-codex"]


def test_unsupported_model_text_on_server_error_does_not_fall_back() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)
    upstream = _Upstream(
        lambda request, call: httpx.Response(
            500, json={"error": {"code": UNSUPPORTED_MODEL_CODE, "message": "not supported right now"}}
        )
    )
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body(model="gpt-5.3-codex"))

    assert response.status_code == 500
    assert upstream.models == ["gpt-5.3-codex"]
    assert pipeline.metrics.model_fallbacks == 0
    assert pipeline.metrics.server_errors == 1


def test_parallel_rate_limits_on_one_account_count_as_one_backoff_step() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)
    calls: list[httpx.Request] = []

    async def reply(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        # Yield so the second request reaches the account before the first 429 lands.
        await asyncio.sleep(0)
        return _rate_limited(10)

    pipeline = _pipeline(reply, manager, retry_all_rate_limited=False)

    async def _both() -> list[Response]:
        try:
            return list(await asyncio.gather(pipeline.handle(_body()), pipeline.handle(_body())))
        finally:
            await pipeline.client.aclose()

    responses = asyncio.run(_both())

    assert len(calls) == 2
    assert [response.status_code for response in responses] == [429, 429]
    assert [response.headers["retry-after"] for response in responses] == ["10", "10"]
    reset_times = manager.accounts[0].rate_limit_reset_times
    assert reset_times["gpt-5-codex:gpt-5.2-codex"] == NOW_MS + 10_000
    assert pipeline.metrics.rate_limited_responses == 2


class _AbortingClock(FakeClock):
    """Sets the abort event on the first sleep, then never wakes up."""

    def __init__(self, abort: asyncio.Event) -> None:
        super().__init__(NOW_MS)
        self.abort = abort

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.abort.set()
        await asyncio.Event().wait()


def test_caller_disconnect_during_pool_wait_stops_retrying() -> None:
    abort = asyncio.Event()
    clock = _AbortingClock(abort)
    manager = _manager(2, clock)
    upstream = _Upstream(lambda request, call: _rate_limited(3600))
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body(), abort=abort)

    assert response.status_code == 499
    assert _json(response)["error"]["code"] == "client_closed_request"
    assert upstream.account_ids == ["acct-0", "acct-1"]
    assert clock.sleeps == [3600.0]
    assert pipeline.metrics.client_aborts == 1
    assert pipeline.metrics.all_rate_limited_waits == 1


def test_already_aborted_request_never_reaches_upstream() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)
    upstream = _Upstream(_ok)
    pipeline = _pipeline(upstream, manager)
    abort = asyncio.Event()
    abort.set()

    response = _run(pipeline, _body(), abort=abort)

    assert response.status_code == 499
    assert upstream.calls == []
    assert manager.tokens.get_tokens(0, "gpt-5-codex:gpt-5.2-codex") == manager.tokens.config.max_tokens
    assert pipeline.metrics.client_aborts == 1


def test_removing_an_account_shifts_pipeline_backoff_state() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    pipeline = _pipeline(_Upstream(_ok), manager)
    pipeline.rate_backoff.get_backoff(1, "gpt-5-codex", 1000)
    clock.advance(3_000)

    manager.remove_account(manager.accounts[0])
    asyncio.run(pipeline.client.aclose())

    assert pipeline.rate_backoff.get_backoff(0, "gpt-5-codex", 1000).attempt == 2
    assert pipeline.rate_backoff.get_backoff(1, "gpt-5-codex", 1000).attempt == 1


def test_entitlement_error_is_returned_without_rotation() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(
        lambda request, call: httpx.Response(404, json={"error": {"code": "usage_not_included", "message": "no"}})
    )
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 403
    assert len(upstream.calls) == 1
    assert _json(response)["error"]["code"] == "usage_not_included"
    assert not manager.is_rate_limited(manager.accounts[0], "gpt-5-codex", "gpt-5.2-codex")


def test_server_errors_rotate_then_surface_last_failure() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    upstream = _Upstream(
        lambda request, call: httpx.Response(
            500, headers={"x-request-id": f"up-{call}"}, json={"error": {"message": "upstream broke"}}
        )
    )
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())
    payload = _json(response)

    assert response.status_code == 500
    assert upstream.account_ids == ["acct-0", "acct-1"]
    assert payload["error"]["message"] == "upstream broke"
    assert payload["error"]["diagnostics"]["request_id"] == "up-2"
    assert pipeline.metrics.server_errors == 2
    assert all(account.failure_count == 1 for account in manager.accounts)


def test_network_error_cools_down_account_and_rotates() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        if request.headers["chatgpt-account-id"] == "acct-0":
            raise httpx.ConnectError("connection refused", request=request)
        return _ok(request, call)

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert manager.accounts[0].cooldown_reason == "network-error"
    assert manager.accounts[0].cooling_down_until == NOW_MS + 10_000
    assert pipeline.metrics.network_errors == 1


def test_network_errors_on_every_account_return_502() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    pipeline = _pipeline(_Upstream(reply), manager, network_cooldown_ms=0)

    response = _run(pipeline, _body())

    assert response.status_code == 502
    assert _json(response)["error"]["code"] == "network_error"


def test_unauthorized_reply_refreshes_and_retries_same_account() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    original_access = manager.accounts[0].access
    new_access = make_access_token("acct-0", email="user0@example.com")
    refreshed: list[str] = []

    async def refresher(token: str) -> TokenResult:
        refreshed.append(token)
        return TokenSuccess(access=new_access, refresh="rt-0b", expires=NOW_MS + HOUR_MS)

    upstream = _Upstream(
        lambda request, call: httpx.Response(401, json={"error": {"message": "expired"}})
        if call == 1
        else _ok(request, call)
    )
    pipeline = _pipeline(upstream, manager, refresher=refresher)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert refreshed == ["rt-0"]
    assert [request.headers["authorization"] for request in upstream.calls] == [
        f"Bearer {original_access}",
        f"Bearer {new_access}",
    ]
    assert manager.accounts[0].refresh_token == "rt-0b"
    assert manager.accounts[0].email == "user0@example.com"


def test_concurrent_requests_share_one_token_refresh() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock, expires=None)
    refreshed: list[str] = []

    async def refresher(token: str) -> TokenResult:
        refreshed.append(token)
        await asyncio.sleep(0.01)
        return TokenSuccess(access=make_access_token("acct-0"), refresh=token, expires=NOW_MS + HOUR_MS)

    upstream = _Upstream(_ok)
    pipeline = _pipeline(upstream, manager, refresher=refresher)

    async def _both() -> list[Response]:
        try:
            return list(await asyncio.gather(pipeline.handle(_body()), pipeline.handle(_body())))
        finally:
            await pipeline.client.aclose()

    responses = asyncio.run(_both())

    assert [response.status_code for response in responses] == [200, 200]
    assert refreshed == ["rt-0"]
    assert len(upstream.calls) == 2


def test_refresh_failure_reports_login_hint() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock, expires=NOW_MS - 1)

    async def refresher(_: str) -> TokenResult:
        return TokenFailure(reason="http_error", status_code=400, message="invalid_grant")

    upstream = _Upstream(_ok)
    pipeline = _pipeline(upstream, manager, refresher=refresher)

    response = _run(pipeline, _body())
    payload = _json(response)

    assert response.status_code == 401
    assert upstream.calls == []
    assert LOGIN_HINT in payload["error"]["message"]
    assert manager.accounts[0].consecutive_auth_failures == 1
    assert pipeline.metrics.auth_refresh_failures == 1


def test_empty_response_is_retried_on_same_account() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(2, clock)
    empty = sse_body({"type": "response.completed", "response": {"id": "resp_0", "object": "response"}})

    def reply(request: httpx.Request, call: int) -> httpx.Response:
        if call == 1:
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=empty)
        return _ok(request, call)

    upstream = _Upstream(reply)
    pipeline = _pipeline(upstream, manager)

    response = _run(pipeline, _body())

    assert response.status_code == 200
    assert _json(response)["id"] == "resp_1"
    assert upstream.account_ids == ["acct-0", "acct-0"]
    assert clock.sleeps == [1.0]
    assert pipeline.metrics.empty_response_retries == 1


def test_streaming_request_is_passed_through() -> None:
    clock = FakeClock(NOW_MS)
    manager = _manager(1, clock)
    body_bytes = completed_sse("streamed")
    upstream = _Upstream(
        lambda request, call: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=ChunkStream([body_bytes])
        )
    )
    pipeline = _pipeline(upstream, manager)

    async def _stream() -> tuple[Response, bytes]:
        try:
            response = await pipeline.handle(_body(stream=True))
            assert isinstance(response, StreamingResponse)
            chunks = [chunk async for chunk in response.body_iterator]
            return response, b"".join(chunk if isinstance(chunk, bytes) else chunk.encode() for chunk in chunks)
        finally:
            await pipeline.client.aclose()

    response, streamed = asyncio.run(_stream())

    assert response.status_code == 200
    assert streamed == body_bytes
    assert pipeline.metrics.successful_requests == 1


def test_no_accounts_returns_503() -> None:
    manager = AccountManager(None, None, clock=FakeClock(NOW_MS))
    pipeline = _pipeline(_Upstream(_ok), manager)

    response = _run(pipeline, _body())

    assert response.status_code == 503
    assert _json(response)["error"]["code"] == "no_accounts"
    assert LOGIN_HINT in _json(response)["error"]["message"]
