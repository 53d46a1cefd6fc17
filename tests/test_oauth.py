from __future__ import annotations

import asyncio
import base64
import hashlib
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from codex_account_proxy.clock import FakeClock
from codex_account_proxy.constants import CHATGPT_CLIENT_ID, CHATGPT_REDIRECT_URI, CHATGPT_TOKEN_URL
from codex_account_proxy.oauth.flow import (
    ParsedAuthInput,
    TokenFailure,
    TokenResult,
    TokenSuccess,
    create_authorization_flow,
    exchange_authorization_code,
    parse_authorization_input,
    refresh_access_token,
    validate_pasted_input,
)
from codex_account_proxy.oauth.refresh_queue import RefreshQueue
from codex_account_proxy.oauth.server import LoopbackCallbackReceiver

NOW_MS = 1_700_000_000_000


def _client(handler: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}


def test_authorization_flow_builds_pkce_url() -> None:
    flow = create_authorization_flow()
    params = {key: values[0] for key, values in parse_qs(urlparse(flow.url).query).items()}
    expected_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(flow.verifier.encode("ascii")).digest())
        .decode("ascii")
        .rstrip("=")
    )

    assert flow.url.startswith("https://auth.openai.com/oauth/authorize?")
    assert params["response_type"] == "code"
    assert params["client_id"] == CHATGPT_CLIENT_ID
    assert params["redirect_uri"] == CHATGPT_REDIRECT_URI
    assert params["scope"] == "openid profile email offline_access"
    assert params["code_challenge_method"] == "S256"
    assert params["code_challenge"] == expected_challenge == flow.challenge
    assert params["state"] == flow.state
    assert len(flow.state) == 32
    assert params["id_token_add_organizations"] == "true"
    assert params["codex_cli_simplified_flow"] == "true"
    assert params["originator"] == "codex_cli_rs"
    assert "prompt" not in params


def test_forced_login_adds_prompt_and_fresh_state() -> None:
    first = create_authorization_flow(force_new_login=True)
    second = create_authorization_flow(force_new_login=True)

    assert "prompt=login" in first.url
    assert first.state != second.state
    assert first.verifier != second.verifier


def test_parse_authorization_input_variants() -> None:
    assert parse_authorization_input(
        "http://127.0.0.1:1455/auth/callback?code=abc&state=xyz"
    ) == ParsedAuthInput(code="abc", state="xyz")
    assert parse_authorization_input(
        "http://127.0.0.1:1455/auth/callback#code=abc&state=xyz"
    ) == ParsedAuthInput(code="abc", state="xyz")
    assert parse_authorization_input("abc#xyz") == ParsedAuthInput(code="abc", state="xyz")
    assert parse_authorization_input("code=abc&state=xyz") == ParsedAuthInput(code="abc", state="xyz")
    assert parse_authorization_input("abc") == ParsedAuthInput(code="abc")
    assert parse_authorization_input("https://example.com/done") == ParsedAuthInput()
    assert parse_authorization_input("   ") == ParsedAuthInput()


def test_validate_pasted_input_checks_state() -> None:
    flow = create_authorization_flow()

    ok = validate_pasted_input(flow, f"abc#{flow.state}")
    mismatch = validate_pasted_input(flow, "abc#other")
    missing = validate_pasted_input(flow, "abc")

    assert ok == ParsedAuthInput(code="abc", state=flow.state)
    assert isinstance(mismatch, TokenFailure)
    assert "state mismatch" in (mismatch.message or "")
    assert isinstance(missing, TokenFailure)


def test_exchange_authorization_code_posts_form_and_computes_expiry() -> None:
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == CHATGPT_TOKEN_URL
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        seen.append(_form(request))
        return httpx.Response(
            200,
            json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "id_token": "it"},
        )

    async def _run() -> TokenResult:
        async with _client(handler) as client:
            return await exchange_authorization_code(
                "code-1", "verifier-1", client=client, clock=FakeClock(NOW_MS)
            )

    result = asyncio.run(_run())

    assert result == TokenSuccess(access="at", refresh="rt", expires=NOW_MS + 3_600_000, id_token="it")
    assert seen == [
        {
            "grant_type": "authorization_code",
            "client_id": CHATGPT_CLIENT_ID,
            "code": "code-1",
            "code_verifier": "verifier-1",
            "redirect_uri": CHATGPT_REDIRECT_URI,
        }
    ]


def test_token_endpoint_failures_are_classified() -> None:
    async def _call(handler: Any) -> TokenResult:
        async with _client(handler) as client:
            return await refresh_access_token("rt-1", client=client, clock=FakeClock(NOW_MS))

    def http_error(_: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text='{"error":"invalid_grant"}')

    def bad_schema(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token": "nope"})

    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    failed = asyncio.run(_call(http_error))
    invalid = asyncio.run(_call(bad_schema))
    network = asyncio.run(_call(offline))

    assert isinstance(failed, TokenFailure)
    assert (failed.reason, failed.status_code) == ("http_error", 400)
    assert isinstance(invalid, TokenFailure) and invalid.reason == "invalid_response"
    assert isinstance(network, TokenFailure) and network.reason == "network_error"


def test_refresh_keeps_input_token_when_not_rotated() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        form = _form(request)
        assert form == {"grant_type": "refresh_token", "refresh_token": "rt-1", "client_id": CHATGPT_CLIENT_ID}
        return httpx.Response(200, json={"access_token": "at-2", "expires_in": 60})

    async def _run() -> TokenResult:
        async with _client(handler) as client:
            return await refresh_access_token("rt-1", client=client, clock=FakeClock(NOW_MS))

    result = asyncio.run(_run())

    assert isinstance(result, TokenSuccess)
    assert (result.access, result.refresh, result.expires) == ("at-2", "rt-1", NOW_MS + 60_000)


def test_refresh_queue_coalesces_concurrent_refreshes() -> None:
    calls: list[str] = []

    async def refresher(token: str) -> TokenResult:
        calls.append(token)
        await asyncio.sleep(0.01)
        return TokenSuccess(access=f"at-{len(calls)}", refresh=token, expires=NOW_MS)

    async def _run() -> tuple[list[TokenResult], int, int]:
        queue = RefreshQueue(refresher, clock=FakeClock(NOW_MS))
        pending_task = asyncio.gather(*(queue.refresh("rt-shared") for _ in range(3)), queue.refresh("rt-other"))
        await asyncio.sleep(0)
        in_flight = queue.pending_count
        results = await pending_task
        return list(results), in_flight, queue.pending_count

    results, in_flight, after = asyncio.run(_run())

    assert sorted(calls) == ["rt-other", "rt-shared"]
    assert in_flight == 2
    assert after == 0
    assert results[0] is results[1] is results[2]


def test_refresh_queue_converts_exceptions_to_failures() -> None:
    async def refresher(_: str) -> TokenResult:
        raise RuntimeError("boom")

    result = asyncio.run(RefreshQueue(refresher, clock=FakeClock(NOW_MS)).refresh("rt"))

    assert isinstance(result, TokenFailure)
    assert (result.reason, result.message) == ("network_error", "boom")


def test_refresh_queue_survives_cancelled_waiter() -> None:
    calls: list[str] = []

    async def refresher(token: str) -> TokenResult:
        calls.append(token)
        await asyncio.sleep(0.02)
        return TokenSuccess(access="at", refresh=token, expires=NOW_MS)

    async def _run() -> TokenResult:
        queue = RefreshQueue(refresher, clock=FakeClock(NOW_MS))
        impatient = asyncio.ensure_future(queue.refresh("rt"))
        patient = asyncio.ensure_future(queue.refresh("rt"))
        await asyncio.sleep(0)
        impatient.cancel()
        return await patient

    result = asyncio.run(_run())

    assert isinstance(result, TokenSuccess)
    assert calls == ["rt"]


def test_loopback_receiver_accepts_matching_state() -> None:
    with LoopbackCallbackReceiver("expected", port=0) as receiver:
        assert receiver.ready
        base = f"http://127.0.0.1:{receiver.port}"
        wrong_path = httpx.get(f"{base}/other", trust_env=False)
        wrong_state = httpx.get(f"{base}/auth/callback?code=abc&state=nope", trust_env=False)
        missing_code = httpx.get(f"{base}/auth/callback?state=expected", trust_env=False)
        ok = httpx.get(f"{base}/auth/callback?code=abc&state=expected", trust_env=False)

        code = receiver.wait_for_code(1)

    assert wrong_path.status_code == 404
    assert wrong_state.status_code == 400
    assert missing_code.status_code == 400
    assert ok.status_code == 200
    assert "Authentication successful" in ok.text
    assert code == "abc"
    assert not receiver.ready


def test_loopback_receiver_reports_busy_port() -> None:
    with LoopbackCallbackReceiver("state", port=0) as first:
        second = LoopbackCallbackReceiver("state", port=first.port)
        assert second.start() is False
        assert not second.ready
        assert second.wait_for_code(0) is None


def test_loopback_receiver_times_out_without_callback() -> None:
    with LoopbackCallbackReceiver("state", port=0) as receiver:
        assert receiver.wait_for_code(0.05, poll_interval_seconds=0.01) is None
