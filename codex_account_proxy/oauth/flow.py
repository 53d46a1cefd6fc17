from __future__ import annotations

import base64
import contextlib
import hashlib
import logging
import secrets
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from codex_account_proxy.clock import Clock
from codex_account_proxy.constants import (
    CHATGPT_AUTHORIZE_URL,
    CHATGPT_CLIENT_ID,
    CHATGPT_ORIGINATOR,
    CHATGPT_REDIRECT_URI,
    CHATGPT_SCOPE,
    CHATGPT_TOKEN_URL,
)

logger = logging.getLogger("uvicorn.error")

TOKEN_REQUEST_TIMEOUT_SECONDS = 30.0

FailureReason = Literal["http_error", "invalid_response", "missing_refresh", "network_error"]


class OAuthFlowError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class AuthorizationFlow:
    verifier: str
    challenge: str
    state: str
    url: str
    redirect_uri: str = CHATGPT_REDIRECT_URI


@dataclass(slots=True, frozen=True)
class TokenSuccess:
    access: str
    refresh: str
    expires: int
    id_token: str | None = None
    multi_account: bool = True
    type: Literal["success"] = "success"


@dataclass(slots=True, frozen=True)
class TokenFailure:
    reason: FailureReason
    status_code: int | None = None
    message: str | None = None
    type: Literal["failed"] = "failed"


TokenResult = TokenSuccess | TokenFailure

_INVALID_REFRESH_MARKERS = ("invalid_grant", "invalid refresh", "token has been revoked")


def is_flaggable_failure(failure: TokenFailure) -> bool:
    """True when the refresh token itself is dead, not when the call merely failed."""
    if failure.reason == "missing_refresh" or failure.status_code == 401:
        return True
    if failure.status_code != 400:
        return False
    message = (failure.message or "").lower()
    return any(marker in message for marker in _INVALID_REFRESH_MARKERS)


@dataclass(slots=True, frozen=True)
class ParsedAuthInput:
    code: str | None = None
    state: str | None = None


class OAuthTokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str
    expires_in: float
    refresh_token: str | None = None
    id_token: str | None = None


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_pkce() -> tuple[str, str]:
    verifier = _base64url(secrets.token_bytes(32))
    challenge = _base64url(hashlib.sha256(verifier.encode("utf-8")).digest())
    return verifier, challenge


def create_state() -> str:
    return secrets.token_hex(16)


def create_authorization_flow(*, force_new_login: bool = False) -> AuthorizationFlow:
    verifier, challenge = generate_pkce()
    state = create_state()
    params = {
        "response_type": "code",
        "client_id": CHATGPT_CLIENT_ID,
        "redirect_uri": CHATGPT_REDIRECT_URI,
        "scope": CHATGPT_SCOPE,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
        "id_token_add_organizations": "true",
        "codex_cli_simplified_flow": "true",
        "originator": CHATGPT_ORIGINATOR,
    }
    if force_new_login:
        params["prompt"] = "login"
    return AuthorizationFlow(
        verifier=verifier,
        challenge=challenge,
        state=state,
        url=f"{CHATGPT_AUTHORIZE_URL}?{urlencode(params)}",
    )


def _first_query_param(params: dict[str, list[str]], key: str) -> str | None:
    values = params.get(key)
    if not values:
        return None
    first = values[0].strip()
    return first or None


def parse_authorization_input(value: str | None) -> ParsedAuthInput:
    """Accept a callback URL, `code#state`, a `code=...&state=...` query or a bare code.

    A URL with no OAuth parameters yields an empty result rather than being
    reread as `code#state`.
    """
    raw = (value or "").strip()
    if not raw:
        return ParsedAuthInput()

    parsed = urlparse(raw)
    if parsed.scheme and parsed.netloc:
        params = parse_qs(parsed.query)
        code = _first_query_param(params, "code")
        state = _first_query_param(params, "state")
        if parsed.fragment and (not code or not state):
            fragment = parse_qs(parsed.fragment)
            code = code or _first_query_param(fragment, "code")
            state = state or _first_query_param(fragment, "state")
        if code or state:
            return ParsedAuthInput(code=code, state=state)
        return ParsedAuthInput()

    if "#" in raw:
        code, state = raw.split("#", 1)
        return ParsedAuthInput(code=code.strip() or None, state=state.strip() or None)

    if "code=" in raw:
        params = parse_qs(raw)
        return ParsedAuthInput(
            code=_first_query_param(params, "code"),
            state=_first_query_param(params, "state"),
        )

    return ParsedAuthInput(code=raw)


def validate_pasted_input(flow: AuthorizationFlow, value: str | None) -> ParsedAuthInput | TokenFailure:
    parsed = parse_authorization_input(value)
    if not parsed.code or not parsed.state:
        return TokenFailure(
            reason="invalid_response",
            message="Missing authorization code or OAuth state",
        )
    if parsed.state != flow.state:
        return TokenFailure(
            reason="invalid_response",
            message="OAuth state mismatch. Restart login and try again.",
        )
    return parsed


@contextlib.asynccontextmanager
async def _token_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT_SECONDS) as owned:
        yield owned


async def _post_token_form(
    data: dict[str, str], client: httpx.AsyncClient | None
) -> httpx.Response | TokenFailure:
    try:
        async with _token_client(client) as http:
            response = await http.post(
                CHATGPT_TOKEN_URL,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
    except httpx.RequestError as exc:
        message = str(exc) or exc.__class__.__name__
        logger.warning("oauth_token_network_error grant_type=%s error=%s", data.get("grant_type"), message)
        return TokenFailure(reason="network_error", message=message)

    if response.status_code < 200 or response.status_code >= 300:
        logger.warning(
            "oauth_token_http_error grant_type=%s status=%d",
            data.get("grant_type"),
            response.status_code,
        )
        return TokenFailure(
            reason="http_error",
            status_code=response.status_code,
            message=response.text or None,
        )
    return response


def _parse_token_response(response: httpx.Response) -> OAuthTokenResponse | None:
    try:
        return OAuthTokenResponse.model_validate(response.json())
    except (ValueError, ValidationError):
        logger.warning("oauth_token_invalid_response status=%d", response.status_code)
        return None


async def exchange_authorization_code(
    code: str,
    verifier: str,
    *,
    redirect_uri: str = CHATGPT_REDIRECT_URI,
    client: httpx.AsyncClient | None = None,
    clock: Clock | None = None,
) -> TokenResult:
    response = await _post_token_form(
        {
            "grant_type": "authorization_code",
            "client_id": CHATGPT_CLIENT_ID,
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
        },
        client,
    )
    if isinstance(response, TokenFailure):
        return response
    body = _parse_token_response(response)
    if body is None:
        return TokenFailure(reason="invalid_response", message="Response failed schema validation")
    now_ms = (clock or Clock()).now_ms()
    return TokenSuccess(
        access=body.access_token,
        refresh=body.refresh_token or "",
        expires=now_ms + int(body.expires_in * 1000),
        id_token=body.id_token,
    )


async def refresh_access_token(
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    clock: Clock | None = None,
) -> TokenResult:
    response = await _post_token_form(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": CHATGPT_CLIENT_ID,
        },
        client,
    )
    if isinstance(response, TokenFailure):
        return response
    body = _parse_token_response(response)
    if body is None:
        return TokenFailure(reason="invalid_response", message="Response failed schema validation")

    next_refresh = body.refresh_token or refresh_token
    if not next_refresh:
        return TokenFailure(
            reason="missing_refresh", message="No refresh token in response or input"
        )
    now_ms = (clock or Clock()).now_ms()
    return TokenSuccess(
        access=body.access_token,
        refresh=next_refresh,
        expires=now_ms + int(body.expires_in * 1000),
        id_token=body.id_token,
    )
