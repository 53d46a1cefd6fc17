from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from codex_account_proxy.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress authentication is enabled but misconfigured."""


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class Authenticator:
    """Guards the local `/v1` surface with static bearer keys."""

    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = set(settings.ingress_api_keys_list)

        if self.required and not self.api_keys:
            raise AuthConfigurationError(
                "Ingress auth is required, but INGRESS_API_KEYS is empty.",
            )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        token = _extract_token(request)
        if not token:
            return _unauthorized("Missing Bearer token.")

        if any(secrets.compare_digest(token, key) for key in self.api_keys):
            request.state.auth = AuthResult(method="api_key", principal="api-key-client")
            return None
        return _unauthorized("Invalid API key.")


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    api_key = request.headers.get("x-api-key", "").strip()
    return api_key or None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={"error": {"message": message, "type": "authentication_error"}},
    )
