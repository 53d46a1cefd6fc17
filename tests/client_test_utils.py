from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import jwt
from fastapi.testclient import TestClient

from codex_account_proxy.constants import CHATGPT_ACCOUNT_CLAIM_PATH
from codex_account_proxy.main import app
from codex_account_proxy.settings import get_settings

TEST_JWT_SECRET = "local-test-secret-with-32-bytes-minimum"


def make_jwt(claims: dict[str, Any]) -> str:
    return jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")


def make_access_token(account_id: str, email: str | None = None, **extra: Any) -> str:
    auth: dict[str, Any] = {"chatgpt_account_id": account_id}
    if email:
        auth["email"] = email
    return make_jwt({CHATGPT_ACCOUNT_CLAIM_PATH: auth, **extra})


def sse_body(*events: dict[str, Any]) -> bytes:
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    return "".join(lines).encode("utf-8")


def completed_sse(text: str = "hello", response_id: str = "resp_1") -> bytes:
    return sse_body(
        {"type": "response.output_text.delta", "delta": text},
        {
            "type": "response.completed",
            "response": {
                "id": response_id,
                "object": "response",
                "status": "completed",
                "output": [
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": text}],
                    }
                ],
            },
        },
    )


class ChunkStream(httpx.AsyncByteStream):
    """Async body for streamed upstream replies; optionally stalls after the chunks."""

    def __init__(self, chunks: list[bytes], *, stall_seconds: float = 0.0) -> None:
        self.chunks = chunks
        self.stall_seconds = stall_seconds
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        if self.stall_seconds:
            await asyncio.sleep(self.stall_seconds)

    async def aclose(self) -> None:
        self.closed = True


def set_default_test_env(monkeypatch: Any, config_dir: Any) -> None:
    monkeypatch.setenv("CODEX_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("INGRESS_AUTH_REQUIRED", "false")


def build_test_client(monkeypatch: Any, config_dir: Any, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch, config_dir)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)
