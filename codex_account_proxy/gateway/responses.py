from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

logger = logging.getLogger("uvicorn.error")

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

SSE_CONTENT_TYPE = "text/event-stream; charset=utf-8"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
MAX_SSE_BYTES = 10 * 1024 * 1024
MIN_STALL_TIMEOUT_MS = 1_000
STREAM_ERROR_CODE = "stream_error"

_TERMINAL_SUCCESS_EVENTS = ("response.done", "response.completed")
_TERMINAL_FAILURE_EVENTS = ("response.failed", "response.incomplete")
_ERROR_EVENTS = ("error", "response.error")


class StreamStalledError(RuntimeError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"SSE stream stalled for {timeout_ms}ms while waiting for response.done")
        self.timeout_ms = timeout_ms


class StreamTooLargeError(RuntimeError):
    pass


@dataclass(slots=True)
class StreamError:
    message: str
    type: str | None = None
    code: str | int | None = None


@dataclass(slots=True)
class ParsedSse:
    kind: Literal["response", "error"]
    response: Any = None
    error: StreamError | None = None


@dataclass(slots=True)
class UpstreamDiagnostics:
    http_status: int | None = None
    request_id: str | None = None
    cf_ray: str | None = None
    correlation_id: str | None = None
    thread_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "http_status": self.http_status,
            "request_id": self.request_id,
            "cf_ray": self.cf_ray,
            "correlation_id": self.correlation_id,
            "thread_id": self.thread_id,
            **self.extra,
        }
        return {key: value for key, value in payload.items() if value is not None}


def filter_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name.lower()] = value
    return filtered


def ensure_content_type(headers: Mapping[str, str]) -> dict[str, str]:
    result = filter_response_headers(headers)
    result.setdefault("content-type", SSE_CONTENT_TYPE)
    return result


def collect_diagnostics(
    headers: Mapping[str, str] | None,
    *,
    status_code: int | None,
    correlation_id: str | None = None,
    thread_id: str | None = None,
) -> UpstreamDiagnostics:
    headers = headers or {}
    return UpstreamDiagnostics(
        http_status=status_code,
        request_id=headers.get("x-request-id") or headers.get("request-id"),
        cf_ray=headers.get("cf-ray"),
        correlation_id=correlation_id,
        thread_id=thread_id,
    )


def _string_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _error_from_record(record: Any) -> StreamError | None:
    if not isinstance(record, dict):
        return None
    message = _string_or_none(record.get("message"))
    if not message:
        return None
    code = record.get("code")
    return StreamError(
        message=message,
        type=record.get("type") if isinstance(record.get("type"), str) else None,
        code=code if isinstance(code, (str, int)) and not isinstance(code, bool) else None,
    )


def _stream_error(event: dict[str, Any]) -> StreamError:
    parsed = _error_from_record(event.get("error"))
    if parsed:
        return parsed
    return StreamError(
        message=_string_or_none(event.get("message")) or "Codex stream emitted an error event"
    )


def _response_error(response: dict[str, Any]) -> StreamError | None:
    parsed = _error_from_record(response.get("error"))
    if parsed:
        return parsed
    status = response.get("status")
    if status in ("failed", "incomplete"):
        return StreamError(message=f"Codex stream ended with status: {status}")
    return None


def iter_sse_data_json(text: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[5:].lstrip()
        if not payload or payload == "[DONE]":
            continue
        try:
            data = json.loads(payload)
        except ValueError:
            continue
        if isinstance(data, dict):
            events.append(data)
    return events


def parse_sse_stream(text: str) -> ParsedSse | None:
    """Find the first terminal event in a buffered SSE body."""
    for event in iter_sse_data_json(text):
        kind = event.get("type")
        response = event.get("response") if isinstance(event.get("response"), dict) else None
        if kind in _ERROR_EVENTS:
            return ParsedSse(kind="error", error=_stream_error(event))
        if kind in _TERMINAL_FAILURE_EVENTS:
            error = (_response_error(response) if response else None) or _stream_error(event)
            return ParsedSse(kind="error", error=error)
        if kind in _TERMINAL_SUCCESS_EVENTS:
            if response:
                error = _response_error(response)
                if error:
                    return ParsedSse(kind="error", error=error)
            return ParsedSse(kind="response", response=event.get("response"))
    return None


def _stall_timeout_seconds(stall_timeout_ms: int | None) -> float | None:
    if stall_timeout_ms is None:
        return None
    return max(MIN_STALL_TIMEOUT_MS, int(stall_timeout_ms)) / 1000.0


async def _next_chunk(iterator: AsyncIterator[bytes], timeout_seconds: float | None) -> bytes | None:
    try:
        if timeout_seconds is None:
            return await anext(iterator)
        return await asyncio.wait_for(anext(iterator), timeout=timeout_seconds)
    except StopAsyncIteration:
        return None


async def read_sse_body(upstream: httpx.Response, *, stall_timeout_ms: int | None) -> str:
    """Buffer an upstream SSE body, enforcing the stall timeout between chunks."""
    timeout_seconds = _stall_timeout_seconds(stall_timeout_ms)
    iterator = upstream.aiter_bytes().__aiter__()
    buffer = bytearray()
    try:
        while True:
            try:
                chunk = await _next_chunk(iterator, timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise StreamStalledError(int((timeout_seconds or 0) * 1000)) from exc
            if chunk is None:
                break
            buffer.extend(chunk)
            if len(buffer) > MAX_SSE_BYTES:
                raise StreamTooLargeError(f"SSE response exceeds {MAX_SSE_BYTES} bytes limit")
    finally:
        await upstream.aclose()
    return buffer.decode("utf-8", errors="replace")


@dataclass(slots=True)
class MaterializedResponse:
    status_code: int
    headers: dict[str, str]
    body: Any
    raw_text: str
    is_error: bool = False

    def to_response(self) -> Response:
        headers = {key: value for key, value in self.headers.items() if key != "content-type"}
        if self.body is None:
            return Response(
                content=self.raw_text,
                status_code=self.status_code,
                headers=headers,
                media_type=self.headers.get("content-type", SSE_CONTENT_TYPE),
            )
        return JSONResponse(status_code=self.status_code, content=self.body, headers=headers)


async def materialize_sse_response(
    upstream: httpx.Response, *, stall_timeout_ms: int | None
) -> MaterializedResponse:
    """Turn a streamed upstream reply into one JSON body for a non-streaming caller.

    Stream errors become a normalized error payload (502 when upstream said 2xx).
    When no terminal event is found the raw text is handed back unchanged.
    """
    headers = ensure_content_type(upstream.headers)
    text = await read_sse_body(upstream, stall_timeout_ms=stall_timeout_ms)
    parsed = parse_sse_stream(text)

    if parsed is not None and parsed.kind == "error" and parsed.error is not None:
        logger.warning(
            "sse_stream_error type=%s code=%s message=%s",
            parsed.error.type,
            parsed.error.code,
            parsed.error.message,
        )
        headers["content-type"] = JSON_CONTENT_TYPE
        return MaterializedResponse(
            status_code=upstream.status_code if upstream.status_code >= 400 else 502,
            headers=headers,
            body={
                "error": {
                    "message": parsed.error.message,
                    "type": parsed.error.type or STREAM_ERROR_CODE,
                    "code": parsed.error.code or STREAM_ERROR_CODE,
                }
            },
            raw_text=text,
            is_error=True,
        )

    if parsed is None or parsed.response is None:
        logger.warning("sse_terminal_event_missing status=%d bytes=%d", upstream.status_code, len(text))
        return MaterializedResponse(
            status_code=upstream.status_code, headers=headers, body=None, raw_text=text
        )

    headers["content-type"] = JSON_CONTENT_TYPE
    return MaterializedResponse(
        status_code=upstream.status_code, headers=headers, body=parsed.response, raw_text=text
    )


def _sse_error_frame(message: str, code: str) -> bytes:
    payload = {"type": "error", "error": {"message": message, "type": code, "code": code}}
    return f"event: error\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def stream_passthrough_response(
    upstream: httpx.Response,
    *,
    stall_timeout_ms: int | None,
    request_id: str,
) -> StreamingResponse:
    """Relay the upstream SSE body, ending it with an error frame if it goes silent."""
    headers = ensure_content_type(upstream.headers)
    media_type = headers.pop("content-type")
    timeout_seconds = _stall_timeout_seconds(stall_timeout_ms)

    async def stream_generator() -> AsyncIterator[bytes]:
        iterator = upstream.aiter_raw().__aiter__()
        try:
            while True:
                try:
                    chunk = await _next_chunk(iterator, timeout_seconds)
                except asyncio.TimeoutError:
                    logger.warning(
                        "proxy_stream_stalled request_id=%s timeout_ms=%d",
                        request_id,
                        int((timeout_seconds or 0) * 1000),
                    )
                    yield _sse_error_frame(
                        str(StreamStalledError(int((timeout_seconds or 0) * 1000))),
                        "stream_stalled",
                    )
                    break
                if chunk is None:
                    break
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        content=stream_generator(),
        status_code=upstream.status_code,
        headers=headers,
        media_type=media_type,
    )


def is_empty_response(body: Any) -> bool:
    """True for bodies that carry no model output (null, blank, or a bare envelope)."""
    if body is None:
        return True
    if isinstance(body, str):
        return not body.strip()
    if not isinstance(body, dict):
        return False
    if not body:
        return True

    has_output = body.get("output") is not None
    choices = body.get("choices")
    has_choices = isinstance(choices, list) and any(
        isinstance(choice, dict) and choice for choice in choices
    )
    content = body.get("content")
    has_content = content is not None and (not isinstance(content, str) or bool(content.strip()))
    if "id" in body or "object" in body or "model" in body:
        return not has_output and not has_choices and not has_content
    return False


def parse_error_body(body_text: str) -> Any:
    if not body_text:
        return None
    try:
        return json.loads(body_text)
    except ValueError:
        return {"message": body_text}


def normalize_error_payload(error_body: Any, body_text: str, reason_phrase: str = "") -> dict[str, Any]:
    """Coerce any upstream error body into `{"error": {"message", "type"?, "code"?}}`."""
    if isinstance(error_body, dict):
        nested = error_body.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            error: dict[str, Any] = {"message": nested["message"]}
            if isinstance(nested.get("type"), str):
                error["type"] = nested["type"]
            code = nested.get("code")
            if isinstance(code, (str, int)) and not isinstance(code, bool):
                error["code"] = code
            return {"error": error}
        if isinstance(error_body.get("message"), str):
            return {"error": {"message": error_body["message"]}}
        if isinstance(error_body.get("detail"), str):
            return {"error": {"message": error_body["detail"]}}

    trimmed = body_text.strip()
    if trimmed:
        return {"error": {"message": trimmed}}
    if reason_phrase:
        return {"error": {"message": reason_phrase}}
    return {"error": {"message": "Request failed"}}


def error_json_response(
    status_code: int,
    payload: dict[str, Any],
    *,
    headers: Mapping[str, str] | None = None,
    diagnostics: UpstreamDiagnostics | None = None,
) -> JSONResponse:
    if diagnostics is not None:
        details = diagnostics.as_dict()
        if details and isinstance(payload.get("error"), dict):
            payload = {"error": {**payload["error"], "diagnostics": details}}
    response_headers = {
        key: value
        for key, value in filter_response_headers(headers or {}).items()
        if key != "content-type"
    }
    return JSONResponse(status_code=status_code, content=payload, headers=response_headers)


def log_deprecation_headers(headers: Mapping[str, str], *, request_id: str) -> bool:
    deprecation = headers.get("deprecation")
    sunset = headers.get("sunset")
    if not deprecation and not sunset:
        return False
    logger.warning(
        "upstream_deprecation_notice request_id=%s deprecation=%s sunset=%s",
        request_id,
        deprecation,
        sunset,
    )
    return True
