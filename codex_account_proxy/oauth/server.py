from __future__ import annotations

import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger("uvicorn.error")

CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 1455
CALLBACK_PATH = "/auth/callback"
POLL_INTERVAL_SECONDS = 0.1
WAIT_TIMEOUT_SECONDS = 300

SUCCESS_HTML = (
    b"<!doctype html><html><head><meta charset=\"utf-8\"><title>Signed in</title></head>"
    b"<body><p>Authentication successful. Return to your terminal.</p></body></html>"
)


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_port = False

    def __init__(self, address: tuple[str, int], expected_state: str) -> None:
        super().__init__(address, _OAuthCallbackHandler)
        self.expected_state = expected_state
        self.auth_code: str | None = None


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return

    def _reply(self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self._reply(404, b"Not found")
            return

        params = parse_qs(parsed.query)
        state = (params.get("state") or [None])[0]
        code = ((params.get("code") or [""])[0] or "").strip()
        if state != self.server.expected_state:
            self._reply(400, b"State mismatch")
            return
        if not code:
            self._reply(400, b"Missing authorization code")
            return

        self.server.auth_code = code
        self._reply(200, SUCCESS_HTML, "text/html; charset=utf-8")


class LoopbackCallbackReceiver:
    """Receives the OAuth redirect on 127.0.0.1:1455.

    When the port cannot be bound the receiver reports `ready=False` and the
    caller falls back to pasting the redirect URL by hand.
    """

    def __init__(self, expected_state: str, *, host: str = CALLBACK_HOST, port: int = CALLBACK_PORT) -> None:
        self.expected_state = expected_state
        self.host = host
        self.port = port
        self._server: _CallbackServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def ready(self) -> bool:
        return self._server is not None

    def start(self) -> bool:
        try:
            server = _CallbackServer((self.host, self.port), self.expected_state)
        except OSError as exc:
            logger.warning(
                "oauth_callback_bind_failed host=%s port=%d error=%s fallback=manual_paste",
                self.host,
                self.port,
                exc,
            )
            return False
        self._server = server
        self.port = server.server_address[1]
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()
        return True

    def wait_for_code(
        self,
        timeout_seconds: float = WAIT_TIMEOUT_SECONDS,
        *,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
    ) -> str | None:
        if self._server is None:
            return None
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        while True:
            code = self._server.auth_code
            if code:
                return code
            if time.monotonic() >= deadline:
                break
            time.sleep(poll_interval_seconds)
        logger.warning("oauth_callback_timeout timeout_seconds=%.0f", timeout_seconds)
        return None

    def close(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        server.shutdown()
        server.server_close()

    def __enter__(self) -> LoopbackCallbackReceiver:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
