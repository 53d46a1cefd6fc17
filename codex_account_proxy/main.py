from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from codex_account_proxy.accounts import (
    AccountManager,
    account_counters,
    describe_accounts,
    format_account_label,
)
from codex_account_proxy.clock import Clock
from codex_account_proxy.config import ConfigError, load_user_config
from codex_account_proxy.constants import DEFAULT_MODEL_FAMILY, MODEL_FAMILIES
from codex_account_proxy.gateway.auth import AuthConfigurationError, Authenticator
from codex_account_proxy.gateway.pipeline import PipelineOptions, ProxyPipeline
from codex_account_proxy.oauth.refresh_queue import RefreshQueue
from codex_account_proxy.settings import Settings, get_settings
from codex_account_proxy.storage.paths import StoragePaths
from codex_account_proxy.storage.store import AccountStore, StorageError
from codex_account_proxy.transform.prompts import InstructionsProvider

app = FastAPI(
    title="Codex Account Proxy",
    description="Credential-rotating reverse proxy for the ChatGPT Codex Responses backend.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

DISCONNECT_POLL_SECONDS = 0.5


def build_account_store(settings: Settings, *, clock: Clock | None = None) -> AccountStore:
    return AccountStore(StoragePaths.from_dir(settings.config_dir), clock=clock)


async def load_account_manager(
    settings: Settings,
    store: AccountStore,
    *,
    clock: Clock | None = None,
) -> AccountManager:
    return await AccountManager.load(
        store,
        clock=clock or store.clock,
        strategy=settings.codex_selection_strategy,
        save_debounce_ms=settings.codex_auth_save_debounce_ms,
        toast_debounce_ms=settings.codex_auth_rate_limit_toast_debounce_ms,
        auth_failure_cooldown_ms=settings.codex_auth_auth_failure_cooldown_ms,
        forced_account_id=settings.forced_account_id,
    )


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    clock = Clock()
    store = build_account_store(settings, clock=clock)
    manager = await load_account_manager(settings, store, clock=clock)
    user_config = load_user_config(settings.codex_user_config_path)
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.account_store = store
    app.state.account_manager = manager
    app.state.pipeline = ProxyPipeline(
        manager,
        options=PipelineOptions.from_settings(settings),
        refresh_queue=RefreshQueue(clock=clock),
        instructions=InstructionsProvider(
            settings.codex_instructions_dir,
            ttl_seconds=settings.codex_instructions_ttl_seconds,
            clock=clock,
        ),
        user_config=user_config,
        clock=clock,
    )
    logger.info(
        "startup complete config_dir=%s accounts=%d strategy=%s codex_mode=%s retry_profile=%s",
        settings.config_dir,
        manager.account_count,
        settings.codex_selection_strategy,
        settings.codex_mode,
        settings.codex_auth_retry_profile,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    manager: AccountManager | None = getattr(app.state, "account_manager", None)
    if manager is not None:
        await manager.flush_pending_save()
    pipeline: ProxyPipeline | None = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    manager: AccountManager = app.state.account_manager
    return {"status": "ok", "accounts": manager.account_count}


async def _watch_disconnect(request: Request, abort: asyncio.Event) -> None:
    while not abort.is_set():
        if await request.is_disconnected():
            abort.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _proxy_responses_request(request: Request) -> Response:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    pipeline: ProxyPipeline = app.state.pipeline
    abort = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, abort))
    try:
        response = await pipeline.handle(
            payload,
            request.headers,
            url=str(request.url),
            request_id=request_id,
            abort=abort,
        )
    finally:
        watcher.cancel()
    logger.info(
        "proxy_complete request_id=%s status=%d stream=%s",
        request_id,
        response.status_code,
        payload.get("stream") is True,
    )
    return response


@app.post("/v1/responses")
async def responses(request: Request) -> Response:
    return await _proxy_responses_request(request)


@app.post("/responses")
async def responses_unversioned(request: Request) -> Response:
    return await _proxy_responses_request(request)


def _require_family(family: str) -> str:
    if family not in MODEL_FAMILIES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown model family '{family}'. Expected one of: {', '.join(MODEL_FAMILIES)}.",
        )
    return family


@app.get("/v1/codex/accounts")
async def codex_accounts(family: str = DEFAULT_MODEL_FAMILY, model: str | None = None) -> dict[str, Any]:
    manager: AccountManager = app.state.account_manager
    family = _require_family(family)
    return {
        "family": family,
        "model": model,
        "strategy": manager.strategy,
        "active_index": manager.get_active_index(family),
        "min_wait_ms": manager.get_min_wait_time_for_family(family, model),
        "accounts": describe_accounts(manager, family, model),
    }


@app.get("/v1/codex/metrics")
async def codex_metrics() -> dict[str, Any]:
    manager: AccountManager = app.state.account_manager
    pipeline: ProxyPipeline = app.state.pipeline
    return {
        "pipeline": pipeline.metrics.as_dict(),
        "refresh_queue_pending": pipeline.refresh_queue.pending_count,
        "accounts": account_counters(manager),
    }


@app.post("/v1/codex/accounts/{index}/activate")
async def activate_account(index: int) -> dict[str, Any]:
    manager: AccountManager = app.state.account_manager
    account = manager.set_active_index(index) if manager.get(index) is not None else None
    if account is None:
        raise HTTPException(status_code=404, detail=f"No account at index {index}.")
    await manager.flush_pending_save()
    logger.info("account_activated index=%d label=%s", index, format_account_label(account, index))
    return {"active_index": index, "label": format_account_label(account, index)}


@app.exception_handler(StorageError)
async def storage_error_handler(_: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error code=%s path=%s error=%s", exc.code, exc.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": str(exc),
                "type": "storage_error",
                "code": exc.code,
                "hint": exc.hint,
            }
        },
    )


@app.exception_handler(ConfigError)
async def config_error_handler(_: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": {"message": str(exc), "type": "config_error"}})


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": {"message": str(exc), "type": "config_error"}})


def run(host: str | None = None, port: int | None = None) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codex_account_proxy.main:app",
        host=host or settings.proxy_host,
        port=port or settings.proxy_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
