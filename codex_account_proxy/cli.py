from __future__ import annotations

import argparse
import asyncio
import sys
import webbrowser
from typing import Any, Callable, cast

import httpx

from codex_account_proxy.accounts import (
    AccountManager,
    ManagedAccount,
    describe_accounts,
    format_account_label,
    format_wait_time,
)
from codex_account_proxy.clock import Clock
from codex_account_proxy.constants import DEFAULT_MODEL_FAMILY, MODEL_FAMILIES
from codex_account_proxy.identity import (
    get_account_id_candidates,
    select_best_account_candidate,
)
from codex_account_proxy.main import build_account_store, load_account_manager
from codex_account_proxy.oauth.flow import (
    AuthorizationFlow,
    OAuthFlowError,
    TokenFailure,
    TokenResult,
    TokenSuccess,
    create_authorization_flow,
    exchange_authorization_code,
    is_flaggable_failure,
    validate_pasted_input,
)
from codex_account_proxy.oauth.refresh_queue import RefreshQueue
from codex_account_proxy.oauth.server import LoopbackCallbackReceiver
from codex_account_proxy.settings import Settings, get_settings
from codex_account_proxy.storage.schemas import FlaggedAccountRecord, FlaggedAccountStorage
from codex_account_proxy.storage.store import AccountStore
from codex_account_proxy.utils.cli_output import print_yaml

DEFAULT_LOGIN_TIMEOUT_SECONDS = 300.0
DEFAULT_METRICS_TIMEOUT_SECONDS = 10.0
PASTE_PROMPT = "Paste authorization code (or full redirect URL): "


async def _open_pool(settings: Settings) -> tuple[AccountStore, AccountManager]:
    store = build_account_store(settings, clock=Clock())
    return store, await load_account_manager(settings, store)


async def _open_manager(settings: Settings) -> AccountManager:
    _, manager = await _open_pool(settings)
    return manager


def _account_at(manager: AccountManager, number: int) -> ManagedAccount:
    account = manager.get(number - 1)
    if account is None:
        if manager.account_count == 0:
            raise ValueError("No accounts configured. Run `codex-account-proxy login` first.")
        raise ValueError(f"Invalid account number: {number}. Valid range: 1-{manager.account_count}.")
    return account


def _require_accounts(manager: AccountManager) -> None:
    if manager.account_count == 0:
        raise ValueError("No accounts configured. Run `codex-account-proxy login` first.")


def _failure_message(result: TokenFailure) -> str:
    return result.message or result.reason


# Login


def _read_code_from_paste(flow: AuthorizationFlow) -> str:
    parsed = validate_pasted_input(flow, input(PASTE_PROMPT))
    if isinstance(parsed, TokenFailure):
        raise OAuthFlowError(_failure_message(parsed))
    if not parsed.code:
        raise OAuthFlowError("Missing authorization code")
    return parsed.code


def _obtain_authorization_code(flow: AuthorizationFlow, args: argparse.Namespace) -> str:
    sys.stdout.write(f"Open this URL to sign in:\n{flow.url}\n")
    if args.manual_code:
        if not args.no_browser:
            webbrowser.open(flow.url)
        return _read_code_from_paste(flow)

    with LoopbackCallbackReceiver(flow.state) as receiver:
        if not args.no_browser:
            webbrowser.open(flow.url)
        if receiver.ready:
            code = receiver.wait_for_code(args.timeout_seconds)
            if code:
                return code
            sys.stdout.write("No callback received; falling back to manual paste.\n")
    return _read_code_from_paste(flow)


async def _complete_login(settings: Settings, flow: AuthorizationFlow, code: str) -> dict[str, Any]:
    result = await exchange_authorization_code(code, flow.verifier, redirect_uri=flow.redirect_uri)
    if isinstance(result, TokenFailure):
        raise OAuthFlowError(f"Token exchange failed: {_failure_message(result)}")

    manager = await _open_manager(settings)
    candidate = select_best_account_candidate(
        get_account_id_candidates(result.access, result.id_token)
    )
    existed = manager.account_count
    account = manager.add_or_update_account(result, candidate)
    await manager.flush_pending_save()
    return {
        "status": "updated" if account.index < existed else "added",
        "account": format_account_label(account, account.index),
        "account_id": account.account_id,
        "email": account.email,
        "total_accounts": manager.account_count,
    }


def cmd_login(args: argparse.Namespace) -> int:
    settings = get_settings()
    flow = create_authorization_flow(force_new_login=args.force_login)
    code = _obtain_authorization_code(flow, args)
    print_yaml(asyncio.run(_complete_login(settings, flow, code)))
    return 0


# Inspection


def cmd_list(_: argparse.Namespace) -> int:
    async def _list() -> list[dict[str, Any]]:
        manager = await _open_manager(get_settings())
        active = manager.get_active_index(DEFAULT_MODEL_FAMILY)
        return [
            {
                "number": account.index + 1,
                "label": format_account_label(account, account.index),
                "active": account.index == active,
                "enabled": account.is_enabled,
            }
            for account in manager.accounts
        ]

    rows = asyncio.run(_list())
    print_yaml({"accounts": rows} if rows else {"accounts": [], "hint": "Run `codex-account-proxy login`."})
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    async def _status() -> dict[str, Any]:
        manager = await _open_manager(get_settings())
        families = [args.family] if args.family else list(MODEL_FAMILIES)
        return {
            "strategy": manager.strategy,
            "total_accounts": manager.account_count,
            "families": {
                family: {
                    "active_number": manager.get_active_index(family) + 1,
                    "wait": format_wait_time(manager.get_min_wait_time_for_family(family)),
                }
                for family in families
            },
            "accounts": describe_accounts(manager, args.family or DEFAULT_MODEL_FAMILY),
        }

    print_yaml(asyncio.run(_status()))
    return 0


def cmd_metrics(args: argparse.Namespace) -> int:
    settings = get_settings()
    base_url = (args.url or f"http://{settings.proxy_host}:{settings.proxy_port}").rstrip("/")
    headers: dict[str, str] = {}
    keys = settings.ingress_api_keys_list
    if keys:
        headers["authorization"] = f"Bearer {keys[0]}"
    try:
        response = httpx.get(f"{base_url}/v1/codex/metrics", headers=headers, timeout=args.timeout)
    except httpx.RequestError as exc:
        raise RuntimeError(f"Could not reach the proxy at {base_url}: {exc}") from exc
    response.raise_for_status()
    print_yaml(response.json())
    return 0


# Mutation


def cmd_switch(args: argparse.Namespace) -> int:
    async def _switch() -> dict[str, Any]:
        manager = await _open_manager(get_settings())
        account = _account_at(manager, args.index)
        manager.set_active_index(account.index)
        await manager.flush_pending_save()
        return {
            "active_number": account.index + 1,
            "account": format_account_label(account, account.index),
        }

    print_yaml(asyncio.run(_switch()))
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    async def _remove() -> dict[str, Any]:
        manager = await _open_manager(get_settings())
        account = _account_at(manager, args.index)
        label = format_account_label(account, account.index)
        manager.remove_account(account)
        await manager.flush_pending_save()
        return {"removed": label, "remaining_accounts": manager.account_count}

    print_yaml(asyncio.run(_remove()))
    return 0


async def _refresh_accounts(
    manager: AccountManager,
    accounts: list[ManagedAccount],
) -> list[tuple[ManagedAccount, TokenResult]]:
    queue = RefreshQueue(clock=manager.clock)
    results: list[tuple[ManagedAccount, TokenResult]] = []
    for account in accounts:
        result = await queue.refresh(account.refresh_token)
        if isinstance(result, TokenSuccess):
            manager.update_from_auth(account, result)
            manager.clear_auth_failures(account)
        results.append((account, result))
    await manager.flush_pending_save()
    return results


def cmd_refresh(args: argparse.Namespace) -> int:
    async def _refresh() -> dict[str, Any]:
        manager = await _open_manager(get_settings())
        _require_accounts(manager)
        targets = [_account_at(manager, args.index)] if args.index is not None else manager.accounts
        results = await _refresh_accounts(manager, targets)
        rows = [
            {
                "account": format_account_label(account, account.index),
                "status": "refreshed" if isinstance(result, TokenSuccess) else "failed",
                "error": _failure_message(result) if isinstance(result, TokenFailure) else None,
            }
            for account, result in results
        ]
        refreshed = sum(1 for row in rows if row["status"] == "refreshed")
        return {
            "accounts": rows,
            "summary": {"refreshed": refreshed, "failed": len(rows) - refreshed},
        }

    print_yaml(asyncio.run(_refresh()))
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    async def _health() -> dict[str, Any]:
        manager = await _open_manager(get_settings())
        _require_accounts(manager)
        results = await _refresh_accounts(manager, manager.accounts)
        rows: list[dict[str, Any]] = []
        invalid: list[tuple[ManagedAccount, str]] = []
        for account, result in results:
            row: dict[str, Any] = {
                "account": format_account_label(account, account.index),
                "healthy": isinstance(result, TokenSuccess),
                "error": _failure_message(result)[:120] if isinstance(result, TokenFailure) else None,
                "flagged": False,
            }
            if isinstance(result, TokenFailure) and is_flaggable_failure(result) and not args.keep_invalid:
                invalid.append((account, _failure_message(result)))
                row["flagged"] = True
            rows.append(row)

        # Flag after the loop so labels above keep their pre-removal numbers.
        for account, message in invalid:
            await manager.flag_account(account, reason="token-invalid", last_error=message[:500])

        healthy = sum(1 for row in rows if row["healthy"])
        report: dict[str, Any] = {
            "accounts": rows,
            "summary": {"healthy": healthy, "unhealthy": len(rows) - healthy, "flagged": len(invalid)},
        }
        if invalid:
            report["hint"] = "Run `codex-account-proxy flagged verify` after re-authenticating."
        return report

    report = asyncio.run(_health())
    print_yaml(report)
    return 0 if report["summary"]["unhealthy"] == 0 else 1


# Flagged accounts


def _flagged_at(storage: FlaggedAccountStorage, number: int | None) -> FlaggedAccountRecord:
    if not storage.accounts:
        raise ValueError("No flagged accounts.")
    if number is None:
        raise ValueError("An account number is required for this action.")
    if not 1 <= number <= len(storage.accounts):
        raise ValueError(f"Invalid flagged account number: {number}. Valid range: 1-{len(storage.accounts)}.")
    return storage.accounts[number - 1]


def _flagged_row(record: FlaggedAccountRecord, position: int) -> dict[str, Any]:
    return {
        "number": position + 1,
        "account": format_account_label(record, position),
        "flagged_at": record.flagged_at,
        "reason": record.flagged_reason,
        "last_error": record.last_error,
    }


async def _verify_flagged(
    manager: AccountManager, records: list[tuple[int, FlaggedAccountRecord]]
) -> list[dict[str, Any]]:
    queue = RefreshQueue(clock=manager.clock)
    rows: list[dict[str, Any]] = []
    for position, record in records:
        row = _flagged_row(record, position)
        result = await queue.refresh(record.refresh_token)
        if isinstance(result, TokenFailure):
            row.update(status="still-invalid", error=_failure_message(result)[:120])
            rows.append(row)
            continue
        account = await manager.restore_flagged(record.refresh_token)
        if account is not None:
            manager.update_from_auth(account, result)
            manager.clear_auth_failures(account)
        row.update(status="restored", error=None)
        rows.append(row)
    await manager.flush_pending_save()
    return rows


def cmd_flagged(args: argparse.Namespace) -> int:
    async def _flagged() -> tuple[dict[str, Any], int]:
        store, manager = await _open_pool(get_settings())
        storage = await store.load_flagged()

        if args.action == "list":
            rows = [_flagged_row(record, position) for position, record in enumerate(storage.accounts)]
            return {"flagged": rows}, 0

        if args.action == "clear":
            await store.clear_flagged()
            return {"cleared": len(storage.accounts)}, 0

        if args.action == "restore":
            record = _flagged_at(storage, args.index)
            account = await manager.restore_flagged(record.refresh_token)
            if account is None:
                raise ValueError(f"Flagged account {args.index} disappeared while restoring.")
            return {
                "restored": format_account_label(account, account.index),
                "total_accounts": manager.account_count,
            }, 0

        if args.index is not None:
            targets = [(args.index - 1, _flagged_at(storage, args.index))]
        else:
            targets = list(enumerate(storage.accounts))
        rows = await _verify_flagged(manager, targets)
        restored = sum(1 for row in rows if row["status"] == "restored")
        summary = {"restored": restored, "still_invalid": len(rows) - restored}
        return {"accounts": rows, "summary": summary}, 0 if restored == len(rows) else 1

    report, code = asyncio.run(_flagged())
    print_yaml(report)
    return code


# Transfer


def cmd_export(args: argparse.Namespace) -> int:
    async def _export() -> dict[str, Any]:
        store = build_account_store(get_settings())
        destination = await store.export_accounts(args.path, force=not args.no_force)
        storage = await store.load()
        return {"exported": len(storage.accounts) if storage else 0, "path": str(destination)}

    print_yaml(asyncio.run(_export()))
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    async def _import() -> dict[str, Any]:
        store = build_account_store(get_settings())
        if args.dry_run:
            preview = await store.preview_import(args.path)
            return {
                "dry_run": True,
                "would_import": preview.imported,
                "would_skip": preview.skipped,
                "total_after_import": preview.total,
            }
        result = await store.import_accounts(
            args.path,
            backup_mode=args.backup_mode,
            backup_prefix=args.backup_prefix,
        )
        return {
            "imported": result.imported,
            "skipped": result.skipped,
            "total": result.total,
            "backup": {
                "status": result.backup_status,
                "path": result.backup_path,
                "error": result.backup_error,
            },
        }

    print_yaml(asyncio.run(_import()))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from codex_account_proxy.main import run

    run(host=args.host, port=args.port)
    return 0


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed < 1:
        raise argparse.ArgumentTypeError("account numbers start at 1")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-account-proxy",
        description="Manage ChatGPT accounts for the Codex credential-rotating proxy.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_cmd = subparsers.add_parser("login", help="Sign in with ChatGPT and add the account.")
    login_cmd.add_argument(
        "--manual-code",
        action="store_true",
        help="Skip the loopback callback and paste the redirect URL by hand.",
    )
    login_cmd.add_argument("--no-browser", action="store_true")
    login_cmd.add_argument(
        "--force-login",
        action="store_true",
        help="Ask the provider for a fresh session instead of reusing the browser one.",
    )
    login_cmd.add_argument("--timeout-seconds", type=float, default=DEFAULT_LOGIN_TIMEOUT_SECONDS)
    login_cmd.set_defaults(handler=cmd_login)

    list_cmd = subparsers.add_parser("list", help="List configured accounts.")
    list_cmd.set_defaults(handler=cmd_list)

    status_cmd = subparsers.add_parser("status", help="Show eligibility, cooldowns and rate limits.")
    status_cmd.add_argument("--family", choices=MODEL_FAMILIES, default=None)
    status_cmd.set_defaults(handler=cmd_status)

    metrics_cmd = subparsers.add_parser("metrics", help="Fetch runtime metrics from a running proxy.")
    metrics_cmd.add_argument("--url", default=None, help="Proxy base URL.")
    metrics_cmd.add_argument("--timeout", type=float, default=DEFAULT_METRICS_TIMEOUT_SECONDS)
    metrics_cmd.set_defaults(handler=cmd_metrics)

    health_cmd = subparsers.add_parser("health", help="Validate every account's refresh token.")
    health_cmd.add_argument(
        "--keep-invalid",
        action="store_true",
        help="Report accounts with revoked refresh tokens without moving them to the flagged pool.",
    )
    health_cmd.set_defaults(handler=cmd_health)

    flagged_cmd = subparsers.add_parser("flagged", help="Inspect or recover accounts flagged as invalid.")
    flagged_cmd.add_argument("action", choices=("list", "verify", "restore", "clear"))
    flagged_cmd.add_argument(
        "index", type=_positive_int, nargs="?", default=None, help="Flagged account number (1-based)."
    )
    flagged_cmd.set_defaults(handler=cmd_flagged)

    switch_cmd = subparsers.add_parser("switch", help="Make an account active for all families.")
    switch_cmd.add_argument("index", type=_positive_int, help="Account number (1-based).")
    switch_cmd.set_defaults(handler=cmd_switch)

    remove_cmd = subparsers.add_parser("remove", help="Remove an account.")
    remove_cmd.add_argument("index", type=_positive_int, help="Account number (1-based).")
    remove_cmd.set_defaults(handler=cmd_remove)

    refresh_cmd = subparsers.add_parser("refresh", help="Refresh OAuth tokens now.")
    refresh_cmd.add_argument("index", type=_positive_int, nargs="?", default=None)
    refresh_cmd.set_defaults(handler=cmd_refresh)

    export_cmd = subparsers.add_parser("export", help="Export accounts to a JSON file.")
    export_cmd.add_argument("path")
    export_cmd.add_argument("--no-force", action="store_true", help="Refuse to overwrite an existing file.")
    export_cmd.set_defaults(handler=cmd_export)

    import_cmd = subparsers.add_parser("import", help="Merge accounts from a JSON export.")
    import_cmd.add_argument("path")
    import_cmd.add_argument(
        "--backup-mode",
        choices=("none", "best-effort", "required"),
        default="none",
    )
    import_cmd.add_argument("--backup-prefix", default="codex-pre-import-backup")
    import_cmd.add_argument("--dry-run", action="store_true")
    import_cmd.set_defaults(handler=cmd_import)

    serve_cmd = subparsers.add_parser("serve", help="Run the proxy server.")
    serve_cmd.add_argument("--host", default=None)
    serve_cmd.add_argument("--port", type=int, default=None)
    serve_cmd.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
