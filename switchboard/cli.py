from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import httpx

from switchboard.sandbox.runtime import get_execution_config_path, load_execution_config, save_execution_config
from switchboard.scheduler.cron import next_fire_times

DEFAULT_BASE_URL = os.getenv("SWITCHBOARD_BASE_URL", "http://127.0.0.1:8000")


def configure_logging() -> None:
    level = os.getenv("SWITCHBOARD_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _headers(args: argparse.Namespace) -> dict[str, str]:
    headers = {
        "X-Actor-Id": args.actor_id,
        "X-Actor-Role": args.actor_role,
    }
    token = os.getenv("SWITCHBOARD_ADMIN_TOKEN", "").strip()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _client(args: argparse.Namespace) -> httpx.Client:
    return httpx.Client(base_url=args.base_url.rstrip("/"), timeout=30.0)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _request_json(
    args: argparse.Namespace,
    method: str,
    path: str,
    *,
    json_body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    try:
        with _client(args) as client:
            response = client.request(method, path, headers=_headers(args), json=json_body)
    except httpx.RequestError as exc:
        raise SystemExit(f"request failed: {exc}") from exc
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = exc.response.text
        raise SystemExit(f"request failed {exc.response.status_code}: {detail}") from exc
    return response.json()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("switchboard.api:app", host=args.host, port=args.port, log_level=args.log_level)
    return 0


def cmd_gateway(args: argparse.Namespace) -> int:
    from switchboard.runtime import build_runtime
    from switchboard.storage.db import init_db

    async def _run() -> None:
        runtime = build_runtime()
        if runtime.gateway is None:
            raise SystemExit("TELEGRAM_BOT_TOKEN is required")
        runtime.settings.data_dir.mkdir(parents=True, exist_ok=True)
        init_db()
        if not args.no_scheduler:
            await runtime.scheduler.start()
        try:
            await runtime.gateway.run()
        finally:
            await runtime.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        return 130
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "GET", "/health"))
    return 0


def cmd_chat_show(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "GET", f"/v1/chats/{args.chat_id}/snapshot"))
    return 0


def cmd_chat_set_config(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "PUT", f"/v1/chats/{args.chat_id}/config", json_body={"config": args.config}))
    return 0


def cmd_chat_reset_config(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "PUT", f"/v1/chats/{args.chat_id}/config", json_body={"config": None}))
    return 0


def cmd_chat_invalidate(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "POST", f"/v1/chats/{args.chat_id}/invalidate"))
    return 0


def cmd_flow_show(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "GET", f"/v1/chats/{args.chat_id}/flows/{args.service_id}"))
    return 0


def cmd_flow_clear(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "DELETE", f"/v1/chats/{args.chat_id}/flows/{args.service_id}"))
    return 0


def cmd_scheduler_status(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "GET", "/v1/scheduler/status"))
    return 0


def cmd_scheduler_tick(args: argparse.Namespace) -> int:
    _print_json(_request_json(args, "POST", "/v1/scheduler/tick"))
    return 0


def cmd_sandbox_show(args: argparse.Namespace) -> int:
    _print_json({"path": str(get_execution_config_path()), "config": load_execution_config()})
    return 0


def cmd_sandbox_set(args: argparse.Namespace) -> int:
    payload = load_execution_config()
    changed = False
    for key in ("mode", "docker_image", "python_executable", "memory_mb", "pids_limit"):
        value = getattr(args, key)
        if value is not None:
            payload[key] = value
            changed = True
    if not changed:
        raise SystemExit("no sandbox fields provided")
    path = save_execution_config(payload)
    _print_json({"path": str(path), "config": load_execution_config(path)})
    return 0


def cmd_cron_check(args: argparse.Namespace) -> int:
    if args.start:
        try:
            start = datetime.fromisoformat(args.start)
        except ValueError as exc:
            raise SystemExit(f"--start is not an ISO timestamp: {exc}") from exc
    else:
        start = datetime.now(timezone.utc)
    try:
        fires = next_fire_times(args.expr, args.timezone, start, count=args.count)
    except ValueError as exc:
        raise SystemExit(f"invalid schedule: {exc}") from exc
    _print_json(
        {
            "expr": args.expr,
            "timezone": args.timezone,
            "next": [item.isoformat() for item in fires],
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="switchboard", description="Chat event router for sandboxed services")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    parser.add_argument("--actor-id", default=os.getenv("SWITCHBOARD_ACTOR_ID", "cli-user"))
    parser.add_argument(
        "--actor-role", default=os.getenv("SWITCHBOARD_ACTOR_ROLE", "owner"), choices=["owner", "member"]
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the admin API with the periodic scheduler")
    serve.add_argument("--host", default=os.getenv("SWITCHBOARD_HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.getenv("SWITCHBOARD_PORT", "8000")))
    serve.add_argument("--log-level", default="info")
    serve.set_defaults(func=cmd_serve)

    gateway = sub.add_parser("gateway", help="Run the Telegram long-poll gateway")
    gateway.add_argument("--no-scheduler", action="store_true", help="Do not run periodic services in this process")
    gateway.set_defaults(func=cmd_gateway)

    health = sub.add_parser("health", help="Check API health")
    health.set_defaults(func=cmd_health)

    chat = sub.add_parser("chat", help="Per-chat configuration")
    chat_sub = chat.add_subparsers(dest="chat_command", required=True)
    chat_show = chat_sub.add_parser("show", help="Show the chat's routing snapshot")
    chat_show.add_argument("chat_id")
    chat_show.set_defaults(func=cmd_chat_show)
    chat_set = chat_sub.add_parser("set-config", help="Point the chat at a bot config id or URL")
    chat_set.add_argument("chat_id")
    chat_set.add_argument("config")
    chat_set.set_defaults(func=cmd_chat_set_config)
    chat_reset = chat_sub.add_parser("reset-config", help="Return the chat to the default config")
    chat_reset.add_argument("chat_id")
    chat_reset.set_defaults(func=cmd_chat_reset_config)
    chat_invalidate = chat_sub.add_parser("invalidate", help="Drop the chat's cached snapshot")
    chat_invalidate.add_argument("chat_id")
    chat_invalidate.set_defaults(func=cmd_chat_invalidate)

    flow = sub.add_parser("flow", help="Conversation flow state")
    flow_sub = flow.add_subparsers(dest="flow_command", required=True)
    flow_show = flow_sub.add_parser("show", help="Show flow state for a chat and service")
    flow_show.add_argument("chat_id")
    flow_show.add_argument("service_id")
    flow_show.set_defaults(func=cmd_flow_show)
    flow_clear = flow_sub.add_parser("clear", help="Delete flow state for a chat and service")
    flow_clear.add_argument("chat_id")
    flow_clear.add_argument("service_id")
    flow_clear.set_defaults(func=cmd_flow_clear)

    scheduler = sub.add_parser("scheduler", help="Periodic scheduler")
    scheduler_sub = scheduler.add_subparsers(dest="scheduler_command", required=True)
    scheduler_status = scheduler_sub.add_parser("status", help="Show scheduler status")
    scheduler_status.set_defaults(func=cmd_scheduler_status)
    scheduler_tick = scheduler_sub.add_parser("tick", help="Evaluate schedules for the current minute now")
    scheduler_tick.set_defaults(func=cmd_scheduler_tick)

    sandbox = sub.add_parser("sandbox", help="Sandbox execution mode configuration")
    sandbox_sub = sandbox.add_subparsers(dest="sandbox_command", required=True)
    sandbox_show = sandbox_sub.add_parser("show", help="Show current execution mode config")
    sandbox_show.set_defaults(func=cmd_sandbox_show)
    sandbox_set = sandbox_sub.add_parser("set", help="Update execution mode config")
    sandbox_set.add_argument("--mode", choices=["auto", "local", "sandbox"])
    sandbox_set.add_argument("--docker-image", dest="docker_image")
    sandbox_set.add_argument("--python-executable", dest="python_executable")
    sandbox_set.add_argument("--memory-mb", dest="memory_mb", type=int)
    sandbox_set.add_argument("--pids-limit", dest="pids_limit", type=int)
    sandbox_set.set_defaults(func=cmd_sandbox_set)

    cron = sub.add_parser("cron", help="Schedule expressions")
    cron_sub = cron.add_subparsers(dest="cron_command", required=True)
    cron_check = cron_sub.add_parser("check", help="Validate a cron expression and list its next fire times")
    cron_check.add_argument("expr")
    cron_check.add_argument("--timezone", default="UTC")
    cron_check.add_argument("--count", type=int, default=5)
    cron_check.add_argument("--start", help="ISO timestamp to start from (default: now)")
    cron_check.set_defaults(func=cmd_cron_check)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
