from __future__ import annotations

import json

import httpx
import pytest

from switchboard import cli
from switchboard.cli import build_parser, main


def test_build_parser_includes_chat_commands() -> None:
    parser = build_parser()
    set_args = parser.parse_args(["chat", "set-config", "-100123", "01HZX3K5Q8W2M4N6P7R9T00100"])
    assert set_args.func.__name__ == "cmd_chat_set_config"
    assert set_args.chat_id == "-100123"
    invalidate_args = parser.parse_args(["chat", "invalidate", "42"])
    assert invalidate_args.func.__name__ == "cmd_chat_invalidate"


def test_build_parser_includes_flow_and_scheduler_commands() -> None:
    parser = build_parser()
    assert parser.parse_args(["flow", "clear", "42", "quiz"]).func.__name__ == "cmd_flow_clear"
    assert parser.parse_args(["scheduler", "tick"]).func.__name__ == "cmd_scheduler_tick"
    gateway_args = parser.parse_args(["gateway", "--no-scheduler"])
    assert gateway_args.no_scheduler is True


def test_cron_check_lists_next_fire_times(capsys) -> None:
    code = main(
        [
            "cron",
            "check",
            "0 9 * * 1-5",
            "--timezone",
            "Europe/Zurich",
            "--count",
            "2",
            "--start",
            "2024-07-05T06:00:00+00:00",
        ]
    )
    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["next"] == ["2024-07-05T09:00:00+02:00", "2024-07-08T09:00:00+02:00"]


def test_cron_check_rejects_bad_expression() -> None:
    with pytest.raises(SystemExit):
        main(["cron", "check", "every monday"])


def test_sandbox_set_persists_execution_config(tmp_path, monkeypatch, capsys) -> None:
    config_path = tmp_path / "execution-config.json"
    monkeypatch.setenv("SWITCHBOARD_EXECUTION_CONFIG_PATH", str(config_path))

    assert main(["sandbox", "set", "--mode", "sandbox", "--memory-mb", "8"]) == 0
    saved = json.loads(config_path.read_text(encoding="utf-8"))
    assert saved["mode"] == "sandbox"
    assert saved["memory_mb"] == 16
    assert json.loads(capsys.readouterr().out)["path"] == str(config_path.resolve())

    with pytest.raises(SystemExit):
        main(["sandbox", "set"])


def test_remote_commands_send_actor_headers(monkeypatch, capsys) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"chat_id": "42", "invalidated": True})

    def fake_client(args):
        return httpx.Client(base_url=args.base_url, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(cli, "_client", fake_client)
    assert main(["--actor-id", "ops", "chat", "invalidate", "42"]) == 0

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/v1/chats/42/invalidate"
    assert seen[0].headers["X-Actor-Role"] == "owner"
    assert seen[0].headers["X-Actor-Id"] == "ops"
    assert json.loads(capsys.readouterr().out)["invalidated"] is True


def test_remote_command_failure_exits_with_detail(monkeypatch) -> None:
    def fake_client(args):
        return httpx.Client(
            base_url=args.base_url,
            transport=httpx.MockTransport(lambda request: httpx.Response(502, text="upstream down")),
        )

    monkeypatch.setattr(cli, "_client", fake_client)
    with pytest.raises(SystemExit) as excinfo:
        main(["chat", "show", "42"])
    assert "502" in str(excinfo.value)
