"""Sandboxed execution of one service invocation.

Every call gets a brand-new process; nothing is reused across invocations or
services. The engine never retries: retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import os
import shutil
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Awaitable, Callable, Union
from uuid import uuid4

from pydantic import ValidationError

from switchboard.errors import (
    SandboxError,
    SandboxExecutionError,
    SandboxProtocolError,
    SandboxTimeoutError,
)
from switchboard.models.wire import ExecutionPayload, parse_result
from switchboard.sandbox.bootstrap import GRANT_ENV
from switchboard.sandbox.capabilities import ExecutionGrant
from switchboard.sandbox.runtime import load_execution_config

logger = logging.getLogger(__name__)

BOOTSTRAP_PATH = Path(__file__).resolve().with_name("bootstrap.py")
CONTAINER_ROOT = "/sandbox"
STDERR_TAIL_BYTES = 4000
READ_CHUNK_BYTES = 64 * 1024

ServiceHandler = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class ExecutionEntry:
    service_id: str
    artifact_path: Path | None = None


class SandboxExecutor(ABC):
    @abstractmethod
    async def execute(self, entry: ExecutionEntry, grant: ExecutionGrant, payload: ExecutionPayload) -> Any:
        raise NotImplementedError


def decode_result(service_id: str, output: bytes | str) -> Any:
    """Parse the last non-empty output line into an execution result."""
    text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise SandboxProtocolError(f"service {service_id} produced no output", service_id=service_id)
    last = lines[-1].strip()
    try:
        decoded = json.loads(last)
    except json.JSONDecodeError as exc:
        raise SandboxProtocolError(
            f"service {service_id} output is not JSON: {exc}", service_id=service_id, output=last[:500]
        ) from exc
    try:
        return parse_result(decoded)
    except ValidationError as exc:
        raise SandboxProtocolError(
            f"service {service_id} output has invalid shape: {exc.errors()[0]['msg']}",
            service_id=service_id,
            output=last[:500],
        ) from exc


class ProcessExecutor(SandboxExecutor):
    """Runs the service artifact in a fresh interpreter, optionally inside docker."""

    def __init__(
        self,
        *,
        config_loader: Callable[[], dict[str, Any]] = load_execution_config,
        bootstrap_path: Path = BOOTSTRAP_PATH,
        max_output_bytes: int = 256 * 1024,
    ) -> None:
        self._config_loader = config_loader
        self._bootstrap_path = bootstrap_path
        self._max_output_bytes = max_output_bytes

    async def execute(self, entry: ExecutionEntry, grant: ExecutionGrant, payload: ExecutionPayload) -> Any:
        if entry.artifact_path is None:
            raise SandboxExecutionError(service_id=entry.service_id, returncode=-1, stderr="no artifact resolved")
        config = self._config_loader()
        mode = resolve_execution_mode(config)
        local = mode == "local"
        container_name = None if local else f"sb-{uuid4().hex[:16]}"
        network_prefix: tuple[str, ...] = ()
        if local and not grant.network_enabled:
            network_prefix = await asyncio.to_thread(network_namespace_prefix)
        command = self.build_command(
            entry, grant, config, mode=mode, container_name=container_name, network_prefix=network_prefix
        )
        env = build_child_env(
            grant,
            inherit_for_client=not local,
            limits=child_limits(grant, config) if local else None,
        )

        logger.debug("spawning service=%s mode=%s hosts=%s", entry.service_id, mode, sorted(grant.network_hosts))
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(entry.artifact_path.parent) if local else None,
            start_new_session=local,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                self._communicate(process, payload.to_line().encode("utf-8")),
                timeout=grant.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._terminate(process, container_name)
            raise SandboxTimeoutError(service_id=entry.service_id, timeout_seconds=grant.timeout_seconds) from None
        except OutputLimitExceeded:
            await self._terminate(process, container_name)
            raise SandboxProtocolError(
                f"service {entry.service_id} output exceeds {self._max_output_bytes} bytes",
                service_id=entry.service_id,
            ) from None

        if process.returncode != 0:
            raise SandboxExecutionError(
                service_id=entry.service_id,
                returncode=int(process.returncode or -1),
                stderr=stderr.decode("utf-8", errors="replace").strip(),
            )
        return decode_result(entry.service_id, stdout)

    async def _communicate(self, process: asyncio.subprocess.Process, data: bytes) -> tuple[bytes, bytes]:
        """Like ``Process.communicate`` but never holds more than the output cap in memory."""
        assert process.stdout is not None and process.stderr is not None
        stderr_tail = bytearray()
        helpers = [
            asyncio.ensure_future(_feed_stdin(process, data)),
            asyncio.ensure_future(_read_tail(process.stderr, stderr_tail, STDERR_TAIL_BYTES)),
        ]
        try:
            stdout = await _read_bounded(process.stdout, self._max_output_bytes)
            await asyncio.gather(*helpers)
            await process.wait()
        finally:
            for task in helpers:
                task.cancel()
        return stdout, bytes(stderr_tail)

    def build_command(
        self,
        entry: ExecutionEntry,
        grant: ExecutionGrant,
        config: dict[str, Any],
        *,
        mode: str,
        container_name: str | None = None,
        network_prefix: tuple[str, ...] = (),
    ) -> list[str]:
        assert entry.artifact_path is not None
        if mode != "sandbox":
            python = str(config.get("python_executable") or sys.executable)
            return [*network_prefix, python, "-I", "-S", "-B", str(self._bootstrap_path), str(entry.artifact_path)]
        return build_docker_command(
            artifact_path=entry.artifact_path,
            bootstrap_path=self._bootstrap_path,
            grant=grant,
            docker_image=str(config["docker_image"]),
            memory_mb=int(config.get("memory_mb", 128)),
            pids_limit=int(config.get("pids_limit", 32)),
            container_name=container_name or f"sb-{uuid4().hex[:16]}",
        )

    async def _terminate(self, process: asyncio.subprocess.Process, container_name: str | None) -> None:
        if process.returncode is None:
            try:
                if container_name is None and hasattr(os, "killpg"):
                    # the child leads its own session; take anything it started with it
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        if container_name:
            # killing the docker client does not stop the container itself
            killer = await asyncio.create_subprocess_exec(
                "docker",
                "kill",
                container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()


class InMemoryExecutor(SandboxExecutor):
    """Runs registered Python callables in place of service processes.

    Payloads are passed through a JSON round-trip so handlers only ever see
    plain data, and the grant's timeout applies exactly as for processes.
    """

    def __init__(self, handlers: dict[str, ServiceHandler] | None = None) -> None:
        self._handlers: dict[str, ServiceHandler] = dict(handlers or {})
        self.calls: list[tuple[ExecutionEntry, ExecutionGrant, dict[str, Any]]] = []

    def register(self, service_id: str, handler: ServiceHandler) -> None:
        self._handlers[service_id] = handler

    async def execute(self, entry: ExecutionEntry, grant: ExecutionGrant, payload: ExecutionPayload) -> Any:
        handler = self._handlers.get(entry.service_id)
        if handler is None:
            raise SandboxExecutionError(service_id=entry.service_id, returncode=127, stderr="no handler registered")
        data = json.loads(payload.to_line())
        self.calls.append((entry, grant, data))

        async def _run() -> Any:
            outcome = handler(data)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome

        try:
            result = await asyncio.wait_for(_run(), timeout=grant.timeout_seconds)
        except asyncio.TimeoutError:
            raise SandboxTimeoutError(service_id=entry.service_id, timeout_seconds=grant.timeout_seconds) from None
        except SandboxError:
            raise
        except Exception as exc:
            raise SandboxExecutionError(service_id=entry.service_id, returncode=1, stderr=repr(exc)) from exc
        if isinstance(result, (str, bytes)):
            return decode_result(entry.service_id, result)
        try:
            line = json.dumps(result, ensure_ascii=True)
        except (TypeError, ValueError) as exc:
            raise SandboxProtocolError(
                f"service {entry.service_id} returned non-JSON data", service_id=entry.service_id
            ) from exc
        return decode_result(entry.service_id, line)


def resolve_execution_mode(config: dict[str, Any]) -> str:
    mode = str(config.get("mode", "auto")).strip().lower()
    if mode == "auto":
        if docker_available():
            return "sandbox"
        _warn_once("docker not found; execution mode auto falls back to local processes without container isolation")
        return "local"
    if mode in {"local", "sandbox"}:
        return mode
    return "local"


def docker_available() -> bool:
    return shutil.which("docker") is not None


def build_child_env(
    grant: ExecutionGrant,
    *,
    inherit_for_client: bool = False,
    limits: dict[str, int] | None = None,
) -> dict[str, str]:
    """Environment for the spawned process.

    Local mode starts from an empty environment. In docker mode the docker
    client gets the parent environment, but only the granted names are
    forwarded into the container (see ``build_docker_command``).
    """
    env: dict[str, str] = dict(os.environ) if inherit_for_client else {}
    env.update(grant.env)
    bootstrap = grant.to_bootstrap()
    if limits:
        bootstrap["limits"] = limits
    env[GRANT_ENV] = json.dumps(bootstrap, ensure_ascii=True)
    return env


def build_docker_command(
    *,
    artifact_path: Path,
    bootstrap_path: Path,
    grant: ExecutionGrant,
    docker_image: str,
    memory_mb: int,
    pids_limit: int,
    container_name: str,
) -> list[str]:
    if not docker_available():
        raise SandboxExecutionError(
            service_id=grant.service_id, returncode=-1, stderr="sandbox mode requires docker installed in PATH"
        )

    container_artifact = f"{CONTAINER_ROOT}/service/{artifact_path.name}"
    docker_cmd: list[str] = [
        "docker",
        "run",
        "--rm",
        "-i",
        "--name",
        container_name,
        "--read-only",
        "--tmpfs",
        "/tmp:rw,nosuid,nodev,size=16m",
        "--network",
        "bridge" if grant.network_enabled else "none",
        "--memory",
        f"{memory_mb}m",
        "--pids-limit",
        str(pids_limit),
        "--cap-drop",
        "ALL",
        "--security-opt",
        "no-new-privileges",
        "--user",
        "65534:65534",
        "-v",
        f"{bootstrap_path}:{CONTAINER_ROOT}/bootstrap.py:ro",
        "-v",
        f"{artifact_path}:{container_artifact}:ro",
    ]
    for path in grant.write_paths:
        Path(path).mkdir(parents=True, exist_ok=True)
        docker_cmd.extend(["-v", f"{path}:{path}:rw"])
    for path in grant.read_paths:
        if path in grant.write_paths or not Path(path).exists():
            continue
        docker_cmd.extend(["-v", f"{path}:{path}:ro"])
    docker_cmd.extend(["-e", GRANT_ENV])
    for name in sorted(grant.env):
        docker_cmd.extend(["-e", name])
    docker_cmd.extend(["-w", CONTAINER_ROOT, docker_image])
    docker_cmd.extend(["python", "-I", "-S", "-B", f"{CONTAINER_ROOT}/bootstrap.py", container_artifact])
    return docker_cmd


def child_limits(grant: ExecutionGrant, config: dict[str, Any]) -> dict[str, int]:
    """rlimits the bootstrap applies to itself before running the artifact."""
    return {
        "cpu_seconds": math.ceil(grant.timeout_seconds) + 1,
        # address space, not resident memory: the interpreter maps far more than it touches
        "memory_bytes": max(512, int(config.get("memory_mb", 128)) * 4) * 1024 * 1024,
        "open_files": 64,
        "core_bytes": 0,
    }


@lru_cache(maxsize=1)
def network_namespace_prefix() -> tuple[str, ...]:
    """``unshare`` arguments that start the child in an empty network namespace.

    Empty when the host cannot create one (no util-linux, or user namespaces
    disabled); the in-process guard is then the only network barrier.
    """
    unshare = shutil.which("unshare")
    prefix: tuple[str, ...] = (unshare, "--net", "--map-root-user") if unshare else ()
    if prefix:
        try:
            trial = subprocess.run([*prefix, "true"], capture_output=True, timeout=5, check=False)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("unshare unusable: %s", exc)
            prefix = ()
        else:
            if trial.returncode != 0:
                logger.debug("unshare unusable: %s", trial.stderr.decode("utf-8", errors="replace").strip())
                prefix = ()
    if not prefix:
        logger.warning("no network namespace available; local services without network grants rely on the audit guard")
    return prefix


@lru_cache(maxsize=None)
def _warn_once(message: str) -> None:
    logger.warning(message)


class OutputLimitExceeded(Exception):
    pass


async def _feed_stdin(process: asyncio.subprocess.Process, data: bytes) -> None:
    assert process.stdin is not None
    try:
        process.stdin.write(data)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("service exited before reading its payload")
    finally:
        process.stdin.close()


async def _read_bounded(stream: asyncio.StreamReader, limit: int) -> bytes:
    buffer = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return bytes(buffer)
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise OutputLimitExceeded(len(buffer))


async def _read_tail(stream: asyncio.StreamReader, tail: bytearray, keep: int) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        tail.extend(chunk)
        del tail[:-keep]
