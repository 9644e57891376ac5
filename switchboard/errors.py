from __future__ import annotations


class SwitchboardError(Exception):
    """Base class for failures of a single dispatch."""


class ConfigResolutionError(SwitchboardError):
    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class DataFetchError(SwitchboardError):
    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class DataValidationError(SwitchboardError):
    def __init__(self, message: str, *, url: str, schema_name: str) -> None:
        super().__init__(message)
        self.url = url
        self.schema_name = schema_name


class SandboxError(SwitchboardError):
    """Base class for failures of one sandboxed invocation."""

    def __init__(self, message: str, *, service_id: str) -> None:
        super().__init__(message)
        self.service_id = service_id


class SandboxTimeoutError(SandboxError):
    def __init__(self, *, service_id: str, timeout_seconds: float) -> None:
        super().__init__(f"service {service_id} timed out after {timeout_seconds:.2f}s", service_id=service_id)
        self.timeout_seconds = timeout_seconds


class SandboxExecutionError(SandboxError):
    def __init__(self, *, service_id: str, returncode: int, stderr: str) -> None:
        super().__init__(f"service {service_id} exited rc={returncode}: {stderr}", service_id=service_id)
        self.returncode = returncode
        self.stderr = stderr


class SandboxProtocolError(SandboxError):
    def __init__(self, message: str, *, service_id: str, output: str = "") -> None:
        super().__init__(message, service_id=service_id)
        self.output = output


class StateConflictError(SwitchboardError):
    def __init__(self, *, chat_id: str, service_id: str, expected_version: int | None) -> None:
        super().__init__(
            f"flow state conflict chat={chat_id} service={service_id} expected_version={expected_version}"
        )
        self.chat_id = chat_id
        self.service_id = service_id
        self.expected_version = expected_version


class AuthorizationError(SwitchboardError):
    def __init__(self, message: str, *, chat_id: str, user_id: str | None) -> None:
        super().__init__(message)
        self.chat_id = chat_id
        self.user_id = user_id
