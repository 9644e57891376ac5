from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class BaseEvent:
    chat_id: str
    user_id: Optional[str] = None
    message_id: Optional[int] = None
    chat_type: str = "group"
    type: str = field(init=False)

    def payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommandEvent(BaseEvent):
    command: str = ""
    args: str = ""
    text: str = ""

    def __post_init__(self) -> None:
        self.type = "command"


@dataclass
class CallbackEvent(BaseEvent):
    data: str = ""
    callback_id: Optional[str] = None
    params: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = "callback"


@dataclass
class MessageEvent(BaseEvent):
    text: str = ""

    def __post_init__(self) -> None:
        self.type = "message"


@dataclass
class ScheduledEvent(BaseEvent):
    schedule: str = ""
    fired_at: str = ""

    def __post_init__(self) -> None:
        self.type = "scheduled"


@dataclass
class MembershipEvent(BaseEvent):
    """Bot or member joined/left; never delivered to services."""

    change: str = ""

    def __post_init__(self) -> None:
        self.type = "membership"
