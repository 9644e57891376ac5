"""Parent <-> sandbox wire contract: one JSON line in, one JSON line out."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


@dataclass
class ExecutionContext:
    chat_id: str
    service_id: str
    user_id: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)
    datasets: dict[str, Any] = field(default_factory=dict)
    locale: Optional[str] = None
    timezone: str = "UTC"
    state: Any = None
    state_version: Optional[int] = None


@dataclass
class ExecutionPayload:
    event: dict[str, Any]
    context: ExecutionContext

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "context": asdict(self.context)}

    def to_line(self) -> str:
        # ensure_ascii keeps the payload on a single line regardless of content
        return json.dumps(self.to_dict(), ensure_ascii=True, separators=(",", ":")) + "\n"


class _ResultModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class StateDirective(_ResultModel):
    op: Literal["clear", "replace", "merge"]
    value: Any = None

    @model_validator(mode="after")
    def _merge_needs_mapping(self) -> "StateDirective":
        if self.op == "merge" and not isinstance(self.value, dict):
            raise ValueError("merge directive requires an object value")
        return self


class Button(_ResultModel):
    text: str = Field(min_length=1, max_length=64)
    params: dict[str, str] | None = None
    url: str | None = None

    @model_validator(mode="after")
    def _one_action(self) -> "Button":
        if (self.params is None) == (self.url is None):
            raise ValueError("button needs exactly one of params or url")
        return self


class ReplyResult(_ResultModel):
    type: Literal["reply"]
    text: str = Field(min_length=1)
    buttons: list[list[Button]] = Field(default_factory=list)
    state: StateDirective | None = None


class EditResult(_ResultModel):
    type: Literal["edit"]
    text: str = Field(min_length=1)
    buttons: list[list[Button]] = Field(default_factory=list)
    state: StateDirective | None = None


class NoneResult(_ResultModel):
    type: Literal["none"]
    state: StateDirective | None = None


class ErrorResult(_ResultModel):
    type: Literal["error"]
    message: str | None = None
    state: StateDirective | None = None


ExecutionResult = Annotated[
    Union[ReplyResult, EditResult, NoneResult, ErrorResult],
    Field(discriminator="type"),
]
_result_adapter: TypeAdapter[Any] = TypeAdapter(ExecutionResult)


def parse_result(raw: Any) -> ReplyResult | EditResult | NoneResult | ErrorResult:
    """Validate a decoded result object; raises ``pydantic.ValidationError``."""
    return _result_adapter.validate_python(raw)
