"""Claude Code CLI 事件分类器。

cli-agent-relay shared/parsers v0.1.0

对 stream-json 输出中的单条事件做分类并提取字段，纯函数、无 I/O。

Claude Code CLI 事件类型:
- system/init: 会话初始化（cwd, tools, agents, mcp_servers, model 等）
- stream_event: 增量事件，content_block_delta/text_delta 携带文本片段
- assistant: 助手消息，content[] 可包含 thinking/text/tool_use
- user: 用户消息或工具结果，原样透传
- result: 会话结束，包含结果文本与统计信息

设计原则：
1. 向前兼容 - extra='ignore' 忽略未知字段
2. 缺省友好 - null 或缺失字段一律落到固定的空值/零值
3. 不抛异常 - 字段类型不符时退回默认记录
"""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .base import TEXT_DELTA, TOOL_USE, EventKind, StreamEventType

__all__ = [
    "InitRecord",
    "ToolInvocation",
    "ResultRecord",
    "ClassifiedEvent",
    "classify_event",
]

logger = logging.getLogger(__name__)

_RecordT = TypeVar("_RecordT", bound="_Record")


class _Record(BaseModel):
    """提取记录的基类：忽略未知字段，null 视为缺失。"""

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _string_list(value: Any) -> list[str]:
    """宽松地把值规整为字符串列表。

    {name: ...} 形式的对象（如 init.mcp_servers）取其 name。
    """
    if not isinstance(value, list):
        return []
    names: list[str] = []
    for item in value:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and isinstance(item.get("name"), str):
            names.append(item["name"])
    return names


class InitRecord(_Record):
    """system/init 事件中的会话信息。"""

    session_id: str = ""
    cwd: str = ""
    tools: list[str] = Field(default_factory=list)
    agents: list[str] = Field(default_factory=list)
    slash_commands: list[str] = Field(default_factory=list)
    mcp_servers: list[str] = Field(default_factory=list)
    model: str = ""
    permission_mode: str = Field(default="", alias="permissionMode")
    claude_code_version: str = ""
    output_style: str = ""

    @field_validator("tools", "agents", "slash_commands", "mcp_servers", mode="before")
    @classmethod
    def _names(cls, value: Any) -> list[str]:
        return _string_list(value)


class ToolInvocation(_Record):
    """assistant 消息中的一次 tool_use。"""

    name: str
    id: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ResultRecord(_Record):
    """result 事件（终止记录）。"""

    subtype: str = ""
    is_error: bool = False
    result: str = ""
    session_id: str = ""
    duration_ms: int | float = 0
    duration_api_ms: int | float = 0
    num_turns: int = 0
    total_cost_usd: float = 0.0
    usage: dict[str, Any] = Field(default_factory=dict)
    model_usage: dict[str, Any] = Field(default_factory=dict, alias="modelUsage")
    permission_denials: list[Any] = Field(default_factory=list)

    @field_validator("result", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @property
    def success(self) -> bool:
        return not self.is_error


class ClassifiedEvent(BaseModel):
    """单条事件的分类结果。

    Attributes:
        kind: 顶层分类
        raw: 原始事件（不做修改）
        init: INIT 事件提取的信息
        result: RESULT 事件提取的信息
        tool_invocations: ASSISTANT 事件中的工具调用（按出现顺序）
        stream_type: STREAM_EVENT 的内层事件类型
        text_delta: STREAM_EVENT 为文本增量时的文本片段
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    raw: dict[str, Any] = Field(default_factory=dict)
    init: InitRecord | None = None
    result: ResultRecord | None = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)
    stream_type: str | None = None
    text_delta: str | None = None

    @property
    def starts_turn(self) -> bool:
        """是否为新一轮 assistant 消息的开始。"""
        return self.stream_type == StreamEventType.MESSAGE_START.value


def _validate(model: type[_RecordT], data: Any) -> _RecordT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Falling back to default {model.__name__}: {e.error_count()} field error(s)")
        return model()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _classify_stream_event(data: dict[str, Any]) -> ClassifiedEvent:
    inner = _as_dict(data.get("event"))
    stream_type = inner.get("type") if isinstance(inner.get("type"), str) else None

    text_delta = None
    if stream_type == StreamEventType.CONTENT_BLOCK_DELTA.value:
        delta = _as_dict(inner.get("delta"))
        if delta.get("type") == TEXT_DELTA and isinstance(delta.get("text"), str):
            text_delta = delta["text"]

    return ClassifiedEvent(
        kind=EventKind.STREAM_EVENT,
        raw=data,
        stream_type=stream_type,
        text_delta=text_delta,
    )


def _classify_assistant(data: dict[str, Any]) -> ClassifiedEvent:
    content = _as_dict(data.get("message")).get("content")
    invocations: list[ToolInvocation] = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict) or block.get("type") != TOOL_USE:
                continue
            name = block.get("name")
            if not isinstance(name, str) or not name:
                continue
            invocations.append(ToolInvocation(
                name=name,
                id=block.get("id") if isinstance(block.get("id"), str) else "",
                input=_as_dict(block.get("input")),
            ))

    return ClassifiedEvent(
        kind=EventKind.ASSISTANT,
        raw=data,
        tool_invocations=invocations,
    )


def classify_event(data: dict[str, Any]) -> ClassifiedEvent:
    """识别事件类型并提取相关字段。

    Args:
        data: 解码后的原始事件

    Returns:
        分类结果；未识别的事件归为 OTHER
    """
    event_type = data.get("type")

    if event_type == "system" and data.get("subtype") == "init":
        return ClassifiedEvent(
            kind=EventKind.INIT,
            raw=data,
            init=_validate(InitRecord, data),
        )
    elif event_type == "stream_event":
        return _classify_stream_event(data)
    elif event_type == "assistant":
        return _classify_assistant(data)
    elif event_type == "result":
        return ClassifiedEvent(
            kind=EventKind.RESULT,
            raw=data,
            result=_validate(ResultRecord, data),
        )
    elif event_type == "user":
        return ClassifiedEvent(kind=EventKind.USER, raw=data)
    else:
        return ClassifiedEvent(kind=EventKind.OTHER, raw=data)
