"""基础类型和枚举定义。

cli-agent-relay shared/parsers v0.1.0

本模块定义了 stream-json 事件系统的基础类型，包括：
- 顶层事件分类
- stream_event 内层事件类型
"""

from __future__ import annotations

from enum import Enum
from typing import Final

__all__ = [
    "EventKind",
    "StreamEventType",
    "TEXT_DELTA",
    "TOOL_USE",
    "VERSION",
]

# 模块版本，用于分发追踪
VERSION: Final[str] = "0.1.0"

# content_block_delta 中文本增量的 delta.type
TEXT_DELTA: Final[str] = "text_delta"

# assistant 消息 content[] 中工具调用块的 type
TOOL_USE: Final[str] = "tool_use"


class EventKind(str, Enum):
    """顶层事件分类。

    - INIT: system/init，会话初始化信息
    - ASSISTANT: 助手消息（可包含 tool_use）
    - USER: 用户消息或工具结果，原样透传
    - RESULT: 终止结果，每次运行恰好一条
    - STREAM_EVENT: --include-partial-messages 产生的增量事件
    - OTHER: 其他 system 子类型或未知类型，原样透传
    """

    INIT = "init"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    STREAM_EVENT = "stream_event"
    OTHER = "other"


class StreamEventType(str, Enum):
    """stream_event.event.type 取值（只列出关心的）。"""

    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
