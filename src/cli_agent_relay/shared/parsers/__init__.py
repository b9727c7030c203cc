"""Claude stream-json 解析模块。

cli-agent-relay shared/parsers v0.1.0

- decoder: 字节流 → JSON 事件（JSONL，坏行丢弃）
- claude: JSON 事件 → 分类结果（init / stream_event / assistant / user / result）

基础用法:
    from cli_agent_relay.shared.parsers import JsonLineDecoder, classify_event

    decoder = JsonLineDecoder()
    for event in decoder.feed(chunk):
        classified = classify_event(event)
        if classified.text_delta:
            print(classified.text_delta, end="")
"""

from __future__ import annotations

from .base import TEXT_DELTA, TOOL_USE, VERSION, EventKind, StreamEventType
from .claude import (
    ClassifiedEvent,
    InitRecord,
    ResultRecord,
    ToolInvocation,
    classify_event,
)
from .decoder import JsonLineDecoder, decode_stream

__version__ = VERSION

__all__ = [
    "__version__",
    # 枚举
    "EventKind",
    "StreamEventType",
    "TEXT_DELTA",
    "TOOL_USE",
    # 解码
    "JsonLineDecoder",
    "decode_stream",
    # 分类
    "ClassifiedEvent",
    "InitRecord",
    "ResultRecord",
    "ToolInvocation",
    "classify_event",
]
