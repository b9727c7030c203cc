"""聚合响应构建。

cli-agent-relay shared/invokers v0.1.0

会话结束后，把解码出的事件整理为一个完整的 JSON 响应:

    {
      "success": bool,
      "result": str,
      "messages": [...],          # 全部事件（到达顺序）
      "stream_events": [...],     # 仅 stream_event
      "raw_output": str,          # 完整 stdout
      "metadata": {...},          # 来自 result 记录
      "init": {...}               # 来自 init 记录
    }

上游缺失的字段一律落到 ""、0、[]、{}；metadata.model 与 init.model
退回到配置的模型标识。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..parsers import InitRecord, ResultRecord
from .session import ProcessSession

__all__ = [
    "ConsolidatedResponse",
    "build_response",
    "collect",
]

logger = logging.getLogger(__name__)


@dataclass
class ConsolidatedResponse:
    """聚合后的响应。

    Attributes:
        success: result 记录未标记 is_error
        result: 最终结果文本
        messages: 全部事件
        stream_events: 增量事件
        raw_output: 完整 stdout 文本
        metadata: 会话统计
        init: 会话初始化信息
    """

    success: bool
    result: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    stream_events: list[dict[str, Any]] = field(default_factory=list)
    raw_output: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    init: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "messages": self.messages,
            "stream_events": self.stream_events,
            "raw_output": self.raw_output,
            "metadata": self.metadata,
            "init": self.init,
        }


def _metadata(
    result: ResultRecord,
    tools_used: tuple[str, ...],
    model: str,
) -> dict[str, Any]:
    return {
        "session_id": result.session_id,
        "duration_ms": result.duration_ms,
        "duration_api_ms": result.duration_api_ms,
        "num_turns": result.num_turns,
        "cost_usd": result.total_cost_usd,
        "tools_used": list(tools_used),
        "model": model,
        "usage": dict(result.usage),
        "modelUsage": dict(result.model_usage),
        "permission_denials": list(result.permission_denials),
    }


def _init_summary(init: InitRecord | None, model: str) -> dict[str, Any]:
    init = init or InitRecord()
    return {
        "cwd": init.cwd,
        "tools": list(init.tools),
        "agents": list(init.agents),
        "slash_commands": list(init.slash_commands),
        "mcp_servers": list(init.mcp_servers),
        "model": init.model or model,
        "permissionMode": init.permission_mode,
        "claude_code_version": init.claude_code_version,
        "output_style": init.output_style,
    }


def build_response(session: ProcessSession) -> ConsolidatedResponse:
    """从已结束的会话构建响应。

    Args:
        session: 处于终止状态的会话

    Returns:
        ConsolidatedResponse 实例

    Raises:
        RuntimeError: 会话尚未结束
        RelayError: 会话失败、超时或缺少 result 记录
    """
    if not session.state.is_terminal:
        raise RuntimeError(f"Session is still {session.state.value}")

    error = session.failure()
    if error is not None:
        raise error

    result = session.result
    assert result is not None

    init = session.init
    model = session.model
    reported_model = init.model if init and init.model else model

    return ConsolidatedResponse(
        success=result.success,
        result=result.result,
        messages=list(session.events),
        stream_events=list(session.stream_events),
        raw_output=session.raw_output,
        metadata=_metadata(result, session.tools_used, reported_model),
        init=_init_summary(init, model),
    )


async def collect(session: ProcessSession) -> ConsolidatedResponse:
    """运行会话直到结束并构建响应。"""
    await session.run()
    response = build_response(session)
    logger.debug(
        f"Collected response: success={response.success} "
        f"events={len(response.messages)} tools={response.metadata['tools_used']}"
    )
    return response
