"""实时转发。

cli-agent-relay shared/invokers v0.1.0

把会话解码出的事件按到达顺序逐行写给客户端（每行一个紧凑 JSON）。
会话以失败结束时，追加一条带内错误记录:

    {"type": "error", "message": "..."}

客户端断开后写入变为空操作，转发停止消费事件，由调用方的会话上下文负责取消进程。
会话本身持续读取管道，不受转发速度影响。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from .session import ProcessSession

__all__ = [
    "LiveRelay",
    "Writer",
    "encode_line",
]

logger = logging.getLogger(__name__)

# 类型别名：异步写入函数（如 aiohttp StreamResponse.write）
Writer = Callable[[bytes], Awaitable[Any]]


def encode_line(record: dict[str, Any]) -> bytes:
    """序列化为一行 JSON（以换行结尾）。"""
    return (json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class LiveRelay:
    """单个会话的实时转发器。

    Attributes:
        session: 被转发的会话
        closed: 客户端是否已断开
        emitted: 成功写出的记录数
    """

    def __init__(self, session: ProcessSession, write: Writer) -> None:
        self.session = session
        self._write = write
        self.closed = False
        self.emitted = 0

    async def emit(self, record: dict[str, Any]) -> bool:
        """写出一条记录，客户端已断开时返回 False。"""
        if self.closed:
            return False
        try:
            await self._write(encode_line(record))
        except ConnectionError as e:
            # aiohttp ClientConnectionResetError 也是 ConnectionError
            logger.info(f"Client disconnected after {self.emitted} record(s): {e}")
            self.closed = True
            return False
        self.emitted += 1
        return True

    async def run(self) -> None:
        """转发全部事件，失败时追加错误记录。"""
        async for event in self.session.events_iter():
            if not await self.emit(event):
                return

        error = self.session.failure()
        if error is not None:
            await self.emit({"type": "error", "message": str(error)})
