"""JSONL 流解码器。

cli-agent-relay shared/parsers v0.1.0

把子进程 stdout 的字节块还原为逐条的 JSON 事件：
- 缓冲区以字节保存，跨块截断的多字节 UTF-8 字符也能正确解码
- 每条记录独立解码，坏行直接丢弃，不影响前后记录
- 流关闭时对残余缓冲做最后一次解码
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

__all__ = [
    "JsonLineDecoder",
    "decode_stream",
]

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = b"\n"


class JsonLineDecoder:
    """增量 JSONL 解码器。

    Example:
        decoder = JsonLineDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                handle(event)
        for event in decoder.close():
            handle(event)

    Attributes:
        decoded: 成功解码的记录数
        discarded: 丢弃的坏记录数
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._closed = False
        self.decoded = 0
        self.discarded = 0

    @property
    def pending(self) -> bytes:
        """尚未遇到换行符的残余字节。"""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """追加一个字节块，返回其中所有完整记录解码出的事件。

        Args:
            chunk: 从管道读到的原始字节

        Returns:
            按到达顺序排列的事件列表（可能为空）
        """
        if self._closed:
            raise RuntimeError("decoder already closed")
        if not chunk:
            return []

        self._buffer += chunk
        events: list[dict[str, Any]] = []
        while RECORD_SEPARATOR in self._buffer:
            record, self._buffer = self._buffer.split(RECORD_SEPARATOR, 1)
            event = self._decode_record(record)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> list[dict[str, Any]]:
        """流结束：尝试解码缓冲区中最后一段没有换行符的记录。"""
        if self._closed:
            return []
        self._closed = True
        record, self._buffer = self._buffer, b""
        event = self._decode_record(record)
        return [event] if event is not None else []

    def _decode_record(self, record: bytes) -> dict[str, Any] | None:
        record = record.strip()
        if not record:
            return None
        try:
            data = json.loads(record.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.discarded += 1
            logger.debug(f"Discarding malformed record ({e}): {record[:100]!r}")
            return None
        if not isinstance(data, dict):
            self.discarded += 1
            logger.debug(f"Discarding non-object record: {record[:100]!r}")
            return None
        self.decoded += 1
        return data


async def decode_stream(
    chunks: AsyncIterable[bytes],
) -> AsyncIterator[dict[str, Any]]:
    """把异步字节流解码为异步事件流。

    Args:
        chunks: 异步字节块来源（如 StreamReader 读取循环）

    Yields:
        解码后的事件字典
    """
    decoder = JsonLineDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event
