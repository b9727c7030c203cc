"""会话编排与管理模块。

提供会话级别的登记和管理，包括：
- SessionRegistry: 活动会话的登记和注销
- 服务关闭时批量取消所有会话（终止整个进程组）
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .shared.invokers import ProcessSession

__all__ = ["SessionRegistry", "SessionInfo"]

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    """活动会话的信息。

    Attributes:
        request_id: 唯一请求标识符
        route: 发起会话的接口（collect/stream）
        session: 关联的进程会话
        created_at: 创建时间
    """

    request_id: str
    route: str
    session: ProcessSession
    created_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        return (
            f"SessionInfo(id={self.request_id[:8]}..., "
            f"route={self.route}, "
            f"pid={self.session.pid}, "
            f"state={self.session.state.value}, "
            f"elapsed={elapsed:.1f}s)"
        )


class SessionRegistry:
    """活动会话的注册表。

    线程安全：所有操作都由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = SessionRegistry()

        request_id = registry.generate_request_id()
        registry.register(request_id, "stream", session)
        try:
            ...
        finally:
            registry.unregister(request_id)

        # 服务关闭时
        await registry.cancel_all()
        ```
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionInfo] = {}

    @staticmethod
    def generate_request_id() -> str:
        """生成唯一的请求 ID（UUID4）。"""
        return str(uuid.uuid4())

    def register(self, request_id: str, route: str, session: ProcessSession) -> None:
        """登记新会话。

        Args:
            request_id: 唯一请求标识符
            route: 发起会话的接口
            session: 进程会话

        Raises:
            ValueError: 如果 request_id 已存在
        """
        if request_id in self._sessions:
            raise ValueError(f"Request {request_id} already registered")

        info = SessionInfo(request_id=request_id, route=route, session=session)
        self._sessions[request_id] = info
        logger.debug(f"Registered session: {info}")

    def unregister(self, request_id: str) -> bool:
        """注销会话，存在则返回 True。"""
        info = self._sessions.pop(request_id, None)
        if info is None:
            return False
        logger.debug(f"Unregistered session: {info}")
        return True

    def get(self, request_id: str) -> Optional[SessionInfo]:
        return self._sessions.get(request_id)

    async def cancel(self, request_id: str, reason: str = "Request cancelled") -> bool:
        """取消指定会话。

        Returns:
            是否发起了取消（会话存在且未结束则返回 True）
        """
        info = self._sessions.get(request_id)
        if info is None or info.session.state.is_terminal:
            return False
        await info.session.cancel(reason)
        logger.info(f"Cancelled session: {info}")
        return True

    async def cancel_all(self, reason: str = "Server shutting down") -> int:
        """并发取消所有活动会话。

        Returns:
            发起取消的会话数量
        """
        active = [
            info for info in self._sessions.values()
            if not info.session.state.is_terminal
        ]
        if not active:
            return 0

        results = await asyncio.gather(
            *(info.session.cancel(reason) for info in active),
            return_exceptions=True,
        )
        for info, outcome in zip(active, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Error cancelling session {info}: {outcome!r}")

        logger.info(f"Cancelled {len(active)} active session(s)")
        return len(active)

    @property
    def active_count(self) -> int:
        """未结束的会话数量。"""
        return sum(1 for info in self._sessions.values() if not info.session.state.is_terminal)

    def list_active(self) -> list[SessionInfo]:
        """列出所有活动会话（按创建时间排序）。"""
        active = [info for info in self._sessions.values() if not info.session.state.is_terminal]
        return sorted(active, key=lambda x: x.created_at)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._sessions
