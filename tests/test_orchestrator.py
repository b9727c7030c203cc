"""SessionRegistry 模块测试。

测试会话注册表的基本功能：
- 会话登记和注销
- 批量取消
- 活动状态查询
"""

from __future__ import annotations

import asyncio
from unittest import mock

import pytest

from cli_agent_relay.orchestrator import SessionInfo, SessionRegistry
from cli_agent_relay.shared.errors import SessionCancelledError
from cli_agent_relay.shared.invokers import InvocationRequest, ProcessSession, SessionState


def _mock_session(state: SessionState = SessionState.RUNNING) -> mock.MagicMock:
    session = mock.MagicMock(spec=ProcessSession)
    session.state = state
    session.pid = 4242
    session.cancel = mock.AsyncMock()
    return session


class TestSessionRegistry:
    """SessionRegistry 基本功能测试。"""

    def test_generate_request_id(self):
        """生成唯一请求 ID。"""
        id1 = SessionRegistry.generate_request_id()
        id2 = SessionRegistry.generate_request_id()
        assert id1 != id2
        assert len(id1) == 36  # UUID4 格式

    def test_register_and_unregister(self):
        registry = SessionRegistry()
        registry.register("req-1", "collect", _mock_session())
        assert "req-1" in registry
        assert len(registry) == 1

        assert registry.unregister("req-1") is True
        assert "req-1" not in registry
        assert len(registry) == 0

    def test_register_duplicate_raises_error(self):
        registry = SessionRegistry()
        registry.register("req-1", "collect", _mock_session())
        with pytest.raises(ValueError, match="already registered"):
            registry.register("req-1", "stream", _mock_session())

    def test_unregister_nonexistent_returns_false(self):
        assert SessionRegistry().unregister("nonexistent") is False

    def test_active_count_ignores_terminal(self):
        registry = SessionRegistry()
        registry.register("a", "collect", _mock_session(SessionState.RUNNING))
        registry.register("b", "stream", _mock_session(SessionState.COMPLETED))
        registry.register("c", "stream", _mock_session(SessionState.BUILDING))
        assert registry.active_count == 2
        assert [info.request_id for info in registry.list_active()] == ["a", "c"]

    def test_session_info_repr(self):
        info = SessionInfo(request_id="12345678-abcd", route="stream", session=_mock_session())
        text = repr(info)
        assert "12345678" in text
        assert "pid=4242" in text
        assert "state=running" in text


class TestCancel:
    """取消。"""

    @pytest.mark.asyncio
    async def test_cancel_single(self):
        registry = SessionRegistry()
        session = _mock_session()
        registry.register("req-1", "collect", session)
        assert await registry.cancel("req-1") is True
        session.cancel.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_terminal_or_missing(self):
        registry = SessionRegistry()
        registry.register("done", "collect", _mock_session(SessionState.COMPLETED))
        assert await registry.cancel("done") is False
        assert await registry.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        registry = SessionRegistry()
        running = [_mock_session() for _ in range(3)]
        finished = _mock_session(SessionState.TIMED_OUT)
        for i, session in enumerate(running):
            registry.register(f"req-{i}", "stream", session)
        registry.register("req-done", "collect", finished)

        assert await registry.cancel_all() == 3
        for session in running:
            session.cancel.assert_awaited_once_with("Server shutting down")
        finished.cancel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_all_tolerates_errors(self):
        registry = SessionRegistry()
        broken = _mock_session()
        broken.cancel.side_effect = RuntimeError("boom")
        ok = _mock_session()
        registry.register("broken", "stream", broken)
        registry.register("ok", "stream", ok)
        assert await registry.cancel_all() == 2
        ok.cancel.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_all_empty(self):
        assert await SessionRegistry().cancel_all() == 0

    @pytest.mark.asyncio
    async def test_cancel_all_terminates_live_processes(self, make_config, scenario):
        scenario("slow")
        registry = SessionRegistry()
        sessions = [
            ProcessSession(InvocationRequest(prompt=f"task {i}"), make_config())
            for i in range(2)
        ]
        for i, session in enumerate(sessions):
            await session.start()
            registry.register(f"req-{i}", "stream", session)

        assert await asyncio.wait_for(registry.cancel_all(), timeout=10) == 2
        for session in sessions:
            assert session.state == SessionState.FAILED
            assert isinstance(session.error, SessionCancelledError)
            assert session.exit_code is not None
        assert registry.active_count == 0
