"""单次调用的进程会话。

cli-agent-relay shared/invokers v0.1.0

一个 ProcessSession 对应一次请求、一个 claude 子进程，状态互不共享。

生命周期:
    building → running → {completed, timed_out, failed}
    启动失败时 building 直接进入 failed。

串行驱动:
- stdout 读取任务只投递原始字节块和关闭/退出标记
- 截止时间定时器只投递 deadline 意图
- cancel() 只投递 cancel 意图
- 唯一的驱动任务按到达顺序消费意图，负责解码、分类、状态更新和终止转换，
  因此终止转换只会发生一次（先到先得，之后的意图被丢弃）

stderr 读取任务只把字节写入环形缓冲（4MB 上限），用于诊断。
"""

from __future__ import annotations

import asyncio
import logging
import math
import signal
import time
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator

import anyio

from ...runtime import ProcessRunner, ProcessSpec, build_environment
from ..errors import (
    MissingResultError,
    ProcessExitError,
    ProcessLaunchError,
    RelayError,
    SessionCancelledError,
    SessionTimeoutError,
)
from ..parsers import (
    ClassifiedEvent,
    EventKind,
    InitRecord,
    JsonLineDecoder,
    ResultRecord,
    classify_event,
)
from .claude import build_command
from .types import InvocationRequest, SessionState

if TYPE_CHECKING:
    from ...config import Config

__all__ = [
    "ProcessSession",
    "STDERR_MAX_SIZE",
]

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STDERR_MAX_SIZE = 4 * 1024 * 1024  # 4MB
STDERR_TAIL_LINES = 5


class _Intent(Enum):
    STDOUT = "stdout"
    STDOUT_CLOSED = "stdout_closed"
    EXITED = "exited"
    DEADLINE = "deadline"
    CANCEL = "cancel"


class _RingBuffer:
    """按块保存字节，总量超过上限时丢弃最早的块。"""

    def __init__(self, max_size: int = STDERR_MAX_SIZE) -> None:
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._max_size = max_size

    def append(self, chunk: bytes) -> None:
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self._max_size and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())

    def __len__(self) -> int:
        return self._size

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return None


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    return "\n".join(stripped.split("\n")[-lines:])


class ProcessSession:
    """单次 claude 调用的会话。

    构造时完成命令构建；start() 启动进程；之后所有状态变化都由内部驱动任务完成。

    Example:
        async with ProcessSession(request, config) as session:
            async for event in session.events_iter():
                print(event["type"])
        if session.failure():
            ...

    Attributes:
        argv: 完整命令行（prompt 为最后一项）
    """

    def __init__(
        self,
        request: InvocationRequest,
        config: "Config",
        *,
        runner: ProcessRunner | None = None,
        timeout: float | None = None,
    ) -> None:
        self._request = request
        self._config = config
        self._runner = runner or ProcessRunner()
        self._timeout = config.timeout if timeout is None else timeout

        self._state = SessionState.BUILDING
        self._argv = build_command(request, config)

        # 进程与任务
        self._process: asyncio.subprocess.Process | None = None
        self._launching = False
        self._driver: asyncio.Task[None] | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._deadline: asyncio.TimerHandle | None = None
        self._send, self._receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)

        # 解码后的会话数据
        self._decoder = JsonLineDecoder()
        self._events: list[dict[str, Any]] = []
        self._stream_events: list[dict[str, Any]] = []
        self._init: InitRecord | None = None
        self._result: ResultRecord | None = None
        self._tools_used: list[str] = []
        self._partial: list[str] = []
        self._raw_chunks: list[bytes] = []
        self._stderr = _RingBuffer()

        # 终止信息
        self._exit_code: int | None = None
        self._error: RelayError | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None

        self._changed = asyncio.Event()
        self._done = asyncio.Event()

    # ------------------------------------------------------------------
    # 只读访问
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def model(self) -> str:
        """配置的模型标识。"""
        return self._config.model

    @property
    def argv(self) -> tuple[str, ...]:
        return tuple(self._argv)

    @property
    def events(self) -> tuple[dict[str, Any], ...]:
        """到目前为止解码出的全部事件（到达顺序）。"""
        return tuple(self._events)

    @property
    def stream_events(self) -> tuple[dict[str, Any], ...]:
        return tuple(self._stream_events)

    @property
    def init(self) -> InitRecord | None:
        return self._init

    @property
    def result(self) -> ResultRecord | None:
        return self._result

    @property
    def tools_used(self) -> tuple[str, ...]:
        """调用过的工具名称，按首次出现顺序去重。"""
        return tuple(self._tools_used)

    @property
    def partial_text(self) -> str:
        """当前一轮 assistant 消息的增量文本。"""
        return "".join(self._partial)

    @property
    def raw_output(self) -> str:
        return b"".join(self._raw_chunks).decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self._stderr.text()

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def error(self) -> RelayError | None:
        return self._error

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def duration_sec(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return end - self._started_at

    def failure(self) -> RelayError | None:
        """返回导致本次运行失败的错误。

        - failed / timed_out: 记录的错误
        - completed 但没有 result 记录: MissingResultError
        - 其他: None
        """
        if self._state in (SessionState.FAILED, SessionState.TIMED_OUT):
            return self._error
        if self._state is SessionState.COMPLETED and self._result is None:
            return MissingResultError()
        return None

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动子进程，重复调用无副作用。

        启动失败时会话直接进入 failed(ProcessLaunchError)，不抛异常。
        """
        if self._state is not SessionState.BUILDING or self._launching:
            return
        self._launching = True
        self._started_at = time.monotonic()

        spec = ProcessSpec(
            argv=self._argv,
            cwd=self._config.workdir,
            env=build_environment(),
        )
        try:
            self._process = await self._runner.start(spec)
        except OSError as e:
            logger.warning(f"Failed to launch {self._argv[0]}: {e}")
            self._finish(SessionState.FAILED, ProcessLaunchError(self._argv[0], e))
            return

        self._state = SessionState.RUNNING
        logger.info(
            f"Session started pid={self._process.pid} "
            f"argv={' '.join(self._argv[:-1])} timeout={self._timeout:g}s"
        )

        loop = asyncio.get_running_loop()
        stderr_task = asyncio.create_task(self._pump_stderr())
        self._pumps = [stderr_task, asyncio.create_task(self._pump_stdout(stderr_task))]
        self._deadline = loop.call_later(self._timeout, self._post, _Intent.DEADLINE, None)
        self._driver = asyncio.create_task(self._drive())

    async def wait(self) -> SessionState:
        """等待会话进入终止状态。"""
        if self._state is SessionState.BUILDING and not self._launching:
            await self.start()
        await self._done.wait()
        return self._state

    async def run(self) -> SessionState:
        """启动并等待结束。"""
        await self.start()
        return await self.wait()

    async def cancel(self, reason: str = "Request cancelled") -> None:
        """取消会话并终止整个进程组。

        幂等；与截止时间同时触发时只有先到的意图生效。
        """
        if self._state.is_terminal:
            return
        if self._state is SessionState.BUILDING and not self._launching:
            self._finish(SessionState.FAILED, SessionCancelledError(reason))
            return
        self._post(_Intent.CANCEL, reason)
        await self._done.wait()

    async def events_iter(self) -> AsyncIterator[dict[str, Any]]:
        """从头遍历解码出的事件，直到会话结束。

        会话尚未启动时会先启动。迭代速度不影响会话对管道的读取。
        """
        await self.start()
        index = 0
        while True:
            while index < len(self._events):
                yield self._events[index]
                index += 1
            if self._state.is_terminal:
                return
            changed = self._changed
            await changed.wait()

    async def __aenter__(self) -> "ProcessSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await asyncio.shield(self.cancel())

    # ------------------------------------------------------------------
    # 读取任务
    # ------------------------------------------------------------------

    def _post(self, intent: _Intent, payload: Any) -> None:
        try:
            self._send.send_nowait((intent, payload))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            # 会话已结束，意图被丢弃
            logger.debug(f"Dropping {intent.value} intent after termination")

    async def _pump_stdout(self, stderr_task: asyncio.Task[None]) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._post(_Intent.STDOUT, chunk)
        self._post(_Intent.STDOUT_CLOSED, None)

        await stderr_task
        returncode = await process.wait()
        self._post(_Intent.EXITED, returncode)

    async def _pump_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            self._stderr.append(chunk)

    # ------------------------------------------------------------------
    # 驱动任务
    # ------------------------------------------------------------------

    async def _drive(self) -> None:
        try:
            async with self._receive:
                async for intent, payload in self._receive:
                    if intent is _Intent.STDOUT:
                        self._raw_chunks.append(payload)
                        self._ingest(self._decoder.feed(payload))
                    elif intent is _Intent.STDOUT_CLOSED:
                        self._ingest(self._decoder.close())
                    elif intent is _Intent.EXITED:
                        self._on_exit(payload)
                        return
                    elif intent is _Intent.DEADLINE:
                        logger.warning(f"Session deadline reached after {self._timeout:g}s pid={self.pid}")
                        await self._abort(SessionState.TIMED_OUT, SessionTimeoutError(self._timeout))
                        return
                    elif intent is _Intent.CANCEL:
                        logger.info(f"Session cancelled pid={self.pid}: {payload}")
                        await self._abort(SessionState.FAILED, SessionCancelledError(payload))
                        return
        except Exception as e:
            logger.exception(f"Session driver crashed pid={self.pid}")
            await self._abort(SessionState.FAILED, RelayError(f"Session driver failed: {e}"))
        finally:
            if not self._state.is_terminal:
                # 驱动任务本身被取消（如事件循环关闭）
                await self._abort(SessionState.FAILED, SessionCancelledError("Session driver cancelled"))

    def _ingest(self, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        for data in records:
            self._apply(classify_event(data))
        self._notify()

    def _apply(self, event: ClassifiedEvent) -> None:
        self._events.append(event.raw)

        if event.kind is EventKind.STREAM_EVENT:
            self._stream_events.append(event.raw)
            if event.starts_turn:
                self._partial.clear()
            elif event.text_delta:
                self._partial.append(event.text_delta)
        elif event.kind is EventKind.INIT:
            if self._init is not None:
                logger.warning(f"Duplicate init event pid={self.pid}, keeping the latest")
            self._init = event.init
        elif event.kind is EventKind.ASSISTANT:
            for invocation in event.tool_invocations:
                if invocation.name not in self._tools_used:
                    self._tools_used.append(invocation.name)
        elif event.kind is EventKind.RESULT:
            self._result = event.result

    def _on_exit(self, returncode: int | None) -> None:
        if returncode == 0:
            self._finish(SessionState.COMPLETED, None)
            return
        stderr_tail = _tail(self.stderr_text)
        self._finish(
            SessionState.FAILED,
            ProcessExitError(returncode, _signal_name(returncode), stderr_tail),
        )

    async def _abort(self, state: SessionState, error: RelayError) -> None:
        if self._state.is_terminal:
            return
        if self._process is not None:
            await self._runner.terminate(self._process)
        self._finish(state, error)

    def _finish(self, state: SessionState, error: RelayError | None) -> None:
        """执行唯一的一次终止转换并释放资源。"""
        if self._state.is_terminal:
            return
        try:
            self._state = state
            self._error = error
            self._finished_at = time.monotonic()
            if self._started_at is None:
                self._started_at = self._finished_at
            if self._process is not None:
                self._exit_code = self._process.returncode

            level = logging.INFO if error is None else logging.WARNING
            logger.log(
                level,
                f"Session {state.value} pid={self.pid} exit_code={self._exit_code} "
                f"events={len(self._events)} discarded={self._decoder.discarded} "
                f"duration={self.duration_sec:.2f}s"
                + (f" error={error}" if error else ""),
            )
            if len(self._stderr):
                logger.debug(f"Session stderr pid={self.pid}:\n{self.stderr_text}")
        finally:
            if self._deadline is not None:
                self._deadline.cancel()
            for task in self._pumps:
                if not task.done():
                    task.cancel()
            self._send.close()
            self._receive.close()
            self._done.set()
            self._notify()

    def _notify(self) -> None:
        changed = self._changed
        self._changed = asyncio.Event()
        changed.set()
