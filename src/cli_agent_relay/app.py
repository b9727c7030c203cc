"""CLI Agent Relay 应用入口。

负责日志初始化、HTTP 服务的启动与关闭。

关闭时先停止监听，再取消注册表中的所有会话（终止其进程组）。
连续两次 Ctrl+C 视为强制退出，清理后以 130 退出。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time

from aiohttp import web

from .config import Config, get_config
from .orchestrator import SessionRegistry
from .server import create_app

__all__ = ["ShutdownTrigger", "configure_logging", "run_server", "main"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FORCE_EXIT_CODE = 130  # 128 + SIGINT


class ShutdownTrigger:
    """把 SIGINT / SIGTERM 转换为关闭事件。

    第一次信号请求优雅关闭；在 ``force_window`` 秒内再次收到 SIGINT
    则标记为强制退出。Windows 上不安装处理器，依赖 KeyboardInterrupt。
    """

    def __init__(self, force_window: float = 1.0) -> None:
        self.force_window = force_window
        self.forced = False
        self._event = asyncio.Event()
        self._first_interrupt: float | None = None
        self._installed: list[signal.Signals] = []

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    def install(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.fire, sig)
            self._installed.append(sig)

    def uninstall(self) -> None:
        loop = asyncio.get_running_loop()
        while self._installed:
            loop.remove_signal_handler(self._installed.pop())

    def fire(self, sig: signal.Signals = signal.SIGTERM) -> None:
        now = time.monotonic()
        if sig == signal.SIGINT:
            if self._first_interrupt is not None and now - self._first_interrupt < self.force_window:
                logger.warning("Second SIGINT received, forcing exit")
                self.forced = True
            elif self._first_interrupt is None:
                self._first_interrupt = now
                logger.info(f"SIGINT received, press Ctrl+C again within {self.force_window}s to force exit")
        else:
            logger.info(f"{sig.name} received, shutting down")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_server(config: Config | None = None, trigger: ShutdownTrigger | None = None) -> None:
    """启动 HTTP 服务，阻塞到关闭信号到来。"""
    config = config or get_config()
    trigger = trigger or ShutdownTrigger()
    registry = SessionRegistry()
    runner = web.AppRunner(create_app(config, registry))
    logger.info(f"Starting CLI Agent Relay: {config}")

    trigger.install()
    try:
        await runner.setup()
        await web.TCPSite(runner, config.host, config.port).start()
        logger.info(f"Listening on http://{config.host}:{config.port}")
        await trigger.wait()
    finally:
        cancelled = await registry.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} running session(s)")
        await runner.cleanup()
        trigger.uninstall()
        logger.info("Server stopped")

    if trigger.forced:
        sys.exit(FORCE_EXIT_CODE)


def configure_logging(config: Config) -> None:
    """第三方库保持 WARNING，只放开 cli_agent_relay 命名空间。

    CAR_LOG_DEBUG 打开时以 DEBUG 级别写入临时文件，否则 INFO 写 stderr。
    """
    if config.log_debug and config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        level = logging.INFO
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("cli_agent_relay").setLevel(level)


def main() -> None:
    """主入口点。"""
    config = get_config()
    configure_logging(config)
    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        sys.exit(FORCE_EXIT_CODE)


if __name__ == "__main__":
    main()
