"""应用入口测试：关闭信号、强制退出和日志配置。"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from unittest import mock

import pytest

from cli_agent_relay.app import FORCE_EXIT_CODE, ShutdownTrigger, configure_logging, run_server

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX-specific test")


class TestShutdownTrigger:

    @pytest.mark.asyncio
    async def test_sigterm_is_graceful(self):
        trigger = ShutdownTrigger()
        trigger.fire(signal.SIGTERM)
        await asyncio.wait_for(trigger.wait(), timeout=1)
        assert trigger.triggered
        assert not trigger.forced

    @pytest.mark.asyncio
    async def test_double_sigint_forces_exit(self):
        trigger = ShutdownTrigger(force_window=5.0)
        trigger.fire(signal.SIGINT)
        assert not trigger.forced
        trigger.fire(signal.SIGINT)
        assert trigger.forced

    @pytest.mark.asyncio
    async def test_slow_second_sigint_is_not_forced(self):
        trigger = ShutdownTrigger(force_window=0.0)
        trigger.fire(signal.SIGINT)
        trigger.fire(signal.SIGINT)
        assert trigger.triggered
        assert not trigger.forced

    @pytest.mark.asyncio
    @posix_only
    async def test_real_signal_delivery(self):
        trigger = ShutdownTrigger()
        trigger.install()
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(trigger.wait(), timeout=2)
        finally:
            trigger.uninstall()
        assert trigger.triggered


class TestRunServer:

    @pytest.mark.asyncio
    async def test_stops_on_trigger(self, make_config):
        trigger = ShutdownTrigger()
        asyncio.get_running_loop().call_later(0.2, trigger.fire, signal.SIGTERM)

        await asyncio.wait_for(run_server(make_config(port=0), trigger), timeout=5)
        assert trigger.triggered
        assert not trigger.forced

    @pytest.mark.asyncio
    async def test_forced_exit_code(self, make_config):
        trigger = ShutdownTrigger(force_window=5.0)

        def double_tap() -> None:
            trigger.fire(signal.SIGINT)
            trigger.fire(signal.SIGINT)

        asyncio.get_running_loop().call_later(0.2, double_tap)

        with pytest.raises(SystemExit) as excinfo:
            await run_server(make_config(port=0), trigger)
        assert excinfo.value.code == FORCE_EXIT_CODE


class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def _restore_level(self):
        package_logger = logging.getLogger("cli_agent_relay")
        level = package_logger.level
        yield
        package_logger.setLevel(level)

    def test_default_logs_to_stderr(self, make_config):
        with mock.patch("logging.basicConfig") as basic_config:
            configure_logging(make_config())

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.WARNING
        (handler,) = kwargs["handlers"]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr
        assert logging.getLogger("cli_agent_relay").level == logging.INFO

    def test_debug_logs_to_file(self, make_config, tmp_path):
        log_file = tmp_path / "debug.log"
        with mock.patch("logging.basicConfig") as basic_config:
            configure_logging(make_config(log_debug=True, log_file=str(log_file)))

        (handler,) = basic_config.call_args.kwargs["handlers"]
        try:
            assert isinstance(handler, logging.FileHandler)
            assert handler.baseFilename == str(log_file)
        finally:
            handler.close()
        assert logging.getLogger("cli_agent_relay").level == logging.DEBUG
