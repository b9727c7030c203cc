"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path
from typing import Callable

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cli_agent_relay.config import Config  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_CLAUDE = FIXTURES_DIR / "fake_claude.py"

IS_WINDOWS = sys.platform == "win32"


@pytest.fixture
def fake_claude(tmp_path: Path) -> Path:
    """可执行的 fake claude 包装脚本（POSIX）。"""
    if IS_WINDOWS:
        pytest.skip("fake claude wrapper requires a POSIX shell")
    wrapper = tmp_path / "claude"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_CLAUDE}" "$@"\n')
    wrapper.chmod(0o755)
    return wrapper


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """子进程工作目录。"""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_config(fake_claude: Path, workdir: Path) -> Callable[..., Config]:
    """构造指向 fake claude 的配置，可覆盖任意字段。"""

    def _make(**overrides) -> Config:
        base = Config(
            claude_path=str(fake_claude),
            timeout=10.0,
            workdir=workdir,
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def scenario(monkeypatch: pytest.MonkeyPatch) -> Callable[[str], None]:
    """选择 fake claude 的输出场景。"""

    def _set(name: str) -> None:
        monkeypatch.setenv("FAKE_CLAUDE_SCENARIO", name)

    return _set
