"""CAR 环境变量配置管理。

环境变量:
    CAR_CLAUDE_PATH: claude 可执行文件路径
        - 默认 "claude"（从 PATH 查找）

    CAR_MODEL: 固定使用的模型标识
        - 默认 claude-opus-4-5-20251101

    CAR_TIMEOUT: 单次会话截止时间（秒）
        - 默认 1200（20 分钟）
        - 限制在 1-86400 范围

    CAR_SKIP_PERMISSIONS: 是否附加 --dangerously-skip-permissions
        - true/1/yes = 附加 (默认)
        - false/0/no = 不附加

    CAR_WORKDIR: 子进程工作目录
        - 默认为服务启动时的当前目录

    CAR_HOST / CAR_PORT: HTTP 监听地址
        - 默认 127.0.0.1 / 3000

    CAR_AGENTS_FILE: 默认子代理定义文件（JSON 对象，name → 定义）
        - 设置后替换内置的默认子代理

    CAR_MCP_CONFIG_FILE: 外部服务端点定义文件（JSON 数组）
        - 例: [{"name": "notion", "transport": "http", "url": "https://mcp.notion.com/mcp"}]

    CAR_LOG_DEBUG: 日志调试模式
        - 开启时以 DEBUG 级别写入临时目录下的 car_debug_*.log
        - 默认关闭，INFO 级别输出到 stderr
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from .shared.invokers.types import (
    AgentDefinition,
    AgentModel,
    McpServer,
    parse_agents,
    parse_mcp_servers,
)

__all__ = [
    "Config",
    "DEFAULT_AGENTS",
    "DEFAULT_MODEL",
    "DEFAULT_TIMEOUT",
    "load_config",
    "get_config",
    "reload_config",
]

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-opus-4-5-20251101"
DEFAULT_TIMEOUT = 1200.0  # 20 分钟，足够多轮 agent 运行
DEFAULT_PORT = 3000

# 内置默认子代理
DEFAULT_AGENTS: Mapping[str, AgentDefinition] = MappingProxyType({
    "financial-analyst": AgentDefinition(
        description="Financial analysis specialist. Use for stocks, economic indicators and market trends.",
        prompt="You are a financial analyst. Cite data sources, mention risks, include a disclaimer.",
        tools=("WebSearch", "WebFetch"),
        model=AgentModel.SONNET,
    ),
})


@dataclass(frozen=True)
class Config:
    """CAR 配置（不可变，显式传入每个会话）。

    Attributes:
        claude_path: claude 可执行文件
        model: 固定模型标识
        timeout: 会话截止时间（秒）
        skip_permissions: 是否跳过权限确认
        workdir: 子进程工作目录
        host: 监听地址
        port: 监听端口
        default_agents: 默认子代理
        mcp_servers: 预配置的外部服务端点
        log_debug: 日志调试模式
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    claude_path: str = "claude"
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_TIMEOUT
    skip_permissions: bool = True
    workdir: Path = field(default_factory=Path.cwd)
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    default_agents: Mapping[str, AgentDefinition] = field(default_factory=lambda: DEFAULT_AGENTS)
    mcp_servers: tuple[McpServer, ...] = ()
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        agents_str = ",".join(sorted(self.default_agents)) or "none"
        servers_str = ",".join(s.name for s in self.mcp_servers) or "none"
        return (
            f"Config(claude_path={self.claude_path}, "
            f"model={self.model}, "
            f"timeout={self.timeout:g}s, "
            f"skip_permissions={self.skip_permissions}, "
            f"workdir={self.workdir}, "
            f"bind={self.host}:{self.port}, "
            f"default_agents={agents_str}, "
            f"mcp_servers={servers_str}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """未设置时返回 default，其余按常见真值词判断。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None) -> float:
    """解析超时时间环境变量。"""
    if not value:
        return DEFAULT_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        return DEFAULT_TIMEOUT
    return max(1.0, min(timeout, 86400.0))


def _parse_port(value: str | None) -> int:
    """解析端口环境变量。"""
    if not value:
        return DEFAULT_PORT
    try:
        port = int(value)
    except ValueError:
        return DEFAULT_PORT
    return port if 0 <= port <= 65535 else DEFAULT_PORT


def _read_json_file(path: str | None) -> object:
    """读取 JSON 文件，文件不存在或格式错误时返回 None。"""
    if not path:
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return None


def _load_default_agents(path: str | None) -> Mapping[str, AgentDefinition]:
    data = _read_json_file(path)
    if data is None:
        return DEFAULT_AGENTS
    return MappingProxyType(parse_agents(data))


def _debug_log_path() -> str:
    """临时目录下按启动时间命名的调试日志（绝对路径）。"""
    log_dir = Path(tempfile.gettempdir(), "cli-agent-relay")
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = f"{datetime.now():%Y%m%d_%H%M%S}"
    return str((log_dir / f"car_debug_{stamp}.log").resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("CAR_LOG_DEBUG"), default=False)
    log_file = _debug_log_path() if log_debug else None
    workdir = os.environ.get("CAR_WORKDIR")

    return Config(
        claude_path=os.environ.get("CAR_CLAUDE_PATH") or "claude",
        model=os.environ.get("CAR_MODEL") or DEFAULT_MODEL,
        timeout=_parse_timeout(os.environ.get("CAR_TIMEOUT")),
        skip_permissions=_parse_bool(os.environ.get("CAR_SKIP_PERMISSIONS"), default=True),
        workdir=Path(workdir).expanduser() if workdir else Path.cwd(),
        host=os.environ.get("CAR_HOST") or "127.0.0.1",
        port=_parse_port(os.environ.get("CAR_PORT")),
        default_agents=_load_default_agents(os.environ.get("CAR_AGENTS_FILE")),
        mcp_servers=parse_mcp_servers(_read_json_file(os.environ.get("CAR_MCP_CONFIG_FILE"))),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载，仅供入口点使用）
_config: Config | None = None


def get_config() -> Config:
    """首次调用时读取环境变量，之后返回缓存。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """丢弃缓存并重新读取环境变量。"""
    global _config
    _config = load_config()
    return _config
