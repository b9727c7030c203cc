"""CLI Agent Relay - claude CLI 的 HTTP 流式会话服务。

环境变量:
    CAR_CLAUDE_PATH: claude 可执行文件（默认从 PATH 查找）
    CAR_MODEL: 固定模型标识
    CAR_TIMEOUT: 会话截止时间（秒，默认 1200）
    CAR_HOST / CAR_PORT: 监听地址（默认 127.0.0.1:3000）

用法:
    uvx cli-agent-relay
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
