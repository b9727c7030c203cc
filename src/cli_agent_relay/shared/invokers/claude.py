"""Claude CLI 命令构建。

cli-agent-relay shared/invokers v0.1.0

命令格式:
    claude \
      --print \
      --output-format stream-json \
      --verbose \
      --include-partial-messages \
      --model {model} \
      [--dangerously-skip-permissions] \
      [--allowedTools "{a,b}"] \
      [--disallowedTools "{a,b}"] \
      [--system-prompt "{system_prompt}"] \
      [--append-system-prompt "{append_system_prompt}"] \
      [--mcp-config '{json}'] \
      [--agents '{json}'] \
      "{prompt}"

Prompt 作为最后一个位置参数传递，stdin 启动后立即关闭。
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from .types import AgentDefinition, InvocationRequest, McpServer

if TYPE_CHECKING:
    from ...config import Config

__all__ = [
    "build_command",
    "merge_agents",
    "merge_mcp_servers",
    "BASE_FLAGS",
]

# 硬编码：非交互模式 + 流式 JSON 输出（stream-json 在 --print 模式下需要 --verbose）
# --include-partial-messages 产生 stream_event 增量事件
BASE_FLAGS: tuple[str, ...] = (
    "--print",
    "--output-format", "stream-json",
    "--verbose",
    "--include-partial-messages",
)


def merge_agents(
    defaults: Mapping[str, AgentDefinition],
    user: Mapping[str, AgentDefinition],
    use_defaults: bool = True,
) -> dict[str, AgentDefinition]:
    """合并子代理定义：先复制默认项，再按名称用用户定义覆盖。

    Args:
        defaults: 默认子代理
        user: 用户定义的子代理
        use_defaults: 是否包含默认子代理

    Returns:
        新的合并结果（不修改输入）
    """
    merged: dict[str, AgentDefinition] = {}
    if use_defaults:
        for name, agent in defaults.items():
            merged[name] = agent
    for name, agent in user.items():
        merged[name] = agent
    return merged


def merge_mcp_servers(*groups: Iterable[McpServer]) -> dict[str, McpServer]:
    """按名称合并端点定义，后出现的覆盖先出现的。"""
    merged: dict[str, McpServer] = {}
    for group in groups:
        for server in group:
            merged[server.name] = server
    return merged


def _compact_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def build_command(request: InvocationRequest, config: "Config") -> list[str]:
    """构建 Claude CLI 命令。

    Args:
        request: 调用请求
        config: 服务配置（可执行文件、模型、默认子代理、预配置端点）

    Returns:
        命令行参数列表，prompt 为最后一项
    """
    cmd = [config.claude_path, *BASE_FLAGS]

    # 固定模型
    cmd.extend(["--model", config.model])

    if config.skip_permissions:
        cmd.append("--dangerously-skip-permissions")

    # 工具白名单 / 黑名单
    if request.allowed_tools:
        cmd.extend(["--allowedTools", ",".join(request.allowed_tools)])
    if request.disallowed_tools:
        cmd.extend(["--disallowedTools", ",".join(request.disallowed_tools)])

    # 系统提示词
    if request.system_prompt:
        cmd.extend(["--system-prompt", request.system_prompt])
    if request.append_system_prompt:
        cmd.extend(["--append-system-prompt", request.append_system_prompt])

    # 外部服务端点：预配置 + 请求附带（同名时请求覆盖）
    servers = merge_mcp_servers(config.mcp_servers, request.mcp_servers)
    if servers:
        mcp_config = {name: server.to_config() for name, server in servers.items()}
        cmd.extend(["--mcp-config", _compact_json(mcp_config)])

    # 子代理
    agents = merge_agents(config.default_agents, request.agents, request.use_default_agents)
    if agents:
        agents_config = {name: agent.to_dict() for name, agent in agents.items()}
        cmd.extend(["--agents", _compact_json(agents_config)])

    cmd.append(request.prompt)
    return cmd
