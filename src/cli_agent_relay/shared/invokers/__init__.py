"""Claude CLI 调用模块。

cli-agent-relay shared/invokers v0.1.0

每个请求对应一个 ProcessSession（一个子进程），会话之间不共享状态。

聚合用法:
    from cli_agent_relay.shared.invokers import InvocationRequest, ProcessSession, collect

    request = InvocationRequest(prompt="What is 2+2?")
    response = await collect(ProcessSession(request, config))
    print(response.result)

实时转发用法:
    from cli_agent_relay.shared.invokers import LiveRelay

    async with ProcessSession(request, config) as session:
        await LiveRelay(session, http_response.write).run()
"""

from __future__ import annotations

__version__ = "0.1.0"

from .claude import BASE_FLAGS, build_command, merge_agents, merge_mcp_servers
from .collector import ConsolidatedResponse, build_response, collect
from .relay import LiveRelay, Writer, encode_line
from .session import ProcessSession
from .types import (
    AgentDefinition,
    AgentModel,
    AgentPermissionMode,
    InvocationRequest,
    McpServer,
    McpTransport,
    SessionState,
    parse_agents,
    parse_mcp_servers,
)

__all__ = [
    "__version__",
    # 请求与定义
    "InvocationRequest",
    "AgentDefinition",
    "AgentModel",
    "AgentPermissionMode",
    "McpServer",
    "McpTransport",
    "parse_agents",
    "parse_mcp_servers",
    # 命令构建
    "BASE_FLAGS",
    "build_command",
    "merge_agents",
    "merge_mcp_servers",
    # 会话
    "ProcessSession",
    "SessionState",
    # 输出
    "ConsolidatedResponse",
    "build_response",
    "collect",
    "LiveRelay",
    "Writer",
    "encode_line",
]
