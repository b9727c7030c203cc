"""调用器类型定义。

cli-agent-relay shared/invokers v0.1.0

定义请求参数、子代理、外部服务端点、会话状态等类型。

请求解析规则：
- prompt 必须是非空字符串，否则抛出 RequestValidationError
- 其余可选字段格式不对时直接忽略，不拒绝请求
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from ..errors import RequestValidationError

__all__ = [
    "SessionState",
    "McpTransport",
    "AgentModel",
    "AgentPermissionMode",
    "AgentDefinition",
    "McpServer",
    "InvocationRequest",
    "parse_agents",
    "parse_mcp_servers",
]

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """会话状态机。

    building → running → {completed, timed_out, failed}
    启动失败时 building 直接进入 failed。
    """

    BUILDING = "building"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.TIMED_OUT, SessionState.FAILED)


class McpTransport(str, Enum):
    """外部服务端点的传输方式。

    - SSE: 直连流式调用
    - HTTP: 请求-响应
    - STDIO: 子进程
    """

    SSE = "sse"
    HTTP = "http"
    STDIO = "stdio"


class AgentModel(str, Enum):
    """子代理可选模型。"""

    SONNET = "sonnet"
    OPUS = "opus"
    HAIKU = "haiku"
    INHERIT = "inherit"


class AgentPermissionMode(str, Enum):
    """子代理权限模式。"""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


def _str_tuple(value: Any) -> tuple[str, ...]:
    """宽松解析字符串列表：非列表返回空，非字符串/空白项被丢弃。"""
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def _optional_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class AgentDefinition:
    """具名子代理定义（--agents 参数的单项）。

    Attributes:
        description: Claude 决定何时委派给该代理的说明
        prompt: 代理的系统提示词
        tools: 允许的工具
        disallowed_tools: 禁止的工具
        model: 模型选择
        permission_mode: 权限模式
    """

    description: str
    prompt: str
    tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    model: AgentModel | None = None
    permission_mode: AgentPermissionMode | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "AgentDefinition | None":
        """从请求 JSON 解析，description/prompt 缺失时返回 None。"""
        if not isinstance(data, dict):
            return None
        description = data.get("description")
        prompt = data.get("prompt")
        if not isinstance(description, str) or not isinstance(prompt, str):
            return None
        return cls(
            description=description,
            prompt=prompt,
            tools=_str_tuple(data.get("tools")),
            disallowed_tools=_str_tuple(data.get("disallowedTools")),
            model=_enum_or_none(AgentModel, data.get("model")),
            permission_mode=_enum_or_none(AgentPermissionMode, data.get("permissionMode")),
        )

    def to_dict(self) -> dict[str, Any]:
        """转换为 CLI 期望的 JSON 结构（camelCase，省略缺省项）。"""
        result: dict[str, Any] = {
            "description": self.description,
            "prompt": self.prompt,
        }
        if self.tools:
            result["tools"] = list(self.tools)
        if self.disallowed_tools:
            result["disallowedTools"] = list(self.disallowed_tools)
        if self.model is not None:
            result["model"] = self.model.value
        if self.permission_mode is not None:
            result["permissionMode"] = self.permission_mode.value
        return result


@dataclass(frozen=True)
class McpServer:
    """外部服务端点定义。

    Attributes:
        name: 端点名称（合并时的键）
        transport: 传输方式
        url: sse/http 的地址
        command: stdio 的可执行文件
        args: stdio 的参数
        env: stdio 的环境变量
    """

    name: str
    transport: McpTransport
    url: str = ""
    command: str = ""
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_dict(cls, data: Any) -> "McpServer | None":
        """解析端点定义，缺少传输方式所需参数时返回 None。"""
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        transport = _enum_or_none(McpTransport, data.get("transport"))
        if not isinstance(name, str) or not name.strip() or transport is None:
            return None

        if transport is McpTransport.STDIO:
            command = data.get("command")
            if not isinstance(command, str) or not command:
                return None
            raw_env = data.get("env")
            env = {
                k: v for k, v in raw_env.items()
                if isinstance(k, str) and isinstance(v, str)
            } if isinstance(raw_env, dict) else {}
            return cls(
                name=name.strip(),
                transport=transport,
                command=command,
                args=_str_tuple(data.get("args")),
                env=MappingProxyType(env),
            )

        url = data.get("url")
        if not isinstance(url, str) or not url:
            return None
        return cls(name=name.strip(), transport=transport, url=url)

    def to_config(self) -> dict[str, Any]:
        """转换为 --mcp-config 中该端点的配置。"""
        if self.transport is McpTransport.STDIO:
            return {
                "transport": self.transport.value,
                "command": self.command,
                "args": list(self.args),
                "env": dict(self.env),
            }
        return {
            "transport": self.transport.value,
            "url": self.url,
        }


def parse_agents(value: Any) -> dict[str, AgentDefinition]:
    """解析 name → AgentDefinition 映射，无效项被忽略。"""
    if not isinstance(value, dict):
        return {}
    agents: dict[str, AgentDefinition] = {}
    for name, data in value.items():
        if not isinstance(name, str) or not name.strip():
            continue
        agent = AgentDefinition.from_dict(data)
        if agent is None:
            logger.debug(f"Ignoring malformed agent definition: {name!r}")
            continue
        agents[name] = agent
    return agents


def parse_mcp_servers(value: Any) -> tuple[McpServer, ...]:
    """解析端点定义列表，无效项被忽略。"""
    if not isinstance(value, list):
        return ()
    servers: list[McpServer] = []
    for item in value:
        server = McpServer.from_dict(item)
        if server is None:
            logger.debug(f"Ignoring malformed endpoint definition: {item!r:.100}")
            continue
        servers.append(server)
    return tuple(servers)


@dataclass(frozen=True)
class InvocationRequest:
    """一次调用请求（不可变）。

    Attributes:
        prompt: 任务指令（必需，非空）
        allowed_tools: 允许的工具列表
        disallowed_tools: 禁止的工具列表
        system_prompt: 覆盖默认系统提示词
        append_system_prompt: 追加到默认系统提示词末尾
        agents: 用户定义的子代理
        use_default_agents: 是否合并内置默认子代理
        mcp_servers: 请求附带的外部服务端点
    """

    prompt: str
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    system_prompt: str = ""
    append_system_prompt: str = ""
    agents: Mapping[str, AgentDefinition] = field(default_factory=lambda: MappingProxyType({}))
    use_default_agents: bool = True
    mcp_servers: tuple[McpServer, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise RequestValidationError("Prompt is required and must be a string")
        if not isinstance(self.agents, MappingProxyType):
            object.__setattr__(self, "agents", MappingProxyType(dict(self.agents)))

    @classmethod
    def from_payload(cls, body: Any) -> "InvocationRequest":
        """从 HTTP 请求体构建请求。

        Args:
            body: 解析后的 JSON 请求体

        Returns:
            InvocationRequest 实例

        Raises:
            RequestValidationError: 请求体不是对象或 prompt 非法
        """
        if not isinstance(body, dict):
            raise RequestValidationError("Request body must be a JSON object")

        use_default_agents = body.get("useDefaultAgents", True)
        if not isinstance(use_default_agents, bool):
            use_default_agents = True

        return cls(
            prompt=body.get("prompt"),  # type: ignore[arg-type]
            allowed_tools=_str_tuple(body.get("allowedTools")),
            disallowed_tools=_str_tuple(body.get("disallowedTools")),
            system_prompt=_optional_str(body.get("systemPrompt")),
            append_system_prompt=_optional_str(body.get("appendSystemPrompt")),
            agents=parse_agents(body.get("agents")),
            use_default_agents=use_default_agents,
            mcp_servers=parse_mcp_servers(body.get("mcpServers")),
        )
