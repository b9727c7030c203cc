"""CLI Agent Relay HTTP 服务。

基于 aiohttp.web，对外提供三个接口:

    GET  /api/claude         使用说明
    POST /api/claude         运行到结束，返回聚合 JSON
    POST /api/claude/stream  逐行实时转发事件（text/plain，chunked）

状态码映射:
    400  请求体不是合法 JSON 或 prompt 非法
    500  缺少 result 记录 / 启动失败 / 非零退出
    504  超过会话截止时间

流式接口在开始写响应之后发生的失败以带内记录 {"type": "error"} 表示。
"""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any

from aiohttp import web

from .config import Config, get_config
from .orchestrator import SessionRegistry
from .shared.errors import (
    MissingResultError,
    RelayError,
    RequestValidationError,
    SessionTimeoutError,
)
from .shared.invokers import (
    AgentModel,
    AgentPermissionMode,
    InvocationRequest,
    LiveRelay,
    McpTransport,
    ProcessSession,
    collect,
)

__all__ = [
    "create_app",
    "usage_document",
    "CONFIG_KEY",
    "REGISTRY_KEY",
]

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", Config)
REGISTRY_KEY = web.AppKey("registry", SessionRegistry)

RAW_PREVIEW_CHARS = 1000

AVAILABLE_TOOLS = [
    "Task", "Bash", "Glob", "Grep", "Read", "Edit", "Write",
    "NotebookEdit", "WebFetch", "WebSearch", "TodoWrite", "Skill",
]


def usage_document(config: Config) -> dict[str, Any]:
    """生成 GET /api/claude 的使用说明。"""
    return {
        "message": "Claude Code API Wrapper",
        "model": f"{config.model} (fixed)",
        "mcp_servers": [s.name for s in config.mcp_servers],
        "default_agents": list(config.default_agents),
        "usage": 'POST /api/claude with { "prompt": "your prompt here" }',
        "streaming": "POST /api/claude/stream with the same body; one JSON record per line",
        "options": {
            "prompt": "string (required) - The prompt to send to Claude",
            "allowedTools": 'string[] (optional) - Tools to allow (e.g., ["WebSearch", "Read"])',
            "disallowedTools": 'string[] (optional) - Tools to block (e.g., ["Edit", "Write"])',
            "systemPrompt": "string (optional) - Custom system prompt",
            "appendSystemPrompt": "string (optional) - Append to default system prompt",
            "agents": "Record<string, Agent> (optional) - Custom subagents",
            "useDefaultAgents": "boolean (optional, default: true) - Include default agents",
            "mcpServers": "Endpoint[] (optional) - Extra tool endpoints for this request",
        },
        "agent_schema": {
            "description": "string (required) - When Claude should delegate to this agent",
            "prompt": "string (required) - System prompt for the agent",
            "tools": "string[] (optional) - Allowed tools",
            "disallowedTools": "string[] (optional) - Blocked tools",
            "model": f"{' | '.join(m.value for m in AgentModel)} (optional)",
            "permissionMode": f"{' | '.join(m.value for m in AgentPermissionMode)} (optional)",
        },
        "endpoint_schema": {
            "name": "string (required) - Endpoint name",
            "transport": f"{' | '.join(t.value for t in McpTransport)} (required)",
            "url": "string (sse/http) - Endpoint URL",
            "command": "string (stdio) - Executable",
            "args": "string[] (stdio, optional) - Arguments",
            "env": "Record<string, string> (stdio, optional) - Environment",
        },
        "available_tools": AVAILABLE_TOOLS,
        "examples": {
            "basic": {
                "method": "POST",
                "url": "/api/claude",
                "body": {"prompt": "Summarize the latest quarterly report"},
            },
            "with_custom_agent": {
                "method": "POST",
                "url": "/api/claude",
                "body": {
                    "prompt": "Summarize today's AI news",
                    "agents": {
                        "news-researcher": {
                            "description": "News research specialist. Use for finding and summarizing recent news.",
                            "prompt": "You are a news researcher. Search recent news and summarize the key points.",
                            "tools": ["WebSearch", "WebFetch"],
                            "model": "haiku",
                        },
                    },
                },
            },
        },
    }


def _error_response(status: int, **body: Any) -> web.Response:
    return web.json_response(body, status=status)


async def _parse_request(request: web.Request) -> InvocationRequest:
    """解析请求体。

    Raises:
        RequestValidationError: 请求体不是合法 JSON 或 prompt 非法
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RequestValidationError(f"Invalid JSON body: {e}") from e
    return InvocationRequest.from_payload(body)


async def handle_usage(request: web.Request) -> web.Response:
    return web.json_response(usage_document(request.app[CONFIG_KEY]))


async def handle_collect(request: web.Request) -> web.Response:
    """运行一次会话并返回聚合 JSON。"""
    config = request.app[CONFIG_KEY]
    registry = request.app[REGISTRY_KEY]

    try:
        invocation = await _parse_request(request)
    except RequestValidationError as e:
        return _error_response(400, error=str(e))

    session = ProcessSession(invocation, config)
    request_id = registry.generate_request_id()
    registry.register(request_id, "collect", session)
    try:
        async with session:
            response = await collect(session)
    except MissingResultError as e:
        logger.warning(f"No result record in output request_id={request_id}")
        return _error_response(500, error=str(e), raw=session.raw_output[:RAW_PREVIEW_CHARS])
    except SessionTimeoutError as e:
        return _error_response(504, error="Failed to execute Claude", details=str(e))
    except RelayError as e:
        logger.warning(f"Claude execution failed request_id={request_id}: {e}")
        return _error_response(500, error="Failed to execute Claude", details=str(e))
    finally:
        registry.unregister(request_id)

    return web.json_response(response.to_dict())


async def handle_stream(request: web.Request) -> web.StreamResponse:
    """逐行实时转发会话事件。"""
    config = request.app[CONFIG_KEY]
    registry = request.app[REGISTRY_KEY]

    try:
        invocation = await _parse_request(request)
    except RequestValidationError as e:
        return _error_response(400, error=str(e))

    response = web.StreamResponse(headers={"Cache-Control": "no-cache"})
    response.content_type = "text/plain"
    response.charset = "utf-8"
    response.enable_chunked_encoding()
    await response.prepare(request)

    session = ProcessSession(invocation, config)
    relay = LiveRelay(session, response.write)
    request_id = registry.generate_request_id()
    registry.register(request_id, "stream", session)
    try:
        async with session:
            await relay.run()
    finally:
        registry.unregister(request_id)

    logger.debug(
        f"Stream finished request_id={request_id} state={session.state.value} "
        f"records={relay.emitted} client_closed={relay.closed}"
    )
    if not relay.closed:
        with contextlib.suppress(ConnectionError):
            await response.write_eof()
    return response


async def _cancel_sessions(app: web.Application) -> None:
    count = await app[REGISTRY_KEY].cancel_all()
    if count:
        logger.info(f"Cancelled {count} session(s) on shutdown")


def create_app(
    config: Config | None = None,
    registry: SessionRegistry | None = None,
) -> web.Application:
    """创建 aiohttp 应用。

    Args:
        config: 服务配置（默认读取环境变量）
        registry: 会话注册表（可选，关闭时用于批量取消）
    """
    app = web.Application()
    app[CONFIG_KEY] = config or get_config()
    app[REGISTRY_KEY] = registry or SessionRegistry()

    app.router.add_get("/api/claude", handle_usage)
    app.router.add_post("/api/claude", handle_collect)
    app.router.add_post("/api/claude/stream", handle_stream)

    app.on_shutdown.append(_cancel_sessions)
    return app
