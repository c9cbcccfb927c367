"""HTTP request tool with abort-on-timeout and JMESPath extraction."""

import json
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import jmespath

from agentpay.config import AgentPayConfig
from agentpay.exceptions import ToolError
from agentpay.tools.registry import Tool
from agentpay.types import (
    ExecutionContext, ParameterType, ParameterValidation, ToolCategory, ToolDefinition,
    ToolParameter,
)

logger = logging.getLogger(__name__)

HTTP_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]


def _extract_jmespath(data: Any, path: str) -> Any:
    """Extract data using a JMESPath expression."""
    if not path:
        return data
    return jmespath.search(path, data)


def _parse_response_body(content: bytes, encoding: str = "utf-8") -> Any:
    """Parse as JSON when possible, else return the decoded text."""
    text = content.decode(encoding, errors="replace")
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text


async def _send(
    method: str,
    url: str,
    headers: dict,
    body: Any,
    timeout_seconds: float,
) -> httpx.Response:
    """Execute a single HTTP request.  The client timeout aborts the request."""
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        extra = {"json": body} if body is not None else {}
        return await client.request(method.upper(), url, headers=headers, **extra)


def validate_http_request(params: dict) -> list[str]:
    parsed = urlparse(params.get("url") or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return [f"Parameter 'url' must be an absolute http(s) URL, got {params.get('url')!r}"]
    return []


def make_http_request_tool(config: Optional[AgentPayConfig] = None) -> Tool:
    """Build the ``http_request`` tool bound to a config (user agent, default timeout)."""
    cfg = config or AgentPayConfig()

    async def http_request(params: dict, context: ExecutionContext) -> dict:
        """Make an HTTP request and return status, headers and parsed body."""
        url = params["url"]
        method = params.get("method") or "GET"
        timeout_ms = params.get("timeout") or cfg.http_default_timeout_ms
        headers = {
            "Content-Type": "application/json",
            "User-Agent": cfg.http_user_agent,
            **(params.get("headers") or {}),
        }

        logger.debug(
            "[http_request] %s %s (execution %s)", method, url, context.execution_id
        )
        try:
            response = await _send(method, url, headers, params.get("body"), timeout_ms / 1000)
        except httpx.TimeoutException as exc:
            logger.error("[http_request] %s %s timed out after %sms", method, url, timeout_ms)
            raise ToolError(
                f"HTTP request timed out after {timeout_ms}ms", tool_name="http_request"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("[http_request] %s %s failed: %s", method, url, exc)
            raise ToolError(f"HTTP request failed: {exc}", tool_name="http_request") from exc

        data = _parse_response_body(response.content, response.encoding or "utf-8")
        response_path = params.get("response_path")
        if response_path and isinstance(data, (dict, list)):
            data = _extract_jmespath(data, response_path)

        return {
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
        }

    definition = ToolDefinition(
        name="http_request",
        description="Make HTTP requests to external APIs",
        category=ToolCategory.INTEGRATION,
        required_permissions=["http_request"],
        timeout_ms=cfg.http_default_timeout_ms,
        retryable=True,
        parameters=[
            ToolParameter(name="url", type=ParameterType.STRING, required=True,
                          description="Target URL for the HTTP request"),
            ToolParameter(name="method", type=ParameterType.STRING, default="GET",
                          description="HTTP method",
                          validation=ParameterValidation(enum=HTTP_METHODS)),
            ToolParameter(name="headers", type=ParameterType.OBJECT, default={},
                          description="HTTP headers"),
            ToolParameter(name="body", type=ParameterType.OBJECT, description="Request body"),
            ToolParameter(name="timeout", type=ParameterType.NUMBER,
                          default=cfg.http_default_timeout_ms,
                          description="Request timeout in milliseconds",
                          validation=ParameterValidation(min=1000, max=60000)),
            ToolParameter(name="response_path", type=ParameterType.STRING,
                          description="JMESPath to extract from a JSON response body"),
        ],
    )
    return Tool(definition=definition, execute=http_request, validate=validate_http_request)
