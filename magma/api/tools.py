"""Tool router over local (in-process) and remote (HTTP) tool backends.

Provides:
- ToolSpec: name + description + JSON input schema, in Anthropic API format
- LocalTool: an async closure registered in-process
- RemoteToolClient / RemoteTool: the remote tool service over httpx
- ToolRouter: one ordered lookup table, local entries taking precedence
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from magma.errors import ToolExecutionError, ToolListError, UnknownToolError

logger = logging.getLogger(__name__)

LocalHandler = Callable[..., Awaitable[str]]


@dataclass
class ToolSpec:
    """A tool definition as advertised to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class Tool(Protocol):
    spec: ToolSpec

    async def invoke(self, arguments: dict[str, Any]) -> str: ...


class LocalTool:
    """In-process tool backed by an async closure taking keyword arguments."""

    def __init__(self, spec: ToolSpec, handler: LocalHandler) -> None:
        self.spec = spec
        self._handler = handler

    async def invoke(self, arguments: dict[str, Any]) -> str:
        try:
            return await self._handler(**arguments)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(self.spec.name, str(e) or type(e).__name__) from e


class RemoteToolClient:
    """HTTP client for the remote tool service (POST /tools/list, POST /tools/call)."""

    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http

    async def list_tools(self) -> list[ToolSpec]:
        """Fetch the remote catalog. Raises ToolListError; never returns a silent empty list."""
        url = f"{self._base_url}/tools/list"
        logger.debug("Fetching tools from %s", url)
        try:
            response = await self._http.post(url, json={})
        except httpx.HTTPError as e:
            raise ToolListError(f"Tool service unreachable at {url}: {e}") from e

        if response.status_code // 100 != 2:
            raise ToolListError(f"Failed to list tools ({response.status_code}): {response.text[:500]}")

        try:
            tools = response.json().get("tools", [])
        except (ValueError, AttributeError) as e:
            raise ToolListError(f"Malformed tool catalog: {e}") from e

        try:
            specs = [
                ToolSpec(
                    name=tool["name"],
                    description=tool.get("description", ""),
                    input_schema=tool.get("inputSchema") or tool.get("input_schema") or {"type": "object"},
                )
                for tool in tools
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ToolListError(f"Malformed tool catalog: {e!r}") from e
        logger.info("Retrieved %d remote tools: %s", len(specs), ", ".join(s.name for s in specs))
        return specs

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Call a remote tool and return the text of its first content block."""
        url = f"{self._base_url}/tools/call"
        logger.debug("Calling remote tool %s with %s", name, arguments)
        try:
            response = await self._http.post(url, json={"name": name, "arguments": arguments})
        except httpx.HTTPError as e:
            raise ToolExecutionError(name, f"Tool service unreachable: {e}") from e

        if response.status_code // 100 != 2:
            raise ToolExecutionError(
                name, f"Failed to call tool: {response.status_code} - {response.text[:500]}"
            )

        try:
            content = response.json().get("content") or []
        except (ValueError, AttributeError) as e:
            raise ToolExecutionError(name, f"Malformed tool response: {e}") from e

        if content and content[0].get("type") == "text":
            return content[0]["text"]
        raise ToolExecutionError(name, "Unexpected tool response format")


class RemoteTool:
    """A remote catalog entry delegating to RemoteToolClient."""

    def __init__(self, spec: ToolSpec, client: RemoteToolClient) -> None:
        self.spec = spec
        self._client = client

    async def invoke(self, arguments: dict[str, Any]) -> str:
        return await self._client.call_tool(self.spec.name, arguments)


class ToolRouter:
    """Uniform listTools()/callTool() over local and remote tools.

    Local tools are checked first by name, so a deployment can override or
    extend remote capabilities.
    """

    def __init__(self, remote: RemoteToolClient | None = None) -> None:
        self._remote = remote
        self._local: dict[str, LocalTool] = {}

    def register(self, tool: LocalTool) -> None:
        """Register a local tool. Re-registering a name replaces it."""
        self._local[tool.spec.name] = tool

    @property
    def local_names(self) -> list[str]:
        return list(self._local)

    async def list_tools(self) -> list[ToolSpec]:
        """Local specs first, then remote specs whose names are not shadowed."""
        specs = [tool.spec for tool in self._local.values()]
        if self._remote is not None:
            for spec in await self._remote.list_tools():
                if spec.name in self._local:
                    logger.debug("Local tool %s overrides remote tool of the same name", spec.name)
                    continue
                specs.append(spec)
        return specs

    async def tool_definitions(self) -> list[dict[str, Any]]:
        """Return the catalog in Anthropic API format."""
        return [spec.to_api() for spec in await self.list_tools()]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Dispatch a call. Raises ToolExecutionError on any failure."""
        local = self._local.get(name)
        if local is not None:
            return await local.invoke(arguments)
        if self._remote is None:
            raise UnknownToolError(name)
        return await RemoteTool(ToolSpec(name=name), self._remote).invoke(arguments)
