"""
Protocol adapters.

An adapter turns protocol-agnostic tool metadata (visibility, title, UI
reference) into what a specific host dialect expects. The adapter is chosen
once at startup from configuration and reused for every tool.
"""

from typing import Any, Protocol

from appkit.tools import ToolDefinition


class ProtocolAdapter(Protocol):
    name: str

    def build_tool_meta(self, tool: ToolDefinition, server_name: str) -> dict[str, Any]:
        """Return ``{"annotations": {...}, "_meta": {...}}`` for ``tool``."""
        ...


class McpAdapter:
    """MCP dialect: visibility maps to ``readOnlyHint`` / ``appOnly`` annotations."""

    name = "mcp"

    def build_tool_meta(self, tool: ToolDefinition, server_name: str) -> dict[str, Any]:
        if tool.visibility == "model":
            annotations: dict[str, Any] = {"readOnlyHint": True}
        elif tool.visibility == "app":
            annotations = {"readOnlyHint": False, "appOnly": True}
        else:
            annotations = {"readOnlyHint": False}

        if tool.title:
            annotations["title"] = tool.title
        annotations.update(tool.annotations)

        meta: dict[str, Any] = {}
        if tool.ui:
            meta["ui"] = {"resourceUri": f"ui://{server_name}/{tool.ui}"}
        return {"annotations": annotations, "_meta": meta}


_ADAPTERS: dict[str, type] = {"mcp": McpAdapter}


def get_adapter(name: str = "mcp") -> ProtocolAdapter:
    """Return a fresh adapter for protocol ``name``; raises ValueError if unknown."""
    try:
        return _ADAPTERS[name]()
    except KeyError:
        raise ValueError(f"Unknown protocol adapter '{name}'") from None
