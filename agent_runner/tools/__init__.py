"""工具层：工具定义、注册表、执行器以及内置工具。"""

from typing import Optional

from agent_runner.config.settings import settings
from .base import Tool
from .definitions import ToolDescriptor
from .executor import ToolExecutor
from .filesystem import Workspace, filesystem_tools
from .registry import ToolRegistry
from .web_search import GoogleSearchTool


def build_default_registry(cfg=settings, workspace: Optional[Workspace] = None) -> ToolRegistry:
    """创建包含全部内置工具的注册表。"""

    if workspace is None:
        workspace = Workspace(cfg.workspace_root, cfg.allow_tool_absolute_path)
    registry = ToolRegistry()
    registry.register(GoogleSearchTool(cfg))
    for tool in filesystem_tools(workspace):
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolDescriptor",
    "ToolExecutor",
    "ToolRegistry",
    "Workspace",
    "GoogleSearchTool",
    "build_default_registry",
]
