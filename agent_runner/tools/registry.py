"""工具注册表。

显式实例（不是进程级单例），构造一次后注入 Orchestrator 与 ToolExecutor，
测试中可以随意创建隔离的实例。
"""

from typing import Dict, Iterable, List, Optional

from agent_runner.infrastructure.logging.logger import logger
from .base import Tool
from .definitions import ToolDescriptor


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> bool:
        """注册工具；同名重复注册会被忽略并返回 False。"""

        tool.validate_definition()
        if tool.name in self._tools:
            logger.info("Duplicate tool registration ignored", extra={"extra": {"tool_name": tool.name}})
            return False
        self._tools[tool.name] = tool
        return True

    def lookup(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def descriptor(self, name: str) -> Optional[ToolDescriptor]:
        tool = self._tools.get(name)
        return tool.descriptor() if tool else None

    def list_available(self) -> List[ToolDescriptor]:
        """返回启用且满足前置条件的工具描述，保持注册顺序。"""

        descriptors = [tool.descriptor() for tool in self._tools.values()]
        return [d for d in descriptors if d.is_available()]

    def set_enabled(self, name: str, enabled: bool) -> bool:
        tool = self._tools.get(name)
        if tool is None:
            return False
        tool.enabled = enabled
        return True

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
