"""工具描述结构定义。

ToolDescriptor 描述一个可供模型调用的工具：
- 通过 ToolRegistry.list_available() 暴露给 Model Gateway，转换为 function tool schema。
- parameters 为由工具参数模型（pydantic）生成的 JSON Schema。
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

# OpenAI 兼容接口对 function name 的约束
TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class ToolDescriptor:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    parameters: Dict[str, Any]
    enabled: bool = True
    precondition: Optional[Callable[[], bool]] = None

    def is_available(self) -> bool:
        if not self.enabled:
            return False
        if self.precondition is None:
            return True
        return bool(self.precondition())

    def to_function_schema(self) -> Dict[str, Any]:
        """转换为 OpenAI/OpenRouter 的 function tool 描述。"""

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
