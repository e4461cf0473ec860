import json
from typing import Any, Dict

from agent_runner.domain.exceptions import (
    ExecutionFailed,
    InvalidArguments,
    ToolDisabled,
    ToolError,
    ToolNotFound,
)
from agent_runner.domain.models import ToolCallProposal
from agent_runner.infrastructure.logging.logger import logger
from .registry import ToolRegistry


class ToolExecutor:
    def __init__(self, registry: ToolRegistry):
        self._registry = registry

    async def execute_tool_call(self, proposal: ToolCallProposal) -> str:
        tool = self._registry.lookup(proposal.tool_name)
        if tool is None:
            raise ToolNotFound(proposal.tool_name)
        if not tool.enabled:
            raise ToolDisabled(proposal.tool_name)

        arguments = self.parse_arguments(proposal.tool_name, proposal.arguments)
        logger.info(
            "Executing tool",
            extra={"extra": {"tool_name": tool.name, "tool_call_id": proposal.id, "tool_args": arguments}},
        )
        try:
            result = await tool.execute(arguments)
        except ToolError:
            raise
        except Exception as exc:  # noqa: BLE001 - 需要把异常转换为工具错误
            logger.exception(
                "Tool raised unexpected error",
                extra={"extra": {"tool_name": tool.name, "tool_call_id": proposal.id}},
            )
            raise ExecutionFailed(str(exc) or type(exc).__name__) from exc
        logger.info(
            "Tool execution finished",
            extra={"extra": {"tool_name": tool.name, "tool_call_id": proposal.id, "result_length": len(result)}},
        )
        return result

    @staticmethod
    def parse_arguments(tool_name: str, raw: str) -> Dict[str, Any]:
        """把原始参数字符串解码为 JSON 对象；空串视为 {}。"""

        if raw is None or not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidArguments(tool_name, f"arguments are not valid JSON ({exc.msg})") from exc
        if not isinstance(parsed, dict):
            raise InvalidArguments(tool_name, "arguments are not a valid JSON object")
        return parsed
