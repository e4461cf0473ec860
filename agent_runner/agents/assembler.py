"""工具调用组装。

流式响应里的 tool_calls 按位置索引分片到达：同一 index 的 id/type/name 取最后一次非空值，
arguments 片段按到达顺序拼接。只有在回合结束（TurnEnd）时才产出完整的提议。
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from uuid import uuid4

from agent_runner.domain.models import ToolCallFragment, ToolCallProposal
from agent_runner.infrastructure.logging.logger import logger

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


@dataclass
class _PendingCall:
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: List[str] = field(default_factory=list)


class ToolCallAssembler:
    def __init__(self) -> None:
        self._calls: Dict[int, _PendingCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        pending = self._calls.setdefault(fragment.index, _PendingCall())
        if fragment.id:
            pending.id = fragment.id
        if fragment.type:
            pending.type = fragment.type
        if fragment.name:
            pending.name = fragment.name
        if fragment.arguments:
            pending.arguments.append(fragment.arguments)

    def has_fragments(self) -> bool:
        return bool(self._calls)

    def complete(self) -> List[ToolCallProposal]:
        """按 index 顺序产出提议并清空内部状态。"""

        proposals: List[ToolCallProposal] = []
        for index in sorted(self._calls):
            pending = self._calls[index]
            if not pending.name:
                logger.warning(
                    "Dropping tool call without function name",
                    extra={"extra": {"index": index, "tool_call_id": pending.id}},
                )
                continue
            proposals.append(
                ToolCallProposal(
                    id=pending.id or f"call_{uuid4().hex}",
                    tool_name=pending.name,
                    arguments="".join(pending.arguments),
                    type=pending.type or "function",
                )
            )
        self._calls.clear()
        return proposals


def parse_text_proposal(text: str) -> Optional[ToolCallProposal]:
    """解析以纯文本 JSON 形式给出的工具调用提议。

    部分模型不支持原生 function calling，会直接输出：
    {"type": "tool_call", "tool_id": "...", "input": {...}, "requires_approval": true, ...}
    可以包在 ``` 代码块中。不符合该形态时返回 None。
    """

    body = (text or "").strip()
    if not body:
        return None
    fenced = _FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1).strip()
    if not body.startswith("{"):
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") != "tool_call":
        return None
    tool_id = data.get("tool_id")
    if not isinstance(tool_id, str) or not tool_id:
        return None
    raw_input = data.get("input")
    if raw_input is None:
        arguments = ""
    elif isinstance(raw_input, str):
        arguments = raw_input
    else:
        arguments = json.dumps(raw_input, ensure_ascii=False)
    return ToolCallProposal(
        id=f"call_{uuid4().hex}",
        tool_name=tool_id,
        arguments=arguments,
        requires_approval=bool(data.get("requires_approval", True)),
        reason=str(data.get("reason") or ""),
        next_step=str(data.get("next_step_after_tool") or ""),
    )
