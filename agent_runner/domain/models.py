"""统一的对话、工具调用与模型事件数据模型。

本模块定义了 Agent 内部在 Orchestrator、Model Gateway、工具执行器之间共享的标准数据结构：

- Message: 对话历史中的一条消息（user/assistant/tool）。
- ToolCall: assistant 消息中记录的工具调用引用（参数保持原始字符串）。
- ToolCallProposal: 组装完成、等待审批/执行的一次工具调用提议（不可变、一次性）。
- TextDelta / ToolCallFragment / TurnEnd: Model Gateway 产出的流式事件。
- AgentConfig: 审批模式与 run 级别上限。

所有 Provider 适配器（如 OpenRouterGateway）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union, TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from agent_runner.config.settings import Settings


# 对话历史中的消息角色；system prompt 由 Model Gateway 在请求时注入，不进入历史
Role = Literal["user", "assistant", "tool"]

# 审批策略
ApprovalMode = Literal["always_ask", "per_thread", "auto_approve"]

APPROVAL_MODES = ("always_ask", "per_thread", "auto_approve")


def _new_message_id() -> str:
    return f"m-{uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用（OpenAI function-call 形态）。

    arguments 为模型给出的原始 JSON 字符串，由 ToolExecutor 负责解析。
    """

    id: str
    name: str
    arguments: str
    type: str = "function"


@dataclass
class Message:
    """对话历史中的一条消息。

    - text: 纯文本内容，流式期间逐步追加。
    - is_streaming: 仅当前 run 正在写入的 assistant 占位消息为 True。
    - tool_calls: assistant 回合触发工具调用时记录的调用引用。
    - tool_call_id: role 为 "tool" 时，关联的工具调用 ID。
    - meta: 附加元数据（错误码、是否被拒绝、是否被取消等），不直接发给模型。
    """

    role: Role
    text: str = ""
    is_streaming: bool = False
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    id: str = field(default_factory=_new_message_id)
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallProposal:
    """一次组装完成的工具调用提议。

    - id: 提议 ID（即模型给出的 tool call id），approve/reject 时用于校验。
    - arguments: 原始参数字符串，在执行前保持不透明。
    - requires_approval: 模型侧的提示；最终是否需要审批由 ApprovalGate 按策略决定。
    - reason: 可读的调用理由，供 UI 展示。
    - next_step: 执行完毕后的下一步提示。
    """

    id: str
    tool_name: str
    arguments: str = ""
    requires_approval: bool = False
    reason: str = ""
    next_step: str = ""
    type: str = "function"

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.tool_name, arguments=self.arguments, type=self.type)


# ---- Model Gateway 流式事件 ----


@dataclass(frozen=True)
class TextDelta:
    """一段可见文本增量，按到达顺序拼接。"""

    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """某个位置索引上的工具调用增量。

    同一 index 的多个片段由 ToolCallAssembler 累积：id/type/name 以最后一次非空值为准，
    arguments 片段按顺序拼接。
    """

    index: int
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class TurnEnd:
    """一个回合结束的唯一信号。"""

    finish_reason: Optional[str] = None


ModelEvent = Union[TextDelta, ToolCallFragment, TurnEnd]


@dataclass
class AgentConfig:
    """一次 run 的策略配置。"""

    approval_mode: ApprovalMode = "always_ask"
    max_tool_calls_per_run: int = 10
    # None 表示不限制连续失败次数
    max_consecutive_tool_failures: Optional[int] = 3

    def __post_init__(self) -> None:
        if self.approval_mode not in APPROVAL_MODES:
            raise ValueError(f"Unknown approval mode: {self.approval_mode!r}")
        if self.max_tool_calls_per_run < 0:
            raise ValueError("max_tool_calls_per_run must be >= 0")

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "AgentConfig":
        return cls(
            approval_mode=cfg.approval_mode,
            max_tool_calls_per_run=cfg.max_tool_calls_per_run,
            max_consecutive_tool_failures=cfg.max_consecutive_tool_failures,
        )
