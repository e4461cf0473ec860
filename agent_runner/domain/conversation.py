from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

from .models import Message


@dataclass
class Session:
    """一次持久化的会话（对应一条对话线程）。"""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)


class ConversationStore(Protocol):
    """Orchestrator 依赖的对话历史存储。

    单写者约定：只有当前 run 会调用 append；history() 返回快照列表，
    读者（UI 等）不应修改其中的消息。
    """

    def append(self, message: Message) -> None:
        ...

    def history(self) -> List[Message]:
        ...
