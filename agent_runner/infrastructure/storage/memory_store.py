from typing import Iterable, List, Optional

from agent_runner.domain.conversation import ConversationStore
from agent_runner.domain.models import Message


class InMemoryConversationStore(ConversationStore):
    """进程内的对话历史，供 Orchestrator 在一次会话期间使用。"""

    def __init__(self, messages: Optional[Iterable[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def history(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
