"""Model Gateway 抽象接口。

Orchestrator 不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商实现一个 Gateway（如 OpenRouterGateway）。
- stream_turn 产出零个或多个 TextDelta / ToolCallFragment，最后恰好一个 TurnEnd。
- 关闭迭代器（aclose 或取消消费方任务）必须停止底层传输，之后不再产出事件。
"""

from typing import AsyncIterator, Protocol, Sequence

from agent_runner.domain.models import Message, ModelEvent
from agent_runner.tools.definitions import ToolDescriptor


class ModelGateway(Protocol):
    name: str

    def stream_turn(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolDescriptor],
    ) -> AsyncIterator[ModelEvent]:
        ...
