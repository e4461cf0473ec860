"""Agent 运行编排器。

AgentOrchestrator 驱动一次 run 的完整状态机：

    Idle -> AwaitingModel -> ToolProposed -> (AwaitingApproval) -> ExecutingTool -> AwaitingModel ... -> Completed / Failed

- 一个 orchestrator 同时只有一个 run，run 由一个 asyncio.Task 驱动。
- 对话历史只在 run 任务内部（以及 start() 创建任务之前）被修改；
  approve()/reject() 只负责把决定交给正在等待的 run 任务。
- 每次状态迁移和每个文本增量都会发布 AgentNotification。
"""

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Type
from uuid import uuid4

from agent_runner.agents.approval import ApprovalGate
from agent_runner.agents.assembler import ToolCallAssembler, parse_text_proposal
from agent_runner.domain.conversation import ConversationStore
from agent_runner.domain.exceptions import (
    AlreadyRunning,
    MaxToolCallsExceeded,
    StaleProposal,
    ToolError,
    ToolFailureLimitExceeded,
    TransportError,
    ValidationError,
)
from agent_runner.domain.models import (
    AgentConfig,
    Message,
    TextDelta,
    ToolCallFragment,
    ToolCallProposal,
    TurnEnd,
)
from agent_runner.domain.state import (
    RUN_CANCELLED,
    AgentState,
    AwaitingApproval,
    AwaitingModel,
    Completed,
    ExecutingTool,
    Failed,
    Idle,
    ToolProposed,
    is_active,
    is_terminal,
    proposal_of,
    state_name,
)
from agent_runner.infrastructure.logging.logger import logger
from agent_runner.providers.base import ModelGateway
from agent_runner.tools.executor import ToolExecutor
from agent_runner.tools.registry import ToolRegistry


@dataclass(frozen=True)
class AgentNotification:
    """一次可观察的变化：当前状态、相关消息以及（文本增量时的）delta。"""

    state: AgentState
    message: Optional[Message] = None
    delta: Optional[str] = None


Listener = Callable[[AgentNotification], None]


class NotificationStream:
    """subscribe() 返回的异步迭代器，close() 后结束迭代。"""

    def __init__(self, owner: "AgentOrchestrator"):
        self._owner = owner
        self._queue: "asyncio.Queue[Optional[AgentNotification]]" = asyncio.Queue()
        self._closed = False

    def push(self, notification: AgentNotification) -> None:
        if not self._closed:
            self._queue.put_nowait(notification)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._owner._unsubscribe(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> "NotificationStream":
        return self

    async def __anext__(self) -> AgentNotification:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class AgentOrchestrator:
    # 状态类型 -> 处理方法名；测试会校验它覆盖全部 STATE_TYPES
    HANDLER_NAMES: Dict[Type[Any], str] = {
        Idle: "_on_inert",
        AwaitingModel: "_on_awaiting_model",
        ToolProposed: "_on_tool_proposed",
        AwaitingApproval: "_on_awaiting_approval",
        ExecutingTool: "_on_executing_tool",
        Completed: "_on_inert",
        Failed: "_on_inert",
    }

    def __init__(
        self,
        store: ConversationStore,
        gateway: ModelGateway,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        gate: Optional[ApprovalGate] = None,
        config: Optional[AgentConfig] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._registry = registry
        self._executor = executor or ToolExecutor(registry)
        self._gate = gate or ApprovalGate()
        self._config = config or AgentConfig()

        self._state: AgentState = Idle()
        self._last_terminal: Optional[AgentState] = None
        self._task: Optional["asyncio.Task[AgentState]"] = None
        self._run_id: Optional[str] = None
        self._tool_call_count = 0
        self._consecutive_failures = 0
        self._approved_tools: Set[str] = set()
        self._consumed: Set[str] = set()
        self._call_refs: Set[str] = set()
        self._pending: Deque[ToolCallProposal] = deque()
        self._decision: Optional["asyncio.Future[bool]"] = None
        self._streaming: Optional[Message] = None
        self._cancel_requested = False

        self._listeners: List[Listener] = []
        self._streams: List[NotificationStream] = []
        self._changed = asyncio.Event()

    # ---- 只读属性 ----

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def tool_call_count(self) -> int:
        return self._tool_call_count

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def history(self) -> List[Message]:
        return self._store.history()

    # ---- 调用方操作 ----

    def start(self, user_text: str) -> "asyncio.Task[AgentState]":
        """开始一次新的 run，返回驱动它的 asyncio.Task。"""

        if is_active(self._state):
            raise AlreadyRunning(state_name(self._state))
        loop = asyncio.get_running_loop()

        self._run_id = f"run-{uuid4().hex}"
        self._tool_call_count = 0
        self._consecutive_failures = 0
        self._approved_tools = set()
        self._consumed = set()
        self._call_refs = set()
        self._pending.clear()
        self._decision = None
        self._streaming = None
        self._cancel_requested = False

        self._log(logging.INFO, "Run started", self._log_ctx(), input_length=len(user_text))
        self._append(Message(role="user", text=user_text))
        self._open_placeholder()
        self._transition(AwaitingModel())
        self._task = loop.create_task(self._drive(), name=f"agent-{self._run_id}")
        return self._task

    def approve(self, proposal_id: str) -> None:
        self._resolve_decision(proposal_id, True)

    def reject(self, proposal_id: str) -> None:
        self._resolve_decision(proposal_id, False)

    async def cancel(self) -> None:
        task = self._task
        if not is_active(self._state) or task is None or task.done():
            return
        self._cancel_requested = True
        self._log(logging.INFO, "Cancel requested", self._log_ctx(), state=state_name(self._state))
        task.cancel()
        await asyncio.wait({task})
        if is_active(self._state):
            # 任务在第一次调度前就被取消，_drive 没有机会收尾
            self._finish_cancelled()

    async def wait(self) -> AgentState:
        if self._task is not None:
            await self._task
        return self._state

    async def wait_for(self, *state_types: Type[Any]) -> AgentState:
        """等待状态变为给定类型之一；run 以其他终态结束时抛出 RuntimeError。"""

        while True:
            state = self._state
            if isinstance(state, state_types):
                return state
            if is_terminal(state) and (self._task is None or self._task.done()):
                raise RuntimeError(f"run ended in {state_name(state)} before reaching the awaited state")
            await self._changed.wait()

    def subscribe(self) -> NotificationStream:
        stream = NotificationStream(self)
        self._streams.append(stream)
        return stream

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """注册同步回调，返回取消注册的函数。"""

        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _unsubscribe(self, stream: NotificationStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)

    # ---- run 任务 ----

    async def _drive(self) -> AgentState:
        run_id = self._run_id
        log_ctx = self._log_ctx()
        started = time.time()
        try:
            while not is_terminal(self._state):
                handler = getattr(self, self.HANDLER_NAMES[type(self._state)])
                await handler(self._state)
                if self._run_id != run_id:
                    # 终态通知里的监听者已经 start() 了新的 run，由新任务接管
                    break
        except asyncio.CancelledError:
            self._finish_cancelled()
            if not self._cancel_requested:
                raise
        except (TransportError, ValidationError) as exc:
            self._log(logging.ERROR, "Model call failed", log_ctx, error_code=exc.code, error=exc.message)
            self._fail(exc.message)
        except (MaxToolCallsExceeded, ToolFailureLimitExceeded) as exc:
            self._log(logging.WARNING, "Run limit reached", log_ctx, error_code=exc.code,
                      tool_call_count=self._tool_call_count)
            self._fail(exc.message)
        except Exception as exc:  # noqa: BLE001 - run 任务不能把异常留在 Task 里无人处理
            logger.exception("Run crashed", extra={"extra": dict(log_ctx)})
            self._fail(str(exc) or type(exc).__name__)
        finally:
            superseded = self._run_id != run_id
            if not superseded:
                self._decision = None
                self._pending.clear()
            self._log(
                logging.INFO,
                "Run finished",
                log_ctx,
                state=state_name(self._last_terminal if superseded else self._state),
                superseded=superseded,
                tool_call_count=None if superseded else self._tool_call_count,
                elapsed_ms=int((time.time() - started) * 1000),
            )
        if self._run_id != run_id and self._last_terminal is not None:
            return self._last_terminal
        return self._state

    async def _on_inert(self, state: AgentState) -> None:
        raise RuntimeError(f"run loop cannot make progress from {state_name(state)}")

    async def _on_awaiting_model(self, state: AwaitingModel) -> None:
        if self._pending:
            self._transition(ToolProposed(self._pending.popleft()))
            return

        message = self._streaming or self._open_placeholder()
        history = [m for m in self._store.history() if m.id != message.id]
        tools = self._registry.list_available()
        assembler = ToolCallAssembler()
        turn_end: Optional[TurnEnd] = None

        async with contextlib.aclosing(self._gateway.stream_turn(history, tools)) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    if event.text:
                        message.text += event.text
                        self._notify(message=message, delta=event.text)
                elif isinstance(event, ToolCallFragment):
                    assembler.feed(event)
                elif isinstance(event, TurnEnd):
                    turn_end = event
                    break
        if turn_end is None:
            raise TransportError(code="TRANSPORT_ERROR", message="model stream ended without a turn end")

        proposals = assembler.complete()
        if proposals:
            proposals = self._drop_reused(proposals)
            message.tool_calls = [p.to_tool_call() for p in proposals] or None
            self._call_refs.update(p.id for p in proposals)
        else:
            text_proposal = parse_text_proposal(message.text)
            if text_proposal is not None:
                proposals = self._drop_reused([text_proposal])
        message.is_streaming = False
        self._streaming = None
        self._log(
            logging.INFO,
            "Model turn finished",
            self._log_ctx(),
            finish_reason=turn_end.finish_reason,
            text_length=len(message.text),
            tool_calls=[p.tool_name for p in proposals],
        )
        self._notify(message=message)

        if not proposals:
            self._transition(Completed())
            return
        self._pending.extend(proposals)
        self._transition(ToolProposed(self._pending.popleft()))

    async def _on_tool_proposed(self, state: ToolProposed) -> None:
        proposal = state.proposal
        decision = self._gate.decide(proposal, self._config, self._approved_tools)
        self._log(logging.INFO, "Approval decided", self._log_ctx(), tool_name=proposal.tool_name,
                  tool_call_id=proposal.id, decision=decision)
        if decision == "approved":
            self._transition(ExecutingTool(proposal))
            return
        # future 必须在进入 AwaitingApproval 之前创建，监听者可能在通知里同步调用 approve()
        self._decision = asyncio.get_running_loop().create_future()
        self._transition(AwaitingApproval(proposal))

    async def _on_awaiting_approval(self, state: AwaitingApproval) -> None:
        proposal = state.proposal
        decision = self._decision
        if decision is None:
            raise RuntimeError("awaiting approval without a pending decision")
        try:
            approved = await decision
        finally:
            self._decision = None
        self._consumed.add(proposal.id)

        if approved:
            self._gate.record_approval(proposal, self._approved_tools)
            self._transition(ExecutingTool(proposal))
            return
        self._append(
            Message(
                role="tool",
                text=f"Tool call '{proposal.tool_name}' was rejected by the user.",
                tool_call_id=self._tool_call_id_for(proposal),
                meta={"tool_name": proposal.tool_name, "rejected": True},
            )
        )
        self._after_tool_result()

    async def _on_executing_tool(self, state: ExecutingTool) -> None:
        proposal = state.proposal
        self._consumed.add(proposal.id)
        limit = self._config.max_tool_calls_per_run
        if self._tool_call_count >= limit:
            raise MaxToolCallsExceeded(limit)
        self._tool_call_count += 1

        try:
            result = await self._executor.execute_tool_call(proposal)
        except ToolError as exc:
            self._consecutive_failures += 1
            self._log(logging.WARNING, "Tool call failed", self._log_ctx(), tool_name=proposal.tool_name,
                      tool_call_id=proposal.id, error_code=exc.code, error=exc.message)
            self._append(
                Message(
                    role="tool",
                    text=f"Error: {exc.message}",
                    tool_call_id=self._tool_call_id_for(proposal),
                    meta={"tool_name": proposal.tool_name, "error": exc.code},
                )
            )
            max_failures = self._config.max_consecutive_tool_failures
            if max_failures is not None and self._consecutive_failures >= max_failures:
                raise ToolFailureLimitExceeded(max_failures)
        else:
            self._consecutive_failures = 0
            self._append(
                Message(
                    role="tool",
                    text=result,
                    tool_call_id=self._tool_call_id_for(proposal),
                    meta={"tool_name": proposal.tool_name},
                )
            )
        self._after_tool_result()

    # ---- 内部工具方法 ----

    def _after_tool_result(self) -> None:
        # 同一回合还有排队的提议时，先不打开新的占位消息
        if not self._pending:
            self._open_placeholder()
        self._transition(AwaitingModel())

    def _resolve_decision(self, proposal_id: str, approved: bool) -> None:
        state = self._state
        if not isinstance(state, AwaitingApproval) or state.proposal.id != proposal_id:
            raise StaleProposal(proposal_id)
        if proposal_id in self._consumed or self._decision is None or self._decision.done():
            raise StaleProposal(proposal_id, "a decision was already recorded")
        self._decision.set_result(approved)
        self._log(logging.INFO, "Approval recorded", self._log_ctx(), tool_call_id=proposal_id,
                  approved=approved)

    def _drop_reused(self, proposals: List[ToolCallProposal]) -> List[ToolCallProposal]:
        """去掉本 run 已处理过、已在排队或同一回合重复出现的提议 ID。"""

        seen = set(self._consumed) | {p.id for p in self._pending}
        kept: List[ToolCallProposal] = []
        for proposal in proposals:
            if proposal.id in seen or proposal.id in self._call_refs:
                self._log(logging.WARNING, "Duplicate tool call id ignored", self._log_ctx(),
                          tool_name=proposal.tool_name, tool_call_id=proposal.id)
                continue
            seen.add(proposal.id)
            kept.append(proposal)
        return kept

    def _tool_call_id_for(self, proposal: ToolCallProposal) -> Optional[str]:
        return proposal.id if proposal.id in self._call_refs else None

    def _open_placeholder(self) -> Message:
        message = Message(role="assistant", is_streaming=True)
        self._streaming = message
        self._append(message)
        return message

    def _append(self, message: Message) -> None:
        self._store.append(message)
        self._notify(message=message)

    def _finish_cancelled(self) -> None:
        message = self._streaming
        if message is not None:
            message.is_streaming = False
            message.meta["cancelled"] = True
            self._streaming = None
        self._log(logging.INFO, "Run cancelled", self._log_ctx(), state=state_name(self._state))
        self._transition(Failed(RUN_CANCELLED), message=message)

    def _fail(self, reason: str) -> None:
        message = self._streaming
        if message is not None:
            # 已经流式输出的部分内容保留在历史中
            message.is_streaming = False
            self._streaming = None
        self._transition(Failed(reason), message=message)

    def _transition(self, new_state: AgentState, message: Optional[Message] = None) -> None:
        old_state = self._state
        self._state = new_state
        if is_terminal(new_state):
            self._last_terminal = new_state
        proposal = proposal_of(new_state)
        fields: Dict[str, Any] = {"from_state": state_name(old_state), "to_state": state_name(new_state)}
        if proposal is not None:
            fields["tool_name"] = proposal.tool_name
            fields["tool_call_id"] = proposal.id
        if isinstance(new_state, Failed):
            fields["reason"] = new_state.reason
        self._log(logging.INFO, "State transition", self._log_ctx(), **fields)
        self._notify(message=message)
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _notify(self, message: Optional[Message] = None, delta: Optional[str] = None) -> None:
        notification = AgentNotification(state=self._state, message=message, delta=delta)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:  # noqa: BLE001 - 监听者的异常不能中断 run
                logger.exception("Listener raised", extra={"extra": self._log_ctx()})
        for stream in list(self._streams):
            stream.push(notification)

    def _log_ctx(self) -> Dict[str, Any]:
        return {"run_id": self._run_id, "approval_mode": self._config.approval_mode}

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
