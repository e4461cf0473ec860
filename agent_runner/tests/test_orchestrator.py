import asyncio
import json

import pytest

from agent_runner.agents.orchestrator import AgentOrchestrator
from agent_runner.domain.exceptions import AlreadyRunning, NetworkError, StaleProposal
from agent_runner.domain.models import AgentConfig, TextDelta, ToolCallFragment, TurnEnd
from agent_runner.domain.state import (
    STATE_TYPES,
    AwaitingApproval,
    Completed,
    ExecutingTool,
    Failed,
    Idle,
)
from agent_runner.infrastructure.storage.memory_store import InMemoryConversationStore
from agent_runner.tools.filesystem import Workspace, filesystem_tools
from agent_runner.tools.registry import ToolRegistry

from fakes import (
    BlockingTool,
    EchoTool,
    FailingTool,
    ScriptedGateway,
    StateRecorder,
    make_orchestrator,
    next_approval,
    text_turn,
    tool_turn,
)


def test_handler_table_covers_every_state():
    assert set(AgentOrchestrator.HANDLER_NAMES) == set(STATE_TYPES)
    for name in AgentOrchestrator.HANDLER_NAMES.values():
        assert callable(getattr(AgentOrchestrator, name))


@pytest.mark.asyncio
async def test_list_files_scenario_with_auto_approve(tmp_path):
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    registry = ToolRegistry(filesystem_tools(Workspace(tmp_path)))
    gateway = ScriptedGateway([tool_turn("list_directory", {"path": "."}), text_turn("There is one file: a.txt")])
    orch = AgentOrchestrator(
        store=InMemoryConversationStore(),
        gateway=gateway,
        registry=registry,
        config=AgentConfig(approval_mode="auto_approve"),
    )
    recorder = StateRecorder()
    orch.add_listener(recorder)

    final = await orch.start("list files")

    assert isinstance(final, Completed)
    history = orch.history()
    assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1].tool_calls[0].name == "list_directory"
    assert history[2].tool_call_id == history[1].tool_calls[0].id
    assert "a.txt" in history[2].text
    assert history[3].text == "There is one file: a.txt"
    assert not any(m.is_streaming for m in history)
    assert "AwaitingApproval" not in recorder.names()
    # 第二次调用模型时历史中已包含工具结果，且不包含新的占位消息
    assert gateway.calls[1]["roles"] == ["user", "assistant", "tool"]
    assert "list_directory" in gateway.calls[0]["tools"]


@pytest.mark.asyncio
async def test_always_ask_visits_approval_before_every_execution():
    echo = EchoTool()
    orch, gateway, recorder = make_orchestrator(
        [
            tool_turn("echo", {"text": "one"}, call_id="call_1"),
            tool_turn("echo", {"text": "two"}, call_id="call_2"),
            text_turn("done"),
        ],
        tools=[echo],
        mode="always_ask",
    )
    task = orch.start("go")
    seen = []
    for _ in range(2):
        state = await next_approval(orch, seen)
        seen.append(state.proposal.id)
        orch.approve(state.proposal.id)
    final = await task

    assert isinstance(final, Completed)
    assert echo.calls == ["one", "two"]
    names = recorder.names()
    for i, name in enumerate(names):
        if name == "ExecutingTool":
            assert names[i - 1] == "AwaitingApproval"
    assert names.count("AwaitingApproval") == 2


@pytest.mark.asyncio
async def test_per_thread_asks_once_per_tool_within_a_run():
    echo = EchoTool()
    orch, gateway, recorder = make_orchestrator(
        [
            tool_turn("echo", {"text": "one"}, call_id="call_1"),
            tool_turn("echo", {"text": "two"}, call_id="call_2"),
            text_turn("done"),
        ],
        tools=[echo],
        mode="per_thread",
    )
    task = orch.start("go")
    state = await next_approval(orch)
    orch.approve(state.proposal.id)
    final = await task

    assert isinstance(final, Completed)
    names = recorder.names()
    assert names.count("AwaitingApproval") == 1
    assert names.count("ExecutingTool") == 2
    second_exec = [i for i, n in enumerate(names) if n == "ExecutingTool"][1]
    assert names[second_exec - 1] == "ToolProposed"


@pytest.mark.asyncio
async def test_per_thread_approvals_reset_on_new_run():
    orch, gateway, recorder = make_orchestrator(
        [
            tool_turn("echo", {"text": "one"}, call_id="call_1"),
            text_turn("done"),
            tool_turn("echo", {"text": "two"}, call_id="call_2"),
            text_turn("done again"),
        ],
        tools=[EchoTool()],
        mode="per_thread",
    )
    task = orch.start("first")
    orch.approve((await next_approval(orch)).proposal.id)
    await task

    task = orch.start("second")
    state = await next_approval(orch)
    assert state.proposal.id == "call_2"
    orch.approve(state.proposal.id)
    assert isinstance(await task, Completed)


@pytest.mark.asyncio
async def test_max_tool_calls_fails_before_fourth_execution():
    echo = EchoTool()
    turns = [tool_turn("echo", {"text": str(i)}, call_id=f"call_{i}") for i in range(4)]
    turns.append(text_turn("never reached"))
    orch, gateway, recorder = make_orchestrator(turns, tools=[echo], mode="auto_approve", max_calls=3)

    final = await orch.start("loop")

    assert final == Failed("max tool calls exceeded")
    assert echo.calls == ["0", "1", "2"]
    assert orch.tool_call_count == 3
    assert len(gateway.calls) == 4
    assert [m.role for m in orch.history()].count("tool") == 3


@pytest.mark.asyncio
async def test_cancel_during_tool_execution():
    slow = BlockingTool()
    orch, gateway, recorder = make_orchestrator(
        [tool_turn("slow", {}), text_turn("unreachable")],
        tools=[slow],
        mode="auto_approve",
    )
    task = orch.start("run slow")
    await orch.wait_for(ExecutingTool)
    await slow.started.wait()
    before = len(orch.history())

    await orch.cancel()

    assert orch.state == Failed("cancelled")
    assert task.done()
    assert len(orch.history()) >= before
    assert len(gateway.calls) == 1
    assert len(gateway.turns) == 1


@pytest.mark.asyncio
async def test_cancel_while_streaming_keeps_partial_text():
    gate = asyncio.Event()

    class HangingGateway:
        name = "hanging"

        async def stream_turn(self, history, tools):
            yield TextDelta(text="partial ")
            await gate.wait()
            yield TurnEnd()

    orch = AgentOrchestrator(
        store=InMemoryConversationStore(),
        gateway=HangingGateway(),
        registry=ToolRegistry(),
        config=AgentConfig(),
    )
    stream = orch.subscribe()
    orch.start("hello")
    async for notification in stream:
        if notification.delta:
            break
    await orch.cancel()
    stream.close()

    assert orch.state == Failed("cancelled")
    last = orch.history()[-1]
    assert last.role == "assistant"
    assert last.text == "partial "
    assert last.is_streaming is False
    assert last.meta.get("cancelled") is True


@pytest.mark.asyncio
async def test_cancel_right_after_start_still_ends_failed():
    orch, gateway, recorder = make_orchestrator([text_turn("hi")])
    orch.start("hello")
    await orch.cancel()
    assert orch.state == Failed("cancelled")
    assert orch.history()[-1].is_streaming is False


@pytest.mark.asyncio
async def test_cancel_when_idle_is_noop():
    orch, gateway, recorder = make_orchestrator([])
    await orch.cancel()
    assert orch.state == Idle()


@pytest.mark.asyncio
async def test_reject_returns_to_model_with_one_tool_message():
    echo = EchoTool()
    orch, gateway, recorder = make_orchestrator(
        [tool_turn("echo", {"text": "x"}), text_turn("ok, skipped")],
        tools=[echo],
    )
    task = orch.start("go")
    state = await next_approval(orch)
    before = len(orch.history())
    orch.reject(state.proposal.id)
    final = await task

    assert isinstance(final, Completed)
    assert echo.calls == []
    names = recorder.names()
    assert "Failed" not in names
    idx = names.index("AwaitingApproval")
    assert names[idx + 1] == "AwaitingModel"
    tool_messages = [m for m in orch.history()[before:] if m.role == "tool"]
    assert len(tool_messages) == 1
    assert tool_messages[0].meta["rejected"] is True
    assert tool_messages[0].tool_call_id == state.proposal.id


@pytest.mark.asyncio
async def test_unregistered_tool_becomes_error_result():
    orch, gateway, recorder = make_orchestrator(
        [tool_turn("nope", {}), text_turn("sorry")],
        mode="auto_approve",
    )
    final = await orch.start("go")

    assert isinstance(final, Completed)
    tool_msg = [m for m in orch.history() if m.role == "tool"][0]
    assert tool_msg.text == "Error: Tool not found: 'nope'"
    assert tool_msg.meta["error"] == "TOOL_NOT_FOUND"


@pytest.mark.asyncio
async def test_approval_wait_has_no_timeout():
    orch, gateway, recorder = make_orchestrator([tool_turn("search", {"q": "x"}), text_turn("done")])
    orch.start("search something")
    state = await next_approval(orch)
    count = len(recorder.notifications)

    await asyncio.sleep(0.05)

    assert orch.state is state
    assert len(recorder.notifications) == count
    assert len(gateway.calls) == 1
    await orch.cancel()
    assert orch.state == Failed("cancelled")


@pytest.mark.asyncio
async def test_usage_errors_do_not_change_state():
    orch, gateway, recorder = make_orchestrator([tool_turn("echo", {"text": "x"}), text_turn("done")], tools=[EchoTool()])
    task = orch.start("go")
    with pytest.raises(AlreadyRunning):
        orch.start("again")
    state = await next_approval(orch)
    with pytest.raises(StaleProposal):
        orch.approve("call_other")
    assert orch.state is state

    orch.approve(state.proposal.id)
    with pytest.raises(StaleProposal):
        orch.approve(state.proposal.id)
    with pytest.raises(StaleProposal):
        orch.reject(state.proposal.id)
    assert isinstance(await task, Completed)
    with pytest.raises(StaleProposal):
        orch.approve(state.proposal.id)


@pytest.mark.asyncio
async def test_transport_error_fails_run_and_keeps_partial_text():
    orch, gateway, recorder = make_orchestrator(
        [[TextDelta(text="half an ans"), NetworkError(code="NETWORK_ERROR", message="connection reset")]]
    )
    final = await orch.start("hi")

    assert final == Failed("connection reset")
    assert orch.history()[-1].text == "half an ans"
    assert orch.history()[-1].is_streaming is False


@pytest.mark.asyncio
async def test_stream_without_turn_end_is_transport_failure():
    orch, gateway, recorder = make_orchestrator([[TextDelta(text="dangling")]])
    final = await orch.start("hi")
    assert isinstance(final, Failed)
    assert "turn end" in final.reason


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_fails_run():
    orch, gateway, recorder = make_orchestrator([[RuntimeError("kaboom")]])
    final = await orch.start("hi")
    assert final == Failed("kaboom")


@pytest.mark.asyncio
async def test_consecutive_tool_failures_limit():
    turns = [tool_turn("flaky", {}, call_id=f"call_{i}") for i in range(3)]
    orch, gateway, recorder = make_orchestrator(turns, tools=[FailingTool()], mode="auto_approve", max_failures=2)
    final = await orch.start("go")

    assert final == Failed("too many consecutive tool failures")
    errors = [m for m in orch.history() if m.role == "tool"]
    assert len(errors) == 2
    assert errors[0].text == "Error: Tool execution failed: boom"


@pytest.mark.asyncio
async def test_multiple_proposals_run_in_index_order_before_next_model_call():
    echo = EchoTool()
    turn = [
        ToolCallFragment(index=1, id="call_b", name="echo"),
        ToolCallFragment(index=0, id="call_a", name="echo"),
        ToolCallFragment(index=1, arguments='{"text": "second"}'),
        ToolCallFragment(index=0, arguments='{"text": '),
        ToolCallFragment(index=0, arguments='"first"}'),
        TurnEnd(finish_reason="tool_calls"),
    ]
    orch, gateway, recorder = make_orchestrator([turn, text_turn("both done")], tools=[echo], mode="auto_approve")
    final = await orch.start("go")

    assert isinstance(final, Completed)
    assert echo.calls == ["first", "second"]
    assert len(gateway.calls) == 2
    assert gateway.calls[1]["roles"] == ["user", "assistant", "tool", "tool"]
    assert [m.tool_call_id for m in orch.history() if m.role == "tool"] == ["call_a", "call_b"]


@pytest.mark.asyncio
async def test_text_format_proposal_is_executed():
    echo = EchoTool()
    proposal_text = "```json\n" + json.dumps(
        {"type": "tool_call", "tool_id": "echo", "input": {"text": "hi"}, "reason": "test"}
    ) + "\n```"
    orch, gateway, recorder = make_orchestrator(
        [text_turn(proposal_text), text_turn("done")], tools=[echo], mode="auto_approve"
    )
    final = await orch.start("go")

    assert isinstance(final, Completed)
    assert echo.calls == ["hi"]
    tool_msg = [m for m in orch.history() if m.role == "tool"][0]
    assert tool_msg.tool_call_id is None


@pytest.mark.asyncio
async def test_subscribe_streams_deltas_and_transitions():
    orch, gateway, recorder = make_orchestrator([[TextDelta(text="Hel"), TextDelta(text="lo"), TurnEnd()]])
    stream = orch.subscribe()
    orch.start("hi")
    deltas = []
    async for notification in stream:
        if notification.delta:
            deltas.append(notification.delta)
        if isinstance(notification.state, Completed):
            break
    stream.close()

    assert deltas == ["Hel", "lo"]
    assert orch.history()[-1].text == "Hello"


@pytest.mark.asyncio
async def test_restart_after_completion_resets_counters():
    orch, gateway, recorder = make_orchestrator(
        [tool_turn("echo", {"text": "a"}), text_turn("one"), text_turn("two")],
        tools=[EchoTool()],
        mode="auto_approve",
    )
    await orch.start("first")
    assert orch.tool_call_count == 1
    final = await orch.start("second")

    assert isinstance(final, Completed)
    assert orch.tool_call_count == 0
    assert [m.role for m in orch.history()] == ["user", "assistant", "tool", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_wait_for_raises_when_run_ends_elsewhere():
    orch, gateway, recorder = make_orchestrator([text_turn("done")])
    orch.start("hi")
    with pytest.raises(RuntimeError):
        await orch.wait_for(AwaitingApproval)
    assert isinstance(orch.state, Completed)
    assert await orch.wait_for(Completed, Failed) == Completed()


@pytest.mark.asyncio
async def test_repeated_call_id_in_one_turn_executes_once():
    echo = EchoTool()
    turn = [
        ToolCallFragment(index=0, id="call_1", name="echo", arguments='{"text": "hi"}'),
        ToolCallFragment(index=1, id="call_1", name="echo", arguments='{"text": "hi"}'),
        TurnEnd(finish_reason="tool_calls"),
    ]
    orch, gateway, recorder = make_orchestrator([turn, text_turn("done")], tools=[echo], mode="auto_approve")
    final = await orch.start("go")

    assert isinstance(final, Completed)
    assert echo.calls == ["hi"]
    assert [m.tool_call_id for m in orch.history() if m.role == "tool"] == ["call_1"]
    assistant = orch.history()[1]
    assert [c.id for c in assistant.tool_calls] == ["call_1"]
    assert recorder.names().count("ExecutingTool") == 1


@pytest.mark.asyncio
async def test_call_id_reused_in_later_turn_is_not_executed_again():
    echo = EchoTool()
    orch, gateway, recorder = make_orchestrator(
        [tool_turn("echo", {"text": "a"}, call_id="call_1"), tool_turn("echo", {"text": "b"}, call_id="call_1")],
        tools=[echo],
        mode="auto_approve",
    )
    final = await orch.start("go")

    assert isinstance(final, Completed)
    assert echo.calls == ["a"]
    assert len(gateway.calls) == 2
    assert [m.role for m in orch.history()] == ["user", "assistant", "tool", "assistant"]
    assert orch.history()[-1].tool_calls is None


@pytest.mark.asyncio
async def test_listener_restarting_on_completion_runs_new_run_once():
    orch, gateway, recorder = make_orchestrator([text_turn("a"), text_turn("b")])
    restarted = []

    def restart_once(notification):
        if isinstance(notification.state, Completed) and not restarted:
            restarted.append(None)
            restarted[0] = orch.start("again")

    orch.add_listener(restart_once)
    first = await orch.start("hello")

    assert first == Completed()
    second = await restarted[0]
    assert isinstance(second, Completed)
    assert len(gateway.calls) == 2
    assert gateway.calls[1]["texts"] == ["hello", "a", "again"]
    assert [m.text for m in orch.history()] == ["hello", "a", "again", "b"]
