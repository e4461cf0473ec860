"""Agent run state as a closed tagged union.

Every state is a frozen dataclass; ``STATE_TYPES`` lists all of them so that
dispatch tables can be checked for exhaustiveness.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from agent_runner.domain.models import ToolCallProposal

RUN_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AwaitingModel:
    pass


@dataclass(frozen=True)
class ToolProposed:
    proposal: ToolCallProposal


@dataclass(frozen=True)
class AwaitingApproval:
    proposal: ToolCallProposal


@dataclass(frozen=True)
class ExecutingTool:
    proposal: ToolCallProposal


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str


AgentState = Union[
    Idle,
    AwaitingModel,
    ToolProposed,
    AwaitingApproval,
    ExecutingTool,
    Completed,
    Failed,
]

STATE_TYPES = (
    Idle,
    AwaitingModel,
    ToolProposed,
    AwaitingApproval,
    ExecutingTool,
    Completed,
    Failed,
)

TERMINAL_STATES = (Completed, Failed)


def is_terminal(state: AgentState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def is_active(state: AgentState) -> bool:
    """True while a run owns the conversation."""
    return not isinstance(state, (Idle,) + TERMINAL_STATES)


def state_name(state: AgentState) -> str:
    return type(state).__name__


def proposal_of(state: AgentState) -> Optional[ToolCallProposal]:
    if isinstance(state, (ToolProposed, AwaitingApproval, ExecutingTool)):
        return state.proposal
    return None
