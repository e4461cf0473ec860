"""审批策略。

ApprovalGate 本身无状态：per_thread 模式下已批准的工具集合由 Orchestrator 在每次 run 开始时重置，
通过参数传入。
"""

from typing import Literal, Set

from agent_runner.domain.models import AgentConfig, ToolCallProposal

Decision = Literal["approved", "needs_approval"]


class ApprovalGate:
    def decide(self, proposal: ToolCallProposal, config: AgentConfig, approved_tools: Set[str]) -> Decision:
        mode = config.approval_mode
        if mode == "auto_approve":
            return "approved"
        if mode == "per_thread" and proposal.tool_name in approved_tools:
            return "approved"
        return "needs_approval"

    def record_approval(self, proposal: ToolCallProposal, approved_tools: Set[str]) -> None:
        """用户批准后调用，记住该工具名；只有 per_thread 模式会读取这个集合。"""

        approved_tools.add(proposal.tool_name)
