"""Agent Runner 顶层包。

该包提供一个带工具调用的对话 Agent 运行时，
包括配置加载、领域模型、Model Gateway 适配、工具系统、
审批策略、运行编排器与会话持久化等能力。
"""

from agent_runner.agents.orchestrator import AgentNotification, AgentOrchestrator
from agent_runner.api.service import ChatService, build_orchestrator
from agent_runner.domain.models import AgentConfig

__all__ = ["AgentConfig", "AgentNotification", "AgentOrchestrator", "ChatService", "build_orchestrator"]
