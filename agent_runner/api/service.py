"""对外 API 服务模块。

ChatService 把配置、工具注册表、模型网关、审批策略和会话存储组装成一个可直接使用的对话入口：
一个会话对应一个 AgentOrchestrator，run 结束（Completed / Failed）时把已定稿的消息写入 JsonSessionStore。
"""

import asyncio
from typing import Any, Dict, List, Optional

from agent_runner.agents.approval import ApprovalGate
from agent_runner.agents.orchestrator import AgentNotification, AgentOrchestrator
from agent_runner.config.settings import settings
from agent_runner.domain.conversation import ConversationStore, Session
from agent_runner.domain.models import AgentConfig, Message
from agent_runner.domain.exceptions import AlreadyRunning
from agent_runner.domain.state import AgentState, is_active, is_terminal, state_name
from agent_runner.infrastructure.logging.logger import logger
from agent_runner.infrastructure.storage.json_store import JsonSessionStore
from agent_runner.infrastructure.storage.memory_store import InMemoryConversationStore
from agent_runner.providers import create_gateway
from agent_runner.providers.base import ModelGateway
from agent_runner.tools import ToolExecutor, ToolRegistry, build_default_registry

TITLE_MAX_LENGTH = 40


def build_orchestrator(
    cfg=settings,
    store: Optional[ConversationStore] = None,
    gateway: Optional[ModelGateway] = None,
    registry: Optional[ToolRegistry] = None,
    config: Optional[AgentConfig] = None,
) -> AgentOrchestrator:
    """按配置装配 AgentOrchestrator，未显式传入的依赖使用默认实现。"""

    registry = registry or build_default_registry(cfg)
    return AgentOrchestrator(
        store=store if store is not None else InMemoryConversationStore(),
        gateway=gateway or create_gateway(cfg=cfg),
        registry=registry,
        executor=ToolExecutor(registry),
        gate=ApprovalGate(),
        config=config or AgentConfig.from_settings(cfg),
    )


def default_title(text: str) -> str:
    line = " ".join((text or "").split())
    if len(line) <= TITLE_MAX_LENGTH:
        return line
    return line[:TITLE_MAX_LENGTH].rstrip() + "..."


class ChatService:
    def __init__(
        self,
        cfg=settings,
        session_store: Optional[JsonSessionStore] = None,
        gateway: Optional[ModelGateway] = None,
        registry: Optional[ToolRegistry] = None,
        agent_config: Optional[AgentConfig] = None,
    ):
        self._settings = cfg
        self._sessions = session_store or JsonSessionStore(cfg.storage_root)
        self._gateway = gateway
        self._registry = registry or build_default_registry(cfg)
        self._agent_config = agent_config or AgentConfig.from_settings(cfg)
        self._session: Optional[Session] = None
        self._orchestrator: Optional[AgentOrchestrator] = None
        self._persisted_state: Optional[AgentState] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def orchestrator(self) -> Optional[AgentOrchestrator]:
        return self._orchestrator

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def sessions(self) -> JsonSessionStore:
        return self._sessions

    def new_session(self, title: str = "") -> Session:
        self._ensure_idle()
        session = self._sessions.create_session(title=title)
        self._attach(session, [])
        return session

    def open_session(self, session_id: str) -> Session:
        self._ensure_idle()
        session = self._sessions.get_session(session_id)
        self._attach(session, self._sessions.load_messages(session_id))
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": s.id,
                "title": s.title,
                "created_at": s.created_at.isoformat(),
                "updated_at": s.updated_at.isoformat(),
            }
            for s in self._sessions.list_sessions()
        ]

    def send(self, text: str) -> "asyncio.Task[AgentState]":
        """在当前会话中开始一次 run；没有会话时自动新建。"""

        if self._orchestrator is None or self._session is None:
            self.new_session()
        session = self._session
        if session is None:
            raise RuntimeError("no active session")
        task = self._require_orchestrator().start(text)
        if not session.title:
            self._session = self._sessions.update_title(session.id, default_title(text))
        return task

    def approve(self, proposal_id: str) -> None:
        self._require_orchestrator().approve(proposal_id)

    def reject(self, proposal_id: str) -> None:
        self._require_orchestrator().reject(proposal_id)

    async def cancel(self) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.cancel()

    async def wait(self) -> Optional[AgentState]:
        if self._orchestrator is None:
            return None
        return await self._orchestrator.wait()

    def history(self) -> List[Message]:
        return self._orchestrator.history() if self._orchestrator else []

    def _attach(self, session: Session, messages: List[Message]) -> None:
        if self._gateway is None:
            self._gateway = create_gateway(cfg=self._settings)
        orchestrator = build_orchestrator(
            cfg=self._settings,
            store=InMemoryConversationStore(messages),
            gateway=self._gateway,
            registry=self._registry,
            config=self._agent_config,
        )
        orchestrator.add_listener(self._on_notification)
        self._session = session
        self._orchestrator = orchestrator
        self._persisted_state = None

    def _on_notification(self, notification: AgentNotification) -> None:
        state = notification.state
        # 每个终态实例只持久化一次；start() 追加用户消息时仍处于上一次 run 的终态
        if not is_terminal(state) or state is self._persisted_state:
            return
        if self._orchestrator is None or self._session is None:
            return
        self._persisted_state = state
        self._sessions.save_messages(self._session.id, self._orchestrator.history())
        logger.info(
            "Session persisted",
            extra={"extra": {"session_id": self._session.id, "run_id": self._orchestrator.run_id,
                             "messages": len(self._orchestrator.history())}},
        )

    def _ensure_idle(self) -> None:
        if self._orchestrator is not None and is_active(self._orchestrator.state):
            raise AlreadyRunning(state_name(self._orchestrator.state))

    def _require_orchestrator(self) -> AgentOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("no active session")
        return self._orchestrator


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""

    global _service
    if _service is None:
        _service = ChatService(settings)
    return _service
