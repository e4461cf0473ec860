import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from agent_runner.config.settings import settings
from agent_runner.domain.conversation import Session
from agent_runner.domain.exceptions import StoreError
from agent_runner.domain.models import Message, ToolCall
from agent_runner.infrastructure.logging.logger import logger


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonSessionStore:
    """基于文件系统的会话持久化。

    目录结构：<root>/sessions/<session_id>/meta.json + messages.jsonl
    meta.json 通过临时文件 + os.replace 原子写入。
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    def create_session(self, title: str = "", **meta: Any) -> Session:
        sid = f"s-{uuid4().hex}"
        sdir = self._sessions_root / sid
        sdir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        session = Session(id=sid, title=title, created_at=now, updated_at=now, meta=dict(meta))
        self._write_meta(sdir, session)
        return session

    def get_session(self, session_id: str) -> Session:
        sdir = self._session_dir(session_id)
        meta_path = sdir / "meta.json"
        if not meta_path.exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return self._to_session(data)
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e)) from e

    def list_sessions(self) -> List[Session]:
        """按最近更新时间倒序返回全部会话，损坏的会话目录会被跳过。"""

        items: List[Session] = []
        for sdir in self._sessions_root.iterdir():
            meta_path = sdir / "meta.json"
            if not sdir.is_dir() or not meta_path.exists():
                continue
            try:
                items.append(self._to_session(json.loads(meta_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable session", extra={"extra": {"session_dir": str(sdir), "error": str(e)}})
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    def load_messages(self, session_id: str) -> List[Message]:
        sdir = self._session_dir(session_id)
        if not (sdir / "meta.json").exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        msgs_path = sdir / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e)) from e
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                items.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.warning(
                    "Skipping corrupted message line",
                    extra={"extra": {"session_id": session_id, "line": line_no, "error": str(e)}},
                )
        return items

    def save_messages(self, session_id: str, messages: Iterable[Message]) -> None:
        """用给定的消息快照覆盖会话的消息日志；仍在流式写入的消息不会落盘。"""

        session = self.get_session(session_id)
        sdir = self._session_dir(session_id)
        msgs_path = sdir / "messages.jsonl"
        tmp_path = sdir / f"messages.{uuid4().hex}.jsonl.tmp"
        lines = [json.dumps(self._message_payload(m), ensure_ascii=False) for m in messages if not m.is_streaming]
        try:
            tmp_path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            os.replace(tmp_path, msgs_path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e)) from e
        session.updated_at = datetime.now(timezone.utc)
        self._write_meta(sdir, session)

    def update_title(self, session_id: str, title: str) -> Session:
        session = self.get_session(session_id)
        session.title = title
        session.updated_at = datetime.now(timezone.utc)
        self._write_meta(self._session_dir(session_id), session)
        return session

    def delete_session(self, session_id: str) -> None:
        sdir = self._session_dir(session_id)
        if not sdir.exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        try:
            shutil.rmtree(sdir)
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e)) from e

    def _session_dir(self, session_id: str) -> Path:
        sdir = (self._sessions_root / session_id).resolve()
        if sdir.parent != self._sessions_root.resolve():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        return sdir

    def _write_meta(self, sdir: Path, session: Session) -> None:
        meta_path = sdir / "meta.json"
        tmp_path = sdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": session.id,
            "title": session.title,
            "created_at": _iso(session.created_at),
            "updated_at": _iso(session.updated_at),
            "meta": session.meta,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e)) from e

    @staticmethod
    def _to_session(data: Dict[str, Any]) -> Session:
        return Session(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            meta=data.get("meta") or {},
        )

    @staticmethod
    def _message_payload(message: Message) -> Dict[str, Any]:
        return {
            "id": message.id,
            "role": message.role,
            "text": message.text,
            "tool_calls": [
                {"id": c.id, "type": c.type, "name": c.name, "arguments": c.arguments}
                for c in message.tool_calls or []
            ] or None,
            "tool_call_id": message.tool_call_id,
            "created_at": _iso(message.created_at),
            "meta": message.meta,
        }

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        calls = data.get("tool_calls") or []
        return Message(
            id=data["id"],
            role=data["role"],
            text=data.get("text") or "",
            tool_calls=[
                ToolCall(id=c["id"], name=c["name"], arguments=c.get("arguments") or "", type=c.get("type") or "function")
                for c in calls
            ] or None,
            tool_call_id=data.get("tool_call_id"),
            created_at=_parse_dt(data["created_at"]),
            meta=data.get("meta") or {},
        )
