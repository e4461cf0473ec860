"""OpenRouter Model Gateway。

本模块负责：

1. 把对话历史（Message 列表）和可用工具转换为 OpenAI 兼容的 chat/completions 请求。
2. 以流式方式调用 OpenRouter，并处理网络/API 异常。
3. 把 SSE 增量解析为统一的模型事件：TextDelta / ToolCallFragment / TurnEnd。

stream_turn 是一个异步生成器：HTTP 响应在生成器内部的 async with 中打开，
消费方 aclose() 或任务被取消时，响应与连接随之关闭。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from agent_runner.config.settings import settings as default_settings
from agent_runner.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from agent_runner.domain.models import Message, ModelEvent, TextDelta, ToolCallFragment, TurnEnd
from agent_runner.infrastructure.logging.logger import logger
from agent_runner.prompts import load_system_prompt
from agent_runner.providers.registry import OPENROUTER_CONFIG
from agent_runner.tools.definitions import ToolDescriptor

APP_TITLE = "agent-runner"


class OpenRouterGateway:
    """OpenRouter 流式网关实现。"""

    name = "openrouter"

    def __init__(self, settings=default_settings, model: Optional[str] = None):
        self._settings = settings
        self._model = model or settings.default_model

    async def stream_turn(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolDescriptor],
    ) -> AsyncIterator[ModelEvent]:
        if not getattr(self._settings, "openrouter_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="OPENROUTER_API_KEY not set")
        payload = self._build_payload(history, tools)
        base = getattr(self._settings, "openrouter_base_url", None) or OPENROUTER_CONFIG.base_url
        logger.info(
            "Calling model",
            extra={"extra": {"provider": self.name, "model": payload["model"],
                             "messages": len(payload["messages"]), "tools": len(payload.get("tools", []))}},
        )
        finish_reason: Optional[str] = None
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                        "Content-Type": "application/json",
                        "HTTP-Referer": APP_TITLE,
                        "X-Title": APP_TITLE,
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="OpenRouter rate limit")
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ApiError(code="API_ERROR", message=body or f"HTTP {resp.status_code}",
                                       http_status=resp.status_code)
                    async for line in resp.aiter_lines():
                        data_str = line.strip()
                        if not data_str or data_str.startswith(":"):
                            # SSE 注释行（OpenRouter 的 keep-alive）
                            continue
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        if data_str == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(chunk, dict):
                            continue
                        events, chunk_finish = self._parse_stream_chunk(chunk)
                        if chunk_finish:
                            finish_reason = chunk_finish
                        for event in events:
                            yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        yield TurnEnd(finish_reason=finish_reason)

    def _build_payload(self, history: Sequence[Message], tools: Sequence[ToolDescriptor]) -> Dict[str, Any]:
        model_cfg = OPENROUTER_CONFIG.resolve_model(self._model)
        system_prompt = load_system_prompt(getattr(self._settings, "custom_prompt", "") or "")
        msgs: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in history:
            item = self._message_to_payload(message)
            if item is not None:
                msgs.append(item)
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": msgs,
            "stream": True,
            "temperature": model_cfg.default_temperature,
        }
        if model_cfg.max_tokens:
            payload["max_tokens"] = model_cfg.max_tokens
        if tools:
            payload["tools"] = [tool.to_function_schema() for tool in tools]
        return payload

    @staticmethod
    def _message_to_payload(message: Message) -> Optional[Dict[str, Any]]:
        if message.role == "tool":
            if message.tool_call_id:
                return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.text}
            # 文本形式的工具提议没有 tool_call_id，结果以用户消息回传
            return {"role": "user", "content": f"Tool result:\n{message.text}"}
        if message.role == "assistant":
            if not message.text and not message.tool_calls:
                return None
            payload: Dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if message.tool_calls:
                payload["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": call.type,
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in message.tool_calls
                ]
            return payload
        return {"role": message.role, "content": message.text}

    @staticmethod
    def _parse_stream_chunk(data: Dict[str, Any]) -> Tuple[List[ModelEvent], Optional[str]]:
        """解析流式响应中的单条增量，返回事件列表与 finish_reason。"""

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ApiError(code="API_ERROR", message=message or "OpenRouter stream error")

        events: List[ModelEvent] = []
        finish_reason: Optional[str] = None
        for ch in data.get("choices") or []:
            delta = ch.get("delta") or {}
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TextDelta(text=content))
            for pos, call in enumerate(delta.get("tool_calls") or []):
                func = call.get("function") or {}
                events.append(
                    ToolCallFragment(
                        index=call.get("index", pos),
                        id=call.get("id") or None,
                        type=call.get("type") or None,
                        name=func.get("name") or None,
                        arguments=func.get("arguments") or "",
                    )
                )
            if ch.get("finish_reason"):
                finish_reason = ch["finish_reason"]
        return events, finish_reason
