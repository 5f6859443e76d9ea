"""Ollama（本地推理服务）Provider 适配器。

- POST {base_url}/api/chat，stream=true 时返回 NDJSON：每行一个 JSON 对象，
  message.content 为增量文本，done=true 的一行表示结束。
- GET {base_url}/api/tags 列出本地模型，用于启动探测。

网络错误统一包装为 NetworkError，非 2xx 为 ApiError，坏行为 PayloadError。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, PayloadError, ValidationError
from chat_core.domain.models import Message
from chat_core.providers.registry import OLLAMA_DEFAULTS


BODY_EXCERPT = 200


class OllamaClient:
    """Ollama 客户端实现（原生流式）。"""

    streaming = True

    def __init__(
        self,
        base_url: str = OLLAMA_DEFAULTS.base_url,
        model: str = OLLAMA_DEFAULTS.model,
        timeout: float = 120.0,
        name: str = "ollama",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.default_model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        # 测试中注入 httpx.MockTransport
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, trust_env=False, transport=self._transport)

    # ---- 非流式 ----

    async def chat(self, messages: Sequence[Message], model: str) -> str:
        payload = self._build_payload(messages, model, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._base_url}/api/chat", json=payload)
        except httpx.RequestError as e:
            raise self._network_error(e)
        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.text)
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise PayloadError(code="DECODE_ERROR", message=f"failed to decode response: {e}")
        return (data.get("message") or {}).get("content") or ""

    # ---- 流式 ----

    async def chat_stream(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        payload = self._build_payload(messages, model, stream=True)
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self._base_url}/api/chat", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise self._status_error(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        data = self._decode_line(line)
                        if data.get("error"):
                            raise ApiError(
                                code="API_ERROR",
                                message=f"{self.name} error: {data['error']}",
                                http_status=502,
                            )
                        content = (data.get("message") or {}).get("content") or ""
                        if content:
                            yield content
                        if data.get("done"):
                            return
        except httpx.RequestError as e:
            raise self._network_error(e)

    # ---- 模型列表 ----

    async def list_models(self) -> List[str]:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url}/api/tags")
        except httpx.RequestError as e:
            raise self._network_error(e)
        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.text)
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise PayloadError(code="DECODE_ERROR", message=f"failed to decode model list: {e}")
        return [m.get("name") for m in data.get("models") or [] if m.get("name")]

    # ---- 辅助方法 ----

    def _build_payload(self, messages: Sequence[Message], model: str, stream: bool) -> Dict[str, Any]:
        if not messages:
            raise ValidationError(code="NO_MESSAGES", message="no messages provided")
        return {
            "model": model or self.default_model,
            "messages": [m.to_payload() for m in messages],
            "stream": stream,
        }

    def _decode_line(self, line: str) -> Dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise PayloadError(code="DECODE_ERROR", message=f"decode error: {e}")
        if not isinstance(data, dict):
            raise PayloadError(code="DECODE_ERROR", message="decode error: stream line is not an object")
        return data

    def _network_error(self, e: httpx.RequestError) -> NetworkError:
        return NetworkError(
            code="NETWORK_ERROR",
            message=f"failed to reach {self.name} at {self._base_url}: {str(e) or type(e).__name__}",
            http_status=502,
        )

    def _status_error(self, status: int, body: str) -> ApiError:
        return ApiError(
            code="API_ERROR",
            message=f"{self.name} returned status {status}: {body[:BODY_EXCERPT]}",
            http_status=status,
        )
