"""OpenAI 兼容接口的云端 Provider 适配器（OpenAI / Kimi / GLM）。

接口风格一致，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段 model/messages/stream，并且只做一次性整段调用（streaming=False），
增量效果由 MessageStreamAdapter 模拟。
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import httpx

from chat_core.domain.exceptions import (
    ApiError,
    NetworkError,
    PayloadError,
    RateLimitError,
    ValidationError,
)
from chat_core.domain.models import Message
from chat_core.providers.ollama_client import BODY_EXCERPT


class OpenAICompatClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    streaming = False

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.default_model = model
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def chat(self, messages: Sequence[Message], model: str) -> str:
        if not messages:
            raise ValidationError(code="NO_MESSAGES", message="no messages provided")
        payload = {
            "model": model or self.default_model,
            "messages": [m.to_payload() for m in messages],
            "stream": False,
        }
        resp = await self._request("POST", "/chat/completions", json=payload)
        data = self._json(resp)
        choices = data.get("choices") or []
        if not choices:
            raise PayloadError(code="DECODE_ERROR", message=f"{self.name} returned no choices")
        msg = choices[0].get("message") or {}
        return msg.get("content") or ""

    async def list_models(self) -> List[str]:
        resp = await self._request("GET", "/models")
        data = self._json(resp)
        return [m.get("id") for m in data.get("data") or [] if m.get("id")]

    # ---- 辅助方法 ----

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self._api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name.upper()}_API_KEY not set")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, trust_env=False, transport=self._transport
            ) as client:
                resp = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    **kwargs,
                )
        except httpx.RequestError as e:
            raise NetworkError(
                code="NETWORK_ERROR",
                message=f"failed to reach {self.name} at {self._base_url}: {str(e) or type(e).__name__}",
                http_status=502,
            )
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(
                code="API_ERROR",
                message=f"{self.name} returned status {resp.status_code}: {resp.text[:BODY_EXCERPT]}",
                http_status=resp.status_code,
            )
        return resp

    def _json(self, resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise PayloadError(code="DECODE_ERROR", message=f"failed to decode {self.name} response: {e}")
        if not isinstance(data, dict):
            raise PayloadError(code="DECODE_ERROR", message=f"unexpected {self.name} response shape")
        return data
