"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 把任意 Provider 统一为 Fragment 流 (adapter)。
- 维护连接配置与运行期注册表 (registry)。
- 提供各厂商的具体实现 (ollama_client、openai_client)。
"""

from typing import Mapping

from chat_core.domain.exceptions import ValidationError
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient
from chat_core.providers.ollama_client import OllamaClient
from chat_core.providers.openai_client import OpenAICompatClient
from chat_core.providers.registry import ProviderConnection, ProviderRegistry


def create_client(conn: ProviderConnection) -> ProviderClient:
    """根据连接参数创建 Provider 客户端。"""

    if conn.kind == "ollama":
        return OllamaClient(base_url=conn.base_url, model=conn.model, timeout=conn.timeout, name=conn.name)
    if conn.kind == "openai":
        return OpenAICompatClient(
            name=conn.name,
            base_url=conn.base_url,
            api_key=conn.api_key,
            model=conn.model,
            timeout=conn.timeout,
        )
    raise ValidationError(code="UNKNOWN_PROVIDER_KIND", message=f"unknown provider kind: {conn.kind!r}")


async def build_registry(
    connections: Mapping[str, ProviderConnection], probe_timeout: float = 2.0
) -> ProviderRegistry:
    """探测每个已配置的 Provider，只注册可达的那些。"""

    registry = ProviderRegistry()
    for name, conn in connections.items():
        await registry.probe_and_register(name, lambda conn=conn: create_client(conn), timeout=probe_timeout)
    available = sorted(registry.list_available())
    if available:
        logger.info("Available providers: %s", ", ".join(available))
    else:
        logger.warning("No providers reachable. Start Ollama with: ollama serve")
    return registry


__all__ = [
    "ProviderClient",
    "ProviderConnection",
    "ProviderRegistry",
    "OllamaClient",
    "OpenAICompatClient",
    "create_client",
    "build_registry",
]
