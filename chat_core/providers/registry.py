"""Provider 连接配置与运行期注册表。

- ProviderConnection: 单个 Provider 的连接参数（由配置层解析得到）。
- ProviderRegistry: 进程启动时构造一次，按名称保存已通过探测的 Provider，
  并按固定优先级选出默认 Provider，保证相同配置下行为可复现。
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional, Sequence

from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.adapter import MessageStreamAdapter
from chat_core.providers.base import ProviderClient


ProviderKind = Literal["ollama", "openai"]


@dataclass(frozen=True)
class ProviderDefaults:
    base_url: str
    model: str


@dataclass(frozen=True)
class ProviderConnection:
    """某个 Provider 的连接参数。"""

    name: str
    kind: ProviderKind
    base_url: str
    model: str
    api_key: Optional[str] = None
    timeout: float = 120.0


OLLAMA_DEFAULTS = ProviderDefaults(base_url="http://localhost:11434", model="llama3.2")
OPENAI_DEFAULTS = ProviderDefaults(base_url="https://api.openai.com/v1", model="gpt-4o-mini")
KIMI_DEFAULTS = ProviderDefaults(base_url="https://api.moonshot.cn/v1", model="kimi-k2-turbo-preview")
GLM_DEFAULTS = ProviderDefaults(base_url="https://open.bigmodel.cn/api/paas/v4", model="glm-4.6")

# 默认 Provider 的选择顺序：本地优先，其次云端
DEFAULT_PRIORITY = ("ollama", "openai", "kimi", "glm")


@dataclass
class ProviderEntry:
    """Registry 中的一项：客户端、其流适配器以及能力信息。"""

    name: str
    client: ProviderClient
    adapter: MessageStreamAdapter

    @property
    def streaming(self) -> bool:
        return bool(self.client.streaming)

    @property
    def default_model(self) -> str:
        return self.client.default_model

    async def list_models(self) -> List[str]:
        return await self.client.list_models()


ClientFactory = Callable[[], ProviderClient]


class ProviderRegistry:
    def __init__(self, priority: Sequence[str] = DEFAULT_PRIORITY):
        self._priority = tuple(n.lower() for n in priority)
        self._entries: Dict[str, ProviderEntry] = {}

    def register(self, name: str, factory: ClientFactory) -> ProviderEntry:
        """无探测地注册 Provider。名称不区分大小写。"""

        client = factory()
        entry = ProviderEntry(name=name.lower(), client=client, adapter=MessageStreamAdapter(client))
        self._entries[entry.name] = entry
        return entry

    async def probe_and_register(
        self, name: str, factory: ClientFactory, timeout: float = 2.0
    ) -> Optional[ProviderEntry]:
        """先用 list_models 探测上游，成功且至少有一个模型时才注册。

        探测失败的 Provider 直接跳过，调用方永远不会看到"已注册但不可用"的 Provider。
        """

        client = factory()
        try:
            models = await asyncio.wait_for(client.list_models(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Provider %s did not answer within %.1fs, skipped", name, timeout)
            return None
        except BusinessError as e:
            logger.warning("Provider %s not reachable, skipped: %s", name, e.message)
            return None
        if not models:
            logger.warning("Provider %s reachable but lists no models, skipped", name)
            return None
        entry = self.register(name, lambda: client)
        logger.info("Provider %s initialized (%d models available)", entry.name, len(models))
        return entry

    def get(self, name: str) -> Optional[ProviderEntry]:
        return self._entries.get(name.lower())

    def list_available(self) -> set[str]:
        return set(self._entries)

    def default_provider(self) -> Optional[ProviderEntry]:
        for name in self._priority:
            entry = self._entries.get(name)
            if entry is not None:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)
