"""运行期装配。

进程启动时构造一次 ChatRuntime（Registry + SessionStore + Dispatcher），
之后通过引用传递给各传输层，不使用模块级单例。
"""

from dataclasses import dataclass
from typing import Optional

from chat_core.config.settings import Settings
from chat_core.domain.exceptions import ConfigurationError
from chat_core.engine.dispatcher import StreamingDispatcher
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonSessionStore
from chat_core.providers import build_registry
from chat_core.providers.registry import ProviderRegistry


@dataclass
class ChatRuntime:
    registry: ProviderRegistry
    store: JsonSessionStore
    dispatcher: StreamingDispatcher

    @classmethod
    def assemble(
        cls,
        registry: ProviderRegistry,
        store: JsonSessionStore,
        session_key_prefix: str = "webui:",
    ) -> "ChatRuntime":
        return cls(
            registry=registry,
            store=store,
            dispatcher=StreamingDispatcher(registry, store, session_key_prefix=session_key_prefix),
        )


async def build_runtime(cfg: Settings, registry: Optional[ProviderRegistry] = None) -> ChatRuntime:
    """探测 Provider 并构造运行期对象。

    Raises:
        ConfigurationError: 没有任何可用 Provider 时（致命错误，进程不应继续提供对话服务）。
    """

    if registry is None:
        registry = await build_registry(cfg.provider_connections(), probe_timeout=cfg.probe_timeout)
    if len(registry) == 0:
        raise ConfigurationError(
            code="NO_PROVIDER",
            message="No provider available. Configure API keys in config.yaml/.env or run Ollama locally",
            http_status=503,
        )
    store = JsonSessionStore(cfg.sessions_dir)
    logger.info("Session storage: %s", store.directory)
    return ChatRuntime.assemble(registry, store, session_key_prefix=cfg.session_key_prefix)
