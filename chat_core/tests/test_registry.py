import asyncio

import httpx
import pytest

from chat_core.api.service import build_runtime
from chat_core.config.settings import Settings
from chat_core.domain.exceptions import ConfigurationError, NetworkError, ValidationError
from chat_core.providers import build_registry, create_client
from chat_core.providers.ollama_client import OllamaClient
from chat_core.providers.openai_client import OpenAICompatClient
from chat_core.providers.registry import ProviderConnection, ProviderRegistry


class FakeClient:
    streaming = False

    def __init__(self, name, models=("m",), error=None, delay=0.0):
        self.name = name
        self.default_model = models[0] if models else ""
        self._models = list(models)
        self._error = error
        self._delay = delay

    async def chat(self, messages, model):
        return "ok"

    async def list_models(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        return self._models


def test_registry_default_follows_priority_not_registration_order():
    registry = ProviderRegistry()
    registry.register("glm", lambda: FakeClient("glm"))
    registry.register("kimi", lambda: FakeClient("kimi"))
    assert registry.default_provider().name == "kimi"

    registry.register("ollama", lambda: FakeClient("ollama"))
    assert registry.default_provider().name == "ollama"
    assert registry.list_available() == {"glm", "kimi", "ollama"}
    assert len(registry) == 3


def test_registry_lookup_is_case_insensitive():
    registry = ProviderRegistry()
    registry.register("Kimi", lambda: FakeClient("kimi"))
    assert registry.get("KIMI") is registry.get("kimi")
    assert registry.get("kimi").name == "kimi"
    assert registry.get("gpt-nope") is None


def test_registry_unknown_names_are_never_default():
    registry = ProviderRegistry()
    registry.register("custom", lambda: FakeClient("custom"))
    assert registry.get("custom") is not None
    assert registry.default_provider() is None


def test_empty_registry_has_no_default():
    registry = ProviderRegistry()
    assert registry.default_provider() is None
    assert registry.list_available() == set()


def test_probe_skips_unreachable_provider():
    registry = ProviderRegistry()
    err = NetworkError(code="NETWORK_ERROR", message="connection refused")

    async def scenario():
        down = await registry.probe_and_register("ollama", lambda: FakeClient("ollama", error=err))
        up = await registry.probe_and_register("kimi", lambda: FakeClient("kimi", models=("k1", "k2")))
        return down, up

    down, up = asyncio.run(scenario())
    assert down is None
    assert up.name == "kimi"
    assert registry.list_available() == {"kimi"}
    assert registry.default_provider().name == "kimi"


def test_probe_skips_provider_without_models():
    registry = ProviderRegistry()
    entry = asyncio.run(registry.probe_and_register("ollama", lambda: FakeClient("ollama", models=())))
    assert entry is None
    assert len(registry) == 0


def test_probe_skips_slow_provider():
    registry = ProviderRegistry()
    entry = asyncio.run(
        registry.probe_and_register("ollama", lambda: FakeClient("ollama", delay=1.0), timeout=0.05)
    )
    assert entry is None
    assert registry.get("ollama") is None


def test_entry_exposes_capabilities():
    registry = ProviderRegistry()
    entry = registry.register("kimi", lambda: FakeClient("kimi", models=("k1",)))
    assert entry.streaming is False
    assert entry.default_model == "k1"
    assert asyncio.run(entry.list_models()) == ["k1"]


def test_create_client_by_kind():
    ollama = create_client(ProviderConnection(name="ollama", kind="ollama", base_url="http://x", model="llama3.2"))
    assert isinstance(ollama, OllamaClient)
    assert ollama.streaming is True

    kimi = create_client(
        ProviderConnection(name="kimi", kind="openai", base_url="http://y/v1", model="k", api_key="sk-1234567890")
    )
    assert isinstance(kimi, OpenAICompatClient)
    assert kimi.name == "kimi"
    assert kimi.default_model == "k"

    with pytest.raises(ValidationError):
        create_client(ProviderConnection(name="x", kind="grpc", base_url="http://z", model="m"))


def test_build_registry_with_unreachable_ollama(monkeypatch):
    # 指向不可达端口：连接失败，Provider 被跳过
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = httpx.MockTransport(refuse)
    original = OllamaClient.__init__

    def patched(self, *args, **kwargs):
        kwargs["transport"] = transport
        original(self, *args, **kwargs)

    monkeypatch.setattr(OllamaClient, "__init__", patched)
    conns = {"ollama": ProviderConnection(name="ollama", kind="ollama", base_url="http://127.0.0.1:9", model="m")}
    registry = asyncio.run(build_registry(conns, probe_timeout=1.0))
    assert len(registry) == 0


def test_build_runtime_without_providers_is_fatal(tmp_path):
    cfg = Settings(_env_file=None, storage_root=str(tmp_path))
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(build_runtime(cfg, registry=ProviderRegistry()))
    assert exc.value.code == "NO_PROVIDER"


def test_build_runtime_assembles_dispatcher(tmp_path):
    cfg = Settings(_env_file=None, storage_root=str(tmp_path), session_key_prefix="test:")
    registry = ProviderRegistry()
    registry.register("ollama", lambda: FakeClient("ollama"))
    runtime = asyncio.run(build_runtime(cfg, registry=registry))
    assert runtime.registry is registry
    assert runtime.store.directory == (tmp_path / "sessions").resolve()
    assert runtime.dispatcher.store is runtime.store
    assert runtime.dispatcher.new_session_key().startswith("test:")
