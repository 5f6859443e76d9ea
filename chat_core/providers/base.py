"""Provider 抽象接口。

上层 Dispatcher 不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OllamaClient）。
- streaming 标记该厂商是否原生支持增量输出：
  为 True 时 MessageStreamAdapter 调用 chat_stream，否则调用 chat 并把整段回复包装成流。

这样可以在不改 Dispatcher 代码的前提下接入更多厂商。
"""

from typing import AsyncIterator, List, Protocol, Sequence

from chat_core.domain.models import Message


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志与 Registry 键。
    - streaming: 是否原生流式。
    - default_model: 请求未指定模型时使用的模型。
    - chat(messages, model): 一次非流式调用，返回完整回复文本。
    - chat_stream(messages, model): 流式调用，逐段产出文本（仅 streaming=True 时需要）。
    - list_models(): 列出上游可用模型，上游不可达时抛出 BusinessError。
    """

    name: str
    streaming: bool
    default_model: str

    async def chat(self, messages: Sequence[Message], model: str) -> str:
        ...

    def chat_stream(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        ...

    async def list_models(self) -> List[str]:
        ...
