"""Message Stream Adapter：把任意 ProviderClient 统一成 Fragment 流。

调用方看到的协议只有一种：
    若干个非空 content Fragment，随后恰好一个 done 或 error Fragment。

实现方式是生产者/消费者交接：
- 生产者是一个 asyncio.Task，负责读取上游（原生流式或一次性整段回复），
  把 Fragment 放入有界队列；队列满时生产者阻塞，从而对上游形成背压。
- 消费者是 stream() 返回的异步生成器，同时等待队列与取消信号。
  取消信号触发、调用方关闭生成器或所在任务被取消时，生产者任务都会被取消并等待其退出，
  上游连接随之释放。
"""

import asyncio
from typing import AsyncIterator, Optional, Sequence

from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Fragment, Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient


DEFAULT_BUFFER = 32


class MessageStreamAdapter:
    def __init__(self, client: ProviderClient, buffer_size: int = DEFAULT_BUFFER):
        self._client = client
        self._buffer_size = buffer_size

    @property
    def client(self) -> ProviderClient:
        return self._client

    async def stream(
        self,
        messages: Sequence[Message],
        model: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Fragment]:
        """产出 Fragment 流。

        取消后生成器直接结束，不再产出终止 Fragment；调用方据此判断为"已取消"。
        """

        queue: asyncio.Queue[Fragment] = asyncio.Queue(maxsize=self._buffer_size)
        producer = asyncio.create_task(self._produce(list(messages), model, queue))
        cancel_waiter = asyncio.create_task(cancel.wait()) if cancel is not None else None
        getter: Optional[asyncio.Task] = None
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                waiters = {getter} if cancel_waiter is None else {getter, cancel_waiter}
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    logger.info("Stream from %s cancelled by caller", self._client.name)
                    return
                fragment = getter.result()
                getter = None
                yield fragment
                if fragment.terminal:
                    return
        finally:
            for task in (getter, cancel_waiter, producer):
                if task is not None and not task.done():
                    task.cancel()
            # 等待生产者真正退出，确保上游连接在本轮结束前已关闭
            await asyncio.gather(producer, return_exceptions=True)

    async def _produce(self, messages: list[Message], model: str, queue: asyncio.Queue) -> None:
        client = self._client
        try:
            if client.streaming:
                async for text in client.chat_stream(messages, model):
                    if text:
                        await queue.put(Fragment.delta(text))
            else:
                # 非流式 Provider：整段回复作为唯一的 content Fragment
                text = await client.chat(messages, model)
                if text:
                    await queue.put(Fragment.delta(text))
        except BusinessError as e:
            logger.warning("Provider %s failed (%s): %s", client.name, e.code, e.message)
            await queue.put(Fragment.failure(e.message, code=e.code))
            return
        except Exception as e:
            logger.exception("Unexpected error while streaming from %s", client.name)
            await queue.put(Fragment.failure(f"{client.name}: {e}", code="INTERNAL_ERROR"))
            return
        await queue.put(Fragment.done())
