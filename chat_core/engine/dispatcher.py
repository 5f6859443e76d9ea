"""Streaming Dispatcher：一次对话轮次的编排。

状态机：Idle -> HistoryLoaded -> Streaming -> {Completed | Failed | Cancelled}

1. 读取会话历史，把本轮用户消息写入会话并立即持久化（生成失败时用户消息依然保留）。
2. 解析 Provider（显式指定，否则取 Registry 默认），通过 MessageStreamAdapter 获取 Fragment 流，
   逐个转发给传输层，同时累积 assistant 文本。
3. 收到 done 时把累积文本作为一条 assistant 消息写入并持久化；
   error / 取消时不持久化部分回复，已转发给客户端的内容也不撤回。
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from chat_core.domain.exceptions import BusinessError, ProviderNotAvailableError, StorageError
from chat_core.domain.models import ChatTurnRequest, Fragment, Message
from chat_core.domain.session import SessionStore
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.registry import ProviderEntry, ProviderRegistry


class TurnState(str, Enum):
    IDLE = "idle"
    HISTORY_LOADED = "history_loaded"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.FAILED, TurnState.CANCELLED})


@dataclass
class Turn:
    """一次轮次的运行期状态，传输层可读取 session_key 与最终 state。"""

    request: ChatTurnRequest
    session_key: str
    turn_id: str = field(default_factory=lambda: f"t-{uuid4().hex}")
    state: TurnState = TurnState.IDLE
    provider: Optional[str] = None
    model: Optional[str] = None
    # 已转发给传输层的 assistant 文本（失败/取消时仅保留在这里，不写入会话）
    assistant_text: str = ""
    # HistoryLoaded 时会话的创建时间，用于识别轮次进行中的删除
    session_created: Optional[datetime] = None
    error: Optional[Fragment] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


class StreamingDispatcher:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: SessionStore,
        session_key_prefix: str = "webui:",
    ):
        self._registry = registry
        self._store = store
        self._key_prefix = session_key_prefix

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def store(self) -> SessionStore:
        return self._store

    def new_session_key(self) -> str:
        return f"{self._key_prefix}{uuid4().hex}"

    def open_turn(self, request: ChatTurnRequest) -> Turn:
        """创建 Turn（Idle）；未提供会话键时生成新键。"""

        return Turn(request=request, session_key=request.session_key or self.new_session_key())

    async def stream(self, turn: Turn, cancel: Optional[asyncio.Event] = None) -> AsyncIterator[Fragment]:
        """执行轮次并产出 Fragment。

        除取消外，流总是以恰好一个终止 Fragment（done 或 error）结束。
        """

        if turn.state is not TurnState.IDLE:
            raise RuntimeError(f"turn {turn.turn_id} already started ({turn.state.value})")

        start_time = time.time()
        log_ctx = {"turn_id": turn.turn_id, "session_key": turn.session_key}
        log_event(logging.INFO, "Turn started", log_ctx, message_count=len(turn.request.messages))

        try:
            try:
                working = await self._load_history(turn)
                entry = self._resolve_provider(turn)
            except BusinessError as e:
                yield self._fail(turn, Fragment.failure(e.message, code=e.code), log_ctx)
                return

            turn.state = TurnState.STREAMING
            log_event(
                logging.INFO,
                "Calling provider (stream)",
                log_ctx,
                provider=turn.provider,
                model=turn.model,
                streaming=entry.streaming,
                message_count=len(working),
            )

            # aclosing 保证本轮退出前 adapter 已停止读取上游并释放连接
            fragments = entry.adapter.stream(working, turn.model, cancel=cancel)
            async with aclosing(fragments):
                async for fragment in fragments:
                    if fragment.kind == "content":
                        turn.assistant_text += fragment.content
                        yield fragment
                    elif fragment.kind == "error":
                        yield self._fail(turn, fragment, log_ctx)
                        return
                    else:
                        await self._complete(turn, log_ctx)
                        yield fragment
                        return

            # adapter 在未产出终止 Fragment 的情况下结束，只可能是被取消
            self._cancel(turn, log_ctx)
        except (asyncio.CancelledError, GeneratorExit):
            # 传输层断开：任务被取消或生成器被关闭
            self._cancel(turn, log_ctx)
            raise
        finally:
            log_event(
                logging.INFO,
                "Turn finished",
                log_ctx,
                state=turn.state.value,
                elapsed_seconds=round(time.time() - start_time, 2),
            )

    async def run(self, request: ChatTurnRequest, cancel: Optional[asyncio.Event] = None) -> Turn:
        """非流式入口：跑完整个轮次并返回 Turn。"""

        turn = self.open_turn(request)
        async for _ in self.stream(turn, cancel=cancel):
            pass
        return turn

    # ---- 各阶段 ----

    async def _load_history(self, turn: Turn) -> List[Message]:
        req = turn.request
        working = await self._store.history(turn.session_key)
        for msg in req.messages:
            stored = await self._store.append(turn.session_key, msg.role, msg.content)
            working.append(stored)
        if req.messages:
            await self._persist(turn, {"turn_id": turn.turn_id, "session_key": turn.session_key})
        turn.session_created = await self._store.created_at(turn.session_key)
        # system prompt 只发往上游，不写入会话历史
        if req.system_prompt:
            working.insert(0, Message(role="system", content=req.system_prompt))
        turn.state = TurnState.HISTORY_LOADED
        return working

    def _resolve_provider(self, turn: Turn) -> ProviderEntry:
        req = turn.request
        if req.provider:
            entry = self._registry.get(req.provider)
            if entry is None:
                raise ProviderNotAvailableError(req.provider)
        else:
            entry = self._registry.default_provider()
            if entry is None:
                raise ProviderNotAvailableError("default")
        turn.provider = entry.name
        turn.model = req.model or entry.default_model
        return entry

    async def _complete(self, turn: Turn, log_ctx: dict) -> None:
        if turn.assistant_text:
            stored = await self._store.append(
                turn.session_key,
                "assistant",
                turn.assistant_text,
                create=False,
                created_at=turn.session_created,
            )
            if stored is None:
                # 会话在本轮进行中被删除：不重建会话
                log_event(logging.WARNING, "Session deleted during turn, reply not stored", log_ctx)
                turn.state = TurnState.COMPLETED
                return
        await self._persist(turn, log_ctx)
        turn.state = TurnState.COMPLETED

    async def _persist(self, turn: Turn, log_ctx: dict) -> None:
        # 持久化失败只记录日志：内存状态仍然有效，下一次 persist 会重试
        try:
            await self._store.persist(turn.session_key)
        except StorageError as e:
            log_event(logging.ERROR, "Failed to persist session", log_ctx, code=e.code, error=e.message)

    def _fail(self, turn: Turn, fragment: Fragment, log_ctx: dict) -> Fragment:
        turn.state = TurnState.FAILED
        turn.error = fragment
        log_event(
            logging.WARNING,
            "Turn failed",
            log_ctx,
            provider=turn.provider,
            code=fragment.code,
            error=fragment.error,
            partial_chars=len(turn.assistant_text),
        )
        return fragment

    def _cancel(self, turn: Turn, log_ctx: dict) -> None:
        if turn.finished:
            return
        turn.state = TurnState.CANCELLED
        log_event(
            logging.INFO,
            "Turn cancelled",
            log_ctx,
            provider=turn.provider,
            partial_chars=len(turn.assistant_text),
        )
