"""FastAPI 传输层。

- POST /api/chat: 单轮对话，text/event-stream，每个 Fragment 一帧 `data: {json}\\n\\n`。
- WS   /ws: 持久连接，多轮顺序对话，每个 Fragment 一条 JSON 消息。
- GET  /api/models, /api/sessions, /api/sessions/{key}; DELETE /api/sessions/{key}。

两种传输共用 encode_fragment，帧语义完全一致；客户端断开时都会通知 Dispatcher 取消本轮。
"""

from __future__ import annotations

import argparse
import asyncio
import json
from contextlib import aclosing, asynccontextmanager
from typing import Any, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from chat_core.api.schemas import (
    ChatRequest,
    DeleteResponse,
    MessageOut,
    ModelsResponse,
    SessionInfo,
    encode_fragment,
    error_frame,
)
from chat_core.api.service import ChatRuntime, build_runtime
from chat_core.config.settings import Settings
from chat_core.domain.exceptions import BusinessError
from chat_core.engine.dispatcher import StreamingDispatcher
from chat_core.infrastructure.logging.logger import logger, setup_logger


def create_app(cfg: Optional[Settings] = None, runtime: Optional[ChatRuntime] = None) -> FastAPI:
    """构造 FastAPI 应用。

    传入 runtime 时直接使用（测试场景）；否则在 lifespan 中探测 Provider 并构造，
    没有可用 Provider 时启动失败。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            try:
                app.state.runtime = await build_runtime(cfg or Settings())
            except BusinessError as e:
                logger.error("Startup failed: %s", e.message)
                raise
        yield

    app = FastAPI(title="Chat Core", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        return JSONResponse(status_code=exc.http_status, content={"code": exc.code, "message": exc.message})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        dispatcher = _runtime(request.app).dispatcher
        turn = dispatcher.open_turn(body.to_turn())
        cancel = asyncio.Event()

        async def event_stream():
            fragments = dispatcher.stream(turn, cancel=cancel)
            try:
                async with aclosing(fragments):
                    async for fragment in fragments:
                        frame = encode_fragment(fragment, turn.session_key)
                        yield f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"
            finally:
                cancel.set()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Session-Key": turn.session_key,
            },
        )

    @app.get("/api/models", response_model=List[ModelsResponse])
    async def models(request: Request, provider: str = "all"):
        registry = _runtime(request.app).registry
        if provider == "all":
            names = sorted(registry.list_available())
        else:
            if registry.get(provider) is None:
                raise HTTPException(status_code=404, detail="Provider not found")
            names = [provider.lower()]

        result = []
        for name in names:
            entry = registry.get(name)
            try:
                listed = await entry.list_models()
            except BusinessError as e:
                logger.warning("Listing models for %s failed: %s", name, e.message)
                listed = []
            result.append(ModelsResponse(provider=name, models=listed or [entry.default_model]))
        return result

    @app.get("/api/sessions", response_model=List[SessionInfo])
    async def sessions(request: Request):
        store = _runtime(request.app).store
        return [
            SessionInfo(key=s.key, messages=s.message_count, updated=int(s.updated_at.timestamp()))
            for s in await store.list_sessions()
        ]

    @app.get("/api/sessions/{key:path}", response_model=List[MessageOut])
    async def session_detail(key: str, request: Request):
        store = _runtime(request.app).store
        return [
            MessageOut(role=m.role, content=m.content, timestamp=int(m.timestamp.timestamp()))
            for m in await store.history(key)
        ]

    @app.delete("/api/sessions/{key:path}", response_model=DeleteResponse)
    async def delete_session(key: str, request: Request):
        store = _runtime(request.app).store
        deleted = await store.delete(key)
        logger.info("Session %s delete requested (removed=%s)", key, deleted)
        return DeleteResponse(success=deleted)

    @app.websocket("/ws")
    async def chat_websocket(websocket: WebSocket):
        await websocket.accept()
        logger.info("WebSocket client connected")
        conn = _WebSocketConnection(websocket, _runtime(websocket.app).dispatcher)
        try:
            await conn.serve()
        finally:
            logger.info("WebSocket client disconnected")

    return app


def _runtime(app: FastAPI) -> ChatRuntime:
    runtime = app.state.runtime
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return runtime


class _WebSocketConnection:
    """一个 WebSocket 连接上的顺序多轮对话。

    后台读取任务持续接收客户端消息：普通请求进入收件队列，
    `{"action": "abort"}` 取消当前轮次，连接断开时取消当前轮次并结束队列。
    """

    def __init__(self, websocket: WebSocket, dispatcher: StreamingDispatcher):
        self._ws = websocket
        self._dispatcher = dispatcher
        self._inbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._cancel: Optional[asyncio.Event] = None
        self._closed = asyncio.Event()

    async def serve(self) -> None:
        reader = asyncio.create_task(self._read_loop())
        try:
            while True:
                raw = await self._inbox.get()
                if raw is None:
                    return
                request = await self._parse(raw)
                if request is None:
                    continue
                if not await self._serve_turn(request):
                    return
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await self._ws.receive()
                if message["type"] == "websocket.disconnect":
                    return
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                if raw is None:
                    continue
                if self._is_abort(raw):
                    if self._cancel is not None:
                        self._cancel.set()
                    continue
                await self._inbox.put(raw)
        finally:
            self._closed.set()
            if self._cancel is not None:
                self._cancel.set()
            self._inbox.put_nowait(None)

    async def _parse(self, raw: str) -> Optional[ChatRequest]:
        try:
            return ChatRequest.model_validate_json(raw)
        except PydanticValidationError as e:
            await self._send(error_frame(f"invalid request: {e.errors()[0].get('msg', 'invalid')}", "BAD_REQUEST"))
            return None

    async def _serve_turn(self, request: ChatRequest) -> bool:
        """执行一轮；返回 False 表示连接已不可用。"""

        turn = self._dispatcher.open_turn(request.to_turn())
        self._cancel = asyncio.Event()
        if self._closed.is_set():
            self._cancel.set()
        fragments = self._dispatcher.stream(turn, cancel=self._cancel)
        try:
            async with aclosing(fragments):
                async for fragment in fragments:
                    if not await self._send(encode_fragment(fragment, turn.session_key)):
                        return False
        finally:
            self._cancel.set()
            self._cancel = None
        return not self._closed.is_set()

    async def _send(self, frame: dict) -> bool:
        try:
            await self._ws.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("WebSocket write error: %s", e)
            return False
        return True

    @staticmethod
    def _is_abort(raw: str) -> bool:
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            return False
        return isinstance(data, dict) and data.get("action") == "abort"


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the streaming chat server.")
    parser.add_argument("--host", default=None, help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=None, help="Port to bind.")
    parser.add_argument("--log_dir", default=None, help="Directory for application logs.")
    parser.add_argument("--storage_root", default=None, help="Directory holding sessions/.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    overrides = {
        "server_host": args.host,
        "server_port": args.port,
        "log_dir": args.log_dir,
        "storage_root": args.storage_root,
    }
    cfg = Settings(**{k: v for k, v in overrides.items() if v is not None})
    setup_logger(cfg)

    app = create_app(cfg)
    logger.info("Chat server starting on http://%s:%d", cfg.server_host, cfg.server_port)
    uvicorn.run(app, host=cfg.server_host, port=cfg.server_port)


if __name__ == "__main__":
    main()
