"""基于 JSON 文件的会话存储。

- 内存中缓存每个会话的消息序列，磁盘上每个会话一个 JSON 文件。
- 同一会话键的写操作（append/persist/delete）与磁盘装载通过 asyncio.Lock 串行化，
  不同会话键之间互不阻塞；文件读写都在线程中执行，不阻塞事件循环。
- persist 先写临时文件再 os.replace，读取方只会看到旧文件或新文件。
"""

import asyncio
import hashlib
import json
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from chat_core.domain.exceptions import StorageError, ValidationError
from chat_core.domain.models import (
    ROLES,
    Message,
    Role,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from chat_core.domain.session import Session, SessionStore, SessionSummary
from chat_core.infrastructure.logging.logger import logger


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
_MAX_STEM = 64


def session_filename(key: str) -> str:
    """把任意客户端会话键映射为安全的文件名。

    只保留字母数字、下划线与短横线，再追加原始键的哈希，
    因此 "a:b" 与 "a_b" 不会落到同一个文件，"../x" 也无法穿越目录。
    """

    stem = _UNSAFE_CHARS.sub("_", key).strip("_")[:_MAX_STEM] or "session"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{stem}-{digest}.json"


class JsonSessionStore(SessionStore):
    def __init__(self, root: str | Path):
        self._dir = Path(root).expanduser().resolve()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        return self._dir / session_filename(key)

    # ---- 读取 ----

    async def history(self, key: str) -> List[Message]:
        session = await self._get(key)
        if session is None:
            return []
        return list(session.messages)

    async def created_at(self, key: str) -> Optional[datetime]:
        """会话的创建时间；删除后重建的同名会话会得到新的值。"""

        session = await self._get(key)
        return session.created_at if session is not None else None

    async def list_sessions(self) -> List[SessionSummary]:
        return await asyncio.to_thread(self._scan)

    # ---- 写入 ----

    async def append(
        self,
        key: str,
        role: Role,
        content: str,
        *,
        create: bool = True,
        created_at: Optional[datetime] = None,
    ) -> Optional[Message]:
        """追加一条消息。

        create=False 时不会新建会话；给出 created_at 时只追加到该次创建的会话。
        条件不满足（会话已被删除或已被重建）时返回 None。
        """

        if role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"unknown role: {role!r}")
        async with self._locked(key):
            session = await self._load(key)
            if session is None:
                if not create:
                    return None
                session = Session(key=key)
                self._sessions[key] = session
            elif created_at is not None and session.created_at != created_at:
                return None
            message = Message(role=role, content=content)
            session.messages.append(message)
            session.updated_at = message.timestamp
            return message

    async def persist(self, key: str) -> None:
        async with self._locked(key):
            session = self._sessions.get(key)
            if session is None:
                return
            obj = self._to_payload(session)
            write = asyncio.ensure_future(asyncio.to_thread(self._write_atomic, self.path_for(key), obj))
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                # 写线程无法中断：持锁等它结束，旧快照不能覆盖之后的写入
                await asyncio.gather(write, return_exceptions=True)
                raise

    async def delete(self, key: str) -> bool:
        async with self._locked(key):
            removed = self._sessions.pop(key, None) is not None
            path = self.path_for(key)
            try:
                await asyncio.to_thread(path.unlink)
                removed = True
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(code="STORE_DELETE_ERROR", message=str(e), http_status=500)
            return removed

    # ---- 辅助方法 ----

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """持有 key 的锁。没有使用者且会话不在内存中时回收该锁。"""

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0 and key not in self._sessions:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def _get(self, key: str) -> Optional[Session]:
        session = self._sessions.get(key)
        if session is not None:
            return session
        async with self._locked(key):
            return await self._load(key)

    async def _load(self, key: str) -> Optional[Session]:
        """优先返回内存中的会话，否则从磁盘懒加载（读取不会创建文件）。调用方需持有 key 的锁。"""

        session = self._sessions.get(key)
        if session is not None:
            return session
        session = await asyncio.to_thread(self._read_file, key)
        if session is not None:
            self._sessions[key] = session
        return session

    def _read_file(self, key: str) -> Optional[Session]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = self._from_payload(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=f"{path.name}: {e}", http_status=500)
        if session.key != key:
            raise StorageError(
                code="STORE_READ_ERROR",
                message=f"{path.name} holds session {session.key!r}, expected {key!r}",
                http_status=500,
            )
        return session

    def _scan(self) -> List[SessionSummary]:
        items: List[SessionSummary] = []
        for path in self._dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                items.append(
                    SessionSummary(
                        key=data["key"],
                        message_count=len(data.get("messages") or []),
                        updated_at=parse_timestamp(data["updated"]),
                    )
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path.name, e)
                continue
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    @staticmethod
    def _write_atomic(path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f".{path.stem}.{uuid4().hex}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(obj, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)

    @staticmethod
    def _to_payload(session: Session) -> Dict[str, Any]:
        return {
            "key": session.key,
            "messages": [
                {
                    "role": m.role,
                    "content": m.content,
                    "timestamp": format_timestamp(m.timestamp),
                }
                for m in session.messages
            ],
            "created": format_timestamp(session.created_at),
            "updated": format_timestamp(session.updated_at),
        }

    @staticmethod
    def _from_payload(data: Dict[str, Any]) -> Session:
        messages = [
            Message(
                role=m["role"],
                content=m.get("content") or "",
                timestamp=parse_timestamp(m["timestamp"]) if m.get("timestamp") else utc_now(),
            )
            for m in data.get("messages") or []
        ]
        updated = parse_timestamp(data["updated"])
        created = parse_timestamp(data["created"]) if data.get("created") else updated
        return Session(key=data["key"], messages=messages, created_at=created, updated_at=updated)
