from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from .models import Message, Role, utc_now


@dataclass
class Session:
    key: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SessionSummary:
    key: str
    message_count: int
    updated_at: datetime


class SessionStore(Protocol):
    async def history(self, key: str) -> List[Message]:
        ...

    async def created_at(self, key: str) -> Optional[datetime]:
        ...

    async def append(
        self,
        key: str,
        role: Role,
        content: str,
        *,
        create: bool = True,
        created_at: Optional[datetime] = None,
    ) -> Optional[Message]:
        ...

    async def persist(self, key: str) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def list_sessions(self) -> List[SessionSummary]:
        ...
