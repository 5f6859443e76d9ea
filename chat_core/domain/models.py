"""统一的消息与流式数据模型。

本模块定义了在 Provider、会话存储、Dispatcher 与传输层之间共享的标准结构：

- Message: 会话中的一条不可变消息（system/user/assistant）。
- Fragment: 统一流协议的最小单元：内容增量、done 或 error。
- ChatTurnRequest: 传输层交给 Dispatcher 的一次对话轮次请求。

所有 Provider 适配器只依赖这些模型，并负责把各家 API 的数据转换成 Fragment。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional, get_args


# 消息角色（与 OpenAI / Ollama 的 role 字段对应）
Role = Literal["system", "user", "assistant"]
ROLES = frozenset(get_args(Role))

FragmentKind = Literal["content", "done", "error"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """统一的时间序列化格式：UTC ISO8601，以 Z 结尾。"""

    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class Message:
    """一条对话消息，创建后不可修改。

    - role: 消息角色。
    - content: 纯文本内容。
    - timestamp: 创建时间（UTC）。
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Fragment:
    """统一流协议中的一个单元。

    kind:
        - "content": 非空的内容增量。
        - "done": 正常结束标记，每个流恰好一个且位于最后。
        - "error": 异常结束，与 done 互斥。
    """

    kind: FragmentKind
    content: str = ""
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def delta(cls, text: str) -> "Fragment":
        if not text:
            raise ValueError("content fragment must not be empty")
        return cls(kind="content", content=text)

    @classmethod
    def done(cls) -> "Fragment":
        return cls(kind="done")

    @classmethod
    def failure(cls, message: str, code: str = "UPSTREAM_ERROR") -> "Fragment":
        return cls(kind="error", error=message or "unknown error", code=code)

    @property
    def terminal(self) -> bool:
        return self.kind != "content"


@dataclass
class ChatTurnRequest:
    """一次对话轮次的输入。

    provider / model 为空时分别取 Registry 默认 Provider 与其默认模型；
    session_key 为空时由 Dispatcher 生成新的会话键。
    system_prompt 只加在发往上游的消息列表最前面，不会写入会话历史。
    """

    messages: List[Message]
    session_key: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
