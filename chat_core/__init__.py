"""Chat Core 顶层包。

该包提供流式对话编排的核心实现：
Provider 适配与注册、会话存储、流式 Dispatcher，以及 HTTP 事件流 / WebSocket 两种传输层。
"""

__version__ = "0.1.0"
