"""领域层模型与协议。

包含：
- models: 统一的 Message / Fragment / ChatTurnRequest 模型。
- session: 会话与摘要模型及 SessionStore 抽象。
- exceptions: 业务异常类型定义。
"""
