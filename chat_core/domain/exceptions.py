"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
Provider 适配层会把它们转换为 error Fragment，API 层则映射为 HTTP 状态码。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_WRITE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、session_key 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """上游 API 返回非 2xx 状态时抛出，http_status 为上游状态码。"""


class RateLimitError(ApiError):
    """上游限流（HTTP 429）。"""


class PayloadError(BusinessError):
    """上游返回的数据无法解析（流中途的坏 JSON 等）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ProviderNotAvailableError(BusinessError):
    """请求的 Provider 未注册或启动探测失败。"""

    def __init__(self, name: str):
        super().__init__(
            code="PROVIDER_NOT_AVAILABLE",
            message=f"provider '{name}' not available",
            http_status=404,
            provider=name,
        )
        self.name = name


class StorageError(BusinessError):
    """会话持久化失败（磁盘不可写等）。"""


class ConfigurationError(BusinessError):
    """启动期配置错误，例如没有任何可用 Provider。"""
