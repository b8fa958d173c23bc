"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在宿主应用层做统一捕获与用户提示。

注意：撤销/重做/接受/拒绝等“无可用历史”的情况不是异常，
相关操作直接返回 False，调用方据此分支即可。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TRANSPORT_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 stream_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class TransportError(NetworkError):
    """流式响应非成功状态或缺少响应体。

    对当前流是致命的：通过 ErrorEvent 与 completion 的异常路径交付，
    从不在 stream_llm 调用处同步抛出。
    """


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ProviderNotConfiguredError(ValidationError):
    """AgentConnection 尚未设置 Provider 配置。"""


class ProcessorExecutionError(BusinessError):
    """单个处理器执行失败，仅记录日志，不影响同一事件的其他处理器。"""


class PersistenceError(BusinessError):
    """存储适配器读写失败；内存状态仍是事实来源，不回滚。"""
