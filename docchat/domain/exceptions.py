"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编辑器集成层做统一捕获与用户提示。这里的错误都只作用于
单个会话，不会让整个进程失败。
"""

from typing import Dict, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "SETTINGS_PARSE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、adapter 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ParseError(BusinessError):
    """设置块或章节结构无法解析。可恢复，会话保持 Idle。"""


class ValidationError(BusinessError):
    """一个或多个设置项未通过 schema 校验。

    errors 为 {key: 错误信息}，供编辑器逐项标注。
    """

    def __init__(
        self,
        code: str,
        message: str,
        errors: Optional[Dict[str, str]] = None,
        http_status: int = 400,
        **extra,
    ):
        super().__init__(code, message, http_status=http_status, **extra)
        self.errors: Dict[str, str] = dict(errors or {})


class AdapterSetupError(BusinessError):
    """适配器前置检查失败（例如缺少凭证），本次提交作废。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、流中断等。"""


class ApiError(BusinessError):
    """后端返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """后端限流错误，由上层决定是否重试。"""


class ProtocolDecodeError(BusinessError):
    """后端返回了无法解码的完整数据单元。"""


class SessionStateError(BusinessError):
    """当前会话状态不允许该操作（例如流式输出中再次提交）。"""
