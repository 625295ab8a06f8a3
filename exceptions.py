"""
自定义异常类模块
定义小说生成流水线中使用的各种异常类型
"""


class NovelGeneratorError(Exception):
    """基础异常类，所有项目相关的异常都应继承此类"""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class APIKeyError(NovelGeneratorError):
    """API密钥相关错误"""

    pass


class ConfigurationError(NovelGeneratorError):
    """配置相关错误"""

    pass


class ValidationError(NovelGeneratorError):
    """用户输入验证错误（例如空的创作提示），在修改任何状态之前抛出"""

    pass


class FileValidationError(NovelGeneratorError):
    """文件验证错误"""

    pass


class EncodingError(NovelGeneratorError):
    """文本编码错误"""

    pass


class APIError(NovelGeneratorError):
    """API调用错误"""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        is_retryable: bool = False,
        status_code: int | None = None,
    ):
        self.error_code = error_code
        self.is_retryable = is_retryable
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(APIError):
    """API速率限制错误（429）"""

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, error_code="rate_limited", is_retryable=True, status_code=429)


class ServerError(APIError):
    """服务端错误（5xx）"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, error_code="server_error", is_retryable=True, status_code=status_code)


class TransportError(APIError):
    """网络/传输层错误，或无法归类的调用失败"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, error_code="transport", is_retryable=False, status_code=status_code)


class EmptyResponseError(APIError):
    """模型返回了空内容"""

    def __init__(self, message: str = "Empty response from AI"):
        super().__init__(message, error_code="empty_response", is_retryable=False)


class SchemaMismatchError(APIError):
    """模型返回的内容无法解析为约定的结构"""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message, error_code="schema_mismatch", is_retryable=False)
        self.details = details


class StorageError(NovelGeneratorError):
    """持久化状态读写失败"""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class IncompleteStateError(NovelGeneratorError):
    """恢复时缺少必需的持久化数据，建议丢弃全部状态后重新开始"""

    def __init__(self, message: str, missing_keys: list[str] | None = None):
        self.missing_keys = list(missing_keys or [])
        super().__init__(message, details=", ".join(self.missing_keys) or None)


class PipelineError(NovelGeneratorError):
    """流水线某个阶段失败，携带阶段名与章节序号便于展示具体错误"""

    def __init__(self, message: str, phase: str, chapter_index: int | None = None):
        self.phase = phase
        self.chapter_index = chapter_index
        super().__init__(message)

    @property
    def chapter_number(self) -> int | None:
        """从1开始的章节号"""
        if self.chapter_index is None:
            return None
        return self.chapter_index + 1
