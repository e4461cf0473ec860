"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或 UI 层做统一捕获与用户提示。

按对一次 run 的影响分为三类：
- 致命错误（TransportError 系列、MaxToolCallsExceeded 等）：run 以 Failed 结束。
- 工具错误（ToolError 系列）：非致命，转换为 tool-result 消息后继续循环。
- 调用方用法错误（AlreadyRunning / StaleProposal）：同步抛出，不改变状态。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 run_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


# ---- 传输层（Model Gateway）错误：对 run 致命 ----


class TransportError(BusinessError):
    """模型网关传输失败，run 以 Failed 结束，核心层不做重试。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(TransportError):
    """Provider 限流错误，核心层不做退避，直接上报。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（例如缺少 API Key）。"""


class UnsupportedProviderError(BusinessError):
    """配置的 Provider 无法创建对应的网关。"""

    def __init__(self, provider: str):
        super().__init__(
            code="UNSUPPORTED_PROVIDER",
            message=f"The provider '{provider}' is not currently supported.",
            provider=provider,
        )


# ---- 工具错误：非致命，渲染为 tool-result 消息 ----


class ToolError(BusinessError):
    """工具调用失败的基类。"""


class ToolNotFound(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(
            code="TOOL_NOT_FOUND",
            message=f"Tool not found: '{tool_name}'",
            tool_name=tool_name,
        )
        self.tool_name = tool_name


class ToolDisabled(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(
            code="TOOL_DISABLED",
            message=f"Tool '{tool_name}' is currently disabled.",
            tool_name=tool_name,
        )
        self.tool_name = tool_name


class InvalidArguments(ToolError):
    def __init__(self, tool_name: str, details: str):
        super().__init__(
            code="INVALID_ARGUMENTS",
            message=f"Invalid arguments for tool '{tool_name}': {details}",
            tool_name=tool_name,
        )
        self.tool_name = tool_name
        self.details = details


class MissingRequiredParameter(ToolError):
    def __init__(self, name: str):
        super().__init__(
            code="MISSING_REQUIRED_PARAMETER",
            message=f"Missing required parameter: '{name}'",
            parameter=name,
        )
        self.parameter = name


class ExecutionFailed(ToolError):
    def __init__(self, reason: str):
        super().__init__(
            code="EXECUTION_FAILED",
            message=f"Tool execution failed: {reason}",
        )
        self.reason = reason


# ---- run 级别的致命上限 ----


class MaxToolCallsExceeded(BusinessError):
    def __init__(self, limit: int):
        super().__init__(
            code="MAX_TOOL_CALLS_EXCEEDED",
            message="max tool calls exceeded",
            limit=limit,
        )


class ToolFailureLimitExceeded(BusinessError):
    def __init__(self, limit: int):
        super().__init__(
            code="TOO_MANY_TOOL_FAILURES",
            message="too many consecutive tool failures",
            limit=limit,
        )


# ---- 调用方用法错误：同步拒绝，不改变状态 ----


class AlreadyRunning(BusinessError):
    def __init__(self, state_name: str):
        super().__init__(
            code="ALREADY_RUNNING",
            message=f"A run is already active (state={state_name})",
            http_status=409,
            state=state_name,
        )


class StaleProposal(BusinessError):
    def __init__(self, proposal_id: str, reason: str = "no pending approval for this proposal"):
        super().__init__(
            code="STALE_PROPOSAL",
            message=f"Stale proposal '{proposal_id}': {reason}",
            http_status=409,
            proposal_id=proposal_id,
        )
        self.proposal_id = proposal_id


# ---- 存储错误 ----


class StoreError(BusinessError):
    """会话存储读写失败。"""
