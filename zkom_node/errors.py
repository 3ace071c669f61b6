from __future__ import annotations


class NodeAgentError(RuntimeError):
    pass


class ConfigError(NodeAgentError):
    pass


class EnvironmentCheckError(NodeAgentError):
    pass


class ProbeError(NodeAgentError):
    pass


class NetworkError(NodeAgentError):
    pass


class InitError(NodeAgentError):
    pass


class VerifyError(NodeAgentError):
    pass


class CodeExpired(VerifyError):
    def __init__(self, message: str = "device code expired") -> None:
        super().__init__(message)


class DeviceDisabled(VerifyError):
    def __init__(self, message: str = "device has been disabled") -> None:
        super().__init__(message)


class VerificationTimeout(NodeAgentError):
    def __init__(self, message: str = "device verification timeout") -> None:
        super().__init__(message)


class HeartbeatError(NodeAgentError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def unauthorized(self) -> bool:
        return self.status_code == 401


class RefreshError(NodeAgentError):
    pass


class TokenParseError(NodeAgentError):
    pass


class MissingParameter(NodeAgentError):
    def __init__(self, name: str, detail: str = "") -> None:
        super().__init__(detail or f"missing required parameter: {name}")
        self.name = name


class InvalidNodeId(NodeAgentError):
    def __init__(self, message: str = "Invalid node ID") -> None:
        super().__init__(message)


class StreamConnectError(NodeAgentError):
    pass


class ComputeBackendError(NodeAgentError):
    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
