from __future__ import annotations


class TypedBridgeError(RuntimeError):
    """Base class for typed operational errors surfaced to callers."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedBridgeError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedBridgeError):
        return exc.payload()
    return None


class ConfigError(TypedBridgeError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class InvalidRequestError(TypedBridgeError):
    """Malformed request body or arguments."""

    error_code = "INVALID_REQUEST"
    failure_class = "request"
    user_message = "Request is invalid."


class ConfigStoreError(TypedBridgeError):
    """On-disk config or secret store could not be read or written."""

    error_code = "CONFIG_STORE_ERROR"
    failure_class = "storage"
    user_message = "Config store is unavailable."


class CommandFailedError(TypedBridgeError):
    """Wrapped CLI exited non-zero without a JSON report."""

    error_code = "COMMAND_FAILED"
    failure_class = "command"
    user_message = "CLI command failed."

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(TypedBridgeError):
    """Wrapped CLI did not finish before its timeout."""

    error_code = "COMMAND_TIMEOUT"
    failure_class = "timeout"
    user_message = "CLI command timed out."


class OAuthFlowNotFoundError(TypedBridgeError):
    """No active login flow for the requested provider."""

    error_code = "OAUTH_FLOW_NOT_FOUND"
    failure_class = "oauth"
    user_message = "No active login flow for this provider."


class OAuthLoginError(TypedBridgeError):
    """Interactive login reported a failure or exited early."""

    error_code = "OAUTH_LOGIN_FAILED"
    failure_class = "oauth"
    user_message = "Provider login failed."


class OAuthTimeoutError(TypedBridgeError):
    """Interactive login produced no recognizable output in time."""

    error_code = "OAUTH_TIMEOUT"
    failure_class = "timeout"
    user_message = "Provider login timed out."


class SessionNotFoundError(TypedBridgeError):
    """Conversation session does not exist."""

    error_code = "SESSION_NOT_FOUND"
    failure_class = "sessions"
    user_message = "Session not found."


class BridgeUnreachableError(TypedBridgeError):
    """Sandbox bridge could not be reached after retries."""

    error_code = "BRIDGE_UNREACHABLE"
    failure_class = "network"
    user_message = "Sandbox bridge is not reachable."


class BridgeRequestError(TypedBridgeError):
    """Sandbox bridge rejected the request."""

    error_code = "BRIDGE_REQUEST_ERROR"
    failure_class = "request"
    user_message = "Sandbox bridge rejected the request."

    def __init__(self, message: str, *, status_code: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status_code = int(status_code or 0)
        self.body = body


class ContainerRuntimeError(TypedBridgeError):
    """Container engine operation failed."""

    error_code = "CONTAINER_RUNTIME_ERROR"
    failure_class = "container"
    user_message = "Container runtime operation failed."
