import re
from typing import Optional


_REMOTE_METHOD_PREFIX_RE = re.compile(r"^Error invoking remote method '[^']+': ")


class HybridAIError(Exception):
    """Base for every fault surfaced to the UI boundary."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotInstalled(HybridAIError):
    kind = "not_installed"
    status_code = 409

    def __init__(self, message: str = "Ollama is not installed") -> None:
        super().__init__(message)


class AlreadyRunning(HybridAIError):
    kind = "already_running"
    status_code = 409


class StartTimeout(HybridAIError):
    kind = "start_timeout"
    status_code = 504

    def __init__(self, message: str = "Failed to start Ollama server") -> None:
        super().__init__(message)


class HealthCheckFailure(HybridAIError):
    kind = "health_check_failure"
    status_code = 503


class _RemoteStatusError(HybridAIError):
    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class ListFailure(_RemoteStatusError):
    kind = "list_failure"


class PullFailure(_RemoteStatusError):
    kind = "pull_failure"


class DeleteFailure(_RemoteStatusError):
    kind = "delete_failure"


class InstallationFailed(HybridAIError):
    kind = "installation_failed"

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class InstallationUnverified(HybridAIError):
    kind = "installation_unverified"

    def __init__(self, message: str = "Installation completed but Ollama binary not found") -> None:
        super().__init__(message)


class ManualInstallRequired(HybridAIError):
    kind = "manual_install_required"
    status_code = 409

    def __init__(self, url: str) -> None:
        super().__init__(
            f"Please install Ollama manually from the downloaded file ({url}), then retry."
        )
        self.url = url


class UnsupportedPlatform(HybridAIError):
    kind = "unsupported_platform"
    status_code = 400

    def __init__(self, platform: str) -> None:
        super().__init__(f"Unsupported operating system: {platform}")
        self.platform = platform


class InvalidOperator(HybridAIError):
    kind = "invalid_operator"
    status_code = 400

    def __init__(self, operator: str) -> None:
        super().__init__(f"Invalid operator: {operator}")
        self.operator = operator


class UnknownTool(HybridAIError):
    kind = "unknown_tool"
    status_code = 400

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(HybridAIError):
    kind = "tool_execution_error"


class ToolResultAlreadyAttached(HybridAIError):
    kind = "tool_result_already_attached"

    def __init__(self, tool_call_id: str) -> None:
        super().__init__(f"Tool result already attached for call {tool_call_id}")
        self.tool_call_id = tool_call_id


class ChatDatabaseMismatch(HybridAIError):
    kind = "chat_database_mismatch"
    status_code = 409

    def __init__(self, chat_id: str, database_id: str, requested_id: str) -> None:
        super().__init__(
            f"Chat {chat_id} belongs to database {database_id}, not {requested_id}"
        )
        self.chat_id = chat_id
        self.database_id = database_id
        self.requested_id = requested_id


class LocalInferenceError(HybridAIError):
    kind = "local_inference_error"
    status_code = 502


class RemoteTransportError(HybridAIError):
    kind = "remote_transport_error"
    status_code = 502


def normalize_error_message(message: str) -> str:
    """Strip transport wrapper prefixes and capitalize for display."""
    text = _REMOTE_METHOD_PREFIX_RE.sub("", message or "")
    if text.lower().startswith("error: "):
        text = text[7:]
    if not text:
        return text
    return text[0].upper() + text[1:]
