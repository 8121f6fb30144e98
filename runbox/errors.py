"""Exceptions raised by the execution engine."""

from enum import Enum
from typing import Optional


class RunboxError(Exception):
    """Base class for all engine errors."""


class ConnectionCause(str, Enum):
    """Normalized reason a runtime endpoint could not be reached."""
    NOT_RUNNING = "not-running"
    PERMISSION_DENIED = "permission-denied"
    UNKNOWN = "unknown"


class EngineConnectionError(RunboxError):
    """No container runtime endpoint could be reached."""

    def __init__(self, message: str, cause: ConnectionCause = ConnectionCause.UNKNOWN):
        super().__init__(message)
        self.cause = cause


class UnsupportedLanguageError(RunboxError):
    def __init__(self, language: Optional[str]):
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class ImageError(RunboxError):
    """An image operation failed."""


class ImageNotFoundError(ImageError):
    pass


class ImagePullError(ImageError):
    pass


class ContainerError(RunboxError):
    """A container operation failed."""


class ContainerNotFoundError(ContainerError):
    pass


class ContainerCreateError(ContainerError):
    pass


class ExecutionTimeoutError(RunboxError):
    def __init__(self, timeout: float):
        super().__init__(f"Execution timed out after {timeout:g}s")
        self.timeout = timeout


class StreamError(RunboxError):
    """The attached container stream reported an error."""


class SessionNotFoundError(RunboxError):
    def __init__(self, session_id: str):
        super().__init__(f"Shell session not found: {session_id}")
        self.session_id = session_id
