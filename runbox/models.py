"""Data models shared by the engine components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

WORKSPACE_MOUNT = "/workspace"


class ExecutionState(str, Enum):
    """Lifecycle of a single run."""
    PENDING = "pending"
    IMAGE_ENSURING = "image-ensuring"
    CONTAINER_CREATING = "container-creating"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed-out"
    FAILED = "failed"


class ContainerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"


class SessionState(str, Enum):
    """Lifecycle of an interactive shell."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class MessageType(str, Enum):
    OUTPUT = "output"
    ERROR = "error"
    SYSTEM = "system"
    CLOSE = "close"


@dataclass(frozen=True)
class Mount:
    """A host directory bound into a container."""
    host_path: str
    container_path: str
    read_only: bool = True

    def to_volume(self) -> dict:
        return {"bind": self.container_path, "mode": "ro" if self.read_only else "rw"}


@dataclass(frozen=True)
class ResourceLimits:
    memory: int = 256 * 1024 * 1024
    memory_swap: int = 256 * 1024 * 1024
    cpu_quota: int = 50000  # 50% of one core
    cpu_period: int = 100000


@dataclass
class ContainerSpec:
    """Everything needed to create a container."""

    image: str
    command: list[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    mounts: list[Mount] = field(default_factory=list)
    limits: Optional[ResourceLimits] = None
    network_mode: Optional[str] = None
    tty: bool = False
    stdin_open: bool = False
    auto_remove: bool = False
    name: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerInstance:
    """A container owned by exactly one run or shell."""
    id: str
    name: Optional[str] = None
    state: ContainerState = ContainerState.CREATED

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass
class ExecOutput:
    exit_code: Optional[int]
    output: str


@dataclass
class ImageSummary:
    id: str
    tags: list[str]
    size: int = 0
    created: Optional[str] = None


@dataclass
class ConnectionInfo:
    """Result of a successful engine handshake."""
    connected: bool
    version: Optional[str] = None
    api_version: Optional[str] = None
    os: Optional[str] = None
    architecture: Optional[str] = None
    container_count: Optional[int] = None
    image_count: Optional[int] = None
    endpoint: Optional[str] = None


@dataclass
class RunConfig:
    """Request to run one source file."""

    file_path: str
    workspace_path: str
    language: Optional[str] = None

    def __post_init__(self):
        if not self.file_path:
            raise ValueError("file_path is required")
        if not self.workspace_path:
            raise ValueError("workspace_path is required")


@dataclass
class ExecutionResult:
    """Outcome of a run. A non-zero exit is a normal result with success=False."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration: float = 0.0
    state: ExecutionState = ExecutionState.COMPLETED
    error: Optional[str] = None
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "state": self.state.value,
            "error": self.error,
            "timed_out": self.timed_out,
        }


@dataclass
class ShellConfig:
    image: Optional[str] = None
    workspace_path: Optional[str] = None
    language: Optional[str] = None
    command: Optional[list[str]] = None


@dataclass
class ShellMessage:
    type: MessageType
    data: str = ""
