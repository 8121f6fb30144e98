# runbox - Run code in throwaway containers
"""
runbox - Containerized execution engine.

Run source files and interactive shells in short-lived, resource-capped
Docker containers and stream their output back live.
"""

from runbox.config import Settings
from runbox.connection import EngineConnection
from runbox.containers import ContainerLifecycle
from runbox.context import AppContext
from runbox.images import ImageRegistry
from runbox.models import ExecutionResult, RunConfig, ShellConfig, ShellMessage
from runbox.runner import ExecutionEngine
from runbox.shell import InteractiveSession, SessionRegistry

__all__ = [
    "AppContext",
    "ContainerLifecycle",
    "EngineConnection",
    "ExecutionEngine",
    "ExecutionResult",
    "ImageRegistry",
    "InteractiveSession",
    "RunConfig",
    "SessionRegistry",
    "Settings",
    "ShellConfig",
    "ShellMessage",
]

__version__ = "0.1.0"
