"""Environment-driven settings."""

import os
from dataclasses import dataclass

from runbox.models import WORKSPACE_MOUNT, ResourceLimits


@dataclass
class Settings:
    run_timeout: float = 30.0
    memory_limit: int = 256 * 1024 * 1024
    cpu_quota: int = 50000
    cpu_period: int = 100000
    workspace_mount: str = WORKSPACE_MOUNT
    shell_stop_grace: int = 1
    drain_timeout: float = 2.0
    grpc_port: int = 50051
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            run_timeout=float(os.getenv("RUNBOX_RUN_TIMEOUT", "30")),
            memory_limit=int(os.getenv("RUNBOX_MEMORY_LIMIT", str(256 * 1024 * 1024))),
            cpu_quota=int(os.getenv("RUNBOX_CPU_QUOTA", "50000")),
            cpu_period=int(os.getenv("RUNBOX_CPU_PERIOD", "100000")),
            workspace_mount=os.getenv("RUNBOX_WORKSPACE_MOUNT", WORKSPACE_MOUNT),
            shell_stop_grace=int(os.getenv("RUNBOX_SHELL_STOP_GRACE", "1")),
            drain_timeout=float(os.getenv("RUNBOX_DRAIN_TIMEOUT", "2")),
            grpc_port=int(os.getenv("GRPC_PORT", "50051")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def limits(self) -> ResourceLimits:
        # Swap equal to memory means no swap at all
        return ResourceLimits(
            memory=self.memory_limit,
            memory_swap=self.memory_limit,
            cpu_quota=self.cpu_quota,
            cpu_period=self.cpu_period,
        )
