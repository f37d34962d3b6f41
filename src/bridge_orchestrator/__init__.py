from __future__ import annotations

from .client import BridgeClient
from .container import ContainerInfo, ContainerRuntime, DockerCliRuntime, ExecResult
from .legacy import LegacyExecPath
from .lifecycle import LifecycleCoordinator, SetupReport
from .service import SandboxControlService

__all__ = [
    "BridgeClient",
    "ContainerInfo",
    "ContainerRuntime",
    "DockerCliRuntime",
    "ExecResult",
    "LegacyExecPath",
    "LifecycleCoordinator",
    "SandboxControlService",
    "SetupReport",
]
