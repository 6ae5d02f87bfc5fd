from __future__ import annotations

from .activation import ActivationEvent
from .engine import ContainerInfo, ContainerList, EngineListing
from .ipc import DaemonError, DaemonRequest, DaemonResponse
from .session import CapturedOutput, CommandRecord, CompletedBy, OutputStream, SessionInfo

__all__ = [
    "ActivationEvent",
    "CapturedOutput",
    "CommandRecord",
    "CompletedBy",
    "ContainerInfo",
    "ContainerList",
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "EngineListing",
    "OutputStream",
    "SessionInfo",
]
