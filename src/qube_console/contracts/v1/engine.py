from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContainerInfo(BaseModel):
    """One entry of the engine's `GET /list` response."""

    name: str
    pid: int = 0
    image: str = ""
    directory: str = ""
    ports: str = ""
    isolated: bool = False
    command: List[str] = Field(default_factory=list)
    timestamp: int = 0
    memory_mb: Optional[float] = None
    cpu_percent: Optional[float] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def running(self) -> bool:
        return self.pid > 0


class ContainerList(BaseModel):
    containers: List[ContainerInfo] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class EngineListing(BaseModel):
    """Loosely-typed listing (`/images`, `/volumes`) passed through as-is."""

    items: List[Any] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
