from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class ActivationEvent(BaseModel):
    """Navigation intent parsed from `<scheme>://<action>/<param>?<query>`."""

    action: str
    param: str = ""
    query: Dict[str, str] = Field(default_factory=dict)
    url: str = ""

    model_config = ConfigDict(extra="forbid", frozen=True)
