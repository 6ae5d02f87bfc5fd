"""Global settings for qube-console.

Settings live in ~/.qube-console/settings.yaml:
- eval: how evaluation processes are launched and how output is correlated
- engine: where the container engine's REST API lives
- activation: deep-link scheme
- web: bind address of the web port
Missing keys fall back to the defaults below.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.conv import coerce_int
from ..util.fs import atomic_write_text


DEFAULT_EVAL_COMMAND: List[str] = ["qube", "eval", "{container}"]
DEFAULT_QUIESCENCE_MS = 150
DEFAULT_COMMAND_TIMEOUT_SECONDS = 10
DEFAULT_MARKER_COMMAND = "echo {marker}"
DEFAULT_ENGINE_API = "http://127.0.0.1:3030"


@dataclass
class EvalSettings:
    command: List[str] = field(default_factory=lambda: list(DEFAULT_EVAL_COMMAND))
    quiescence_ms: int = DEFAULT_QUIESCENCE_MS
    command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS
    # Non-empty enables completion-marker framing for cooperative processes.
    completion_marker: str = ""
    marker_command: str = DEFAULT_MARKER_COMMAND
    max_backlog_bytes: int = 1_000_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": list(self.command),
            "quiescence_ms": self.quiescence_ms,
            "command_timeout_seconds": self.command_timeout_seconds,
            "completion_marker": self.completion_marker,
            "marker_command": self.marker_command,
            "max_backlog_bytes": self.max_backlog_bytes,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EvalSettings":
        raw_cmd = d.get("command")
        if isinstance(raw_cmd, str):
            cmd = raw_cmd.split()
        elif isinstance(raw_cmd, list):
            cmd = [str(x) for x in raw_cmd if str(x).strip()]
        else:
            cmd = []
        return cls(
            command=cmd or list(DEFAULT_EVAL_COMMAND),
            quiescence_ms=coerce_int(d.get("quiescence_ms"), default=DEFAULT_QUIESCENCE_MS, min_value=1, max_value=60_000),
            command_timeout_seconds=coerce_int(
                d.get("command_timeout_seconds"), default=DEFAULT_COMMAND_TIMEOUT_SECONDS, min_value=1, max_value=3600
            ),
            completion_marker=str(d.get("completion_marker") or "").strip(),
            marker_command=str(d.get("marker_command") or DEFAULT_MARKER_COMMAND),
            max_backlog_bytes=coerce_int(d.get("max_backlog_bytes"), default=1_000_000, min_value=0, max_value=64_000_000),
        )


@dataclass
class EngineSettings:
    api_base: str = DEFAULT_ENGINE_API

    def to_dict(self) -> Dict[str, Any]:
        return {"api_base": self.api_base}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EngineSettings":
        return cls(api_base=str(d.get("api_base") or DEFAULT_ENGINE_API).rstrip("/"))


@dataclass
class ActivationSettings:
    scheme: str = "qube"

    def to_dict(self) -> Dict[str, Any]:
        return {"scheme": self.scheme}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActivationSettings":
        return cls(scheme=str(d.get("scheme") or "qube").strip().lower() or "qube")


@dataclass
class WebSettings:
    host: str = "127.0.0.1"
    port: int = 8850

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WebSettings":
        return cls(
            host=str(d.get("host") or "127.0.0.1"),
            port=coerce_int(d.get("port"), default=8850, min_value=1, max_value=65535),
        )


@dataclass
class Settings:
    eval: EvalSettings = field(default_factory=EvalSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    activation: ActivationSettings = field(default_factory=ActivationSettings)
    web: WebSettings = field(default_factory=WebSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eval": self.eval.to_dict(),
            "engine": self.engine.to_dict(),
            "activation": self.activation.to_dict(),
            "web": self.web.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Settings":
        def _section(key: str) -> Dict[str, Any]:
            v = d.get(key)
            return v if isinstance(v, dict) else {}

        return cls(
            eval=EvalSettings.from_dict(_section("eval")),
            engine=EngineSettings.from_dict(_section("engine")),
            activation=ActivationSettings.from_dict(_section("activation")),
            web=WebSettings.from_dict(_section("web")),
        )


def settings_path(home: Optional[Path] = None) -> Path:
    return (home or ensure_home()) / "settings.yaml"


def load_settings(home: Optional[Path] = None) -> Settings:
    """Load settings.yaml; a missing or unreadable file yields defaults."""
    path = settings_path(home)
    doc: Dict[str, Any] = {}
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                doc = loaded
        except Exception:
            doc = {}
    settings = Settings.from_dict(doc)

    api = str(os.environ.get("QUBE_ENGINE_API") or "").strip()
    if api:
        settings.engine.api_base = api.rstrip("/")
    return settings


def save_settings(settings: Settings, home: Optional[Path] = None) -> Path:
    path = settings_path(home)
    atomic_write_text(path, yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))
    return path
