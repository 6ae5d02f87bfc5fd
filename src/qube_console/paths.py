from __future__ import annotations

import os
from pathlib import Path


def console_home() -> Path:
    env = os.environ.get("QUBE_CONSOLE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".qube-console").resolve()


def ensure_home() -> Path:
    home = console_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
