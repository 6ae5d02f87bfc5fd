from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import SpawnError


logger = logging.getLogger("qube_console.launcher")


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


def render_command(template: Iterable[str], container_id: str) -> List[str]:
    """Substitute `{container}` in every argv element of `template`."""
    out: List[str] = []
    for part in template:
        s = str(part)
        if not s.strip():
            continue
        out.append(s.replace("{container}", container_id))
    return out


class ProcessHandle:
    """Owned handle over a spawned evaluation process and its three pipes.

    `close()` (or leaving the `with` block) closes every descriptor, stops the
    process group and reaps the child. It is safe to call more than once.
    """

    def __init__(self, proc: subprocess.Popen, *, container_id: str, argv: List[str]) -> None:
        self._proc = proc
        self.container_id = container_id
        self.argv = list(argv)
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def stdin_fd(self) -> int:
        assert self._proc.stdin is not None
        return self._proc.stdin.fileno()

    @property
    def stdout_fd(self) -> int:
        assert self._proc.stdout is not None
        return self._proc.stdout.fileno()

    @property
    def stderr_fd(self) -> int:
        assert self._proc.stderr is not None
        return self._proc.stderr.fileno()

    @property
    def closed(self) -> bool:
        return self._closed

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def is_running(self) -> bool:
        return self._proc.poll() is None

    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def close_stdin(self) -> None:
        stream = self._proc.stdin
        if stream is None:
            return
        try:
            stream.close()
        except Exception:
            pass

    def terminate(self, *, grace_seconds: float = 1.0) -> None:
        if self._proc.poll() is not None:
            return
        _best_effort_killpg(self.pid, signal.SIGTERM)
        deadline = time.monotonic() + max(0.0, grace_seconds)
        while time.monotonic() < deadline:
            if self._proc.poll() is not None:
                return
            time.sleep(0.02)
        if self._proc.poll() is None:
            _best_effort_killpg(self.pid, signal.SIGKILL)

    def close(self, *, grace_seconds: float = 1.0) -> Optional[int]:
        with self._close_lock:
            if self._closed:
                return self._proc.returncode
            self._closed = True
        self.close_stdin()
        self.terminate(grace_seconds=grace_seconds)
        code = self.wait(timeout=5.0)
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except Exception:
                pass
        logger.info(
            "eval process closed",
            extra={"container_id": self.container_id, "pid": self.pid},
        )
        return code

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Launcher:
    """Spawns `qube eval <container>` (or whatever `command` says)."""

    def __init__(
        self,
        *,
        command: Iterable[str],
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.command = [str(x) for x in command]
        self.cwd = cwd
        self.env = dict(env or {})

    def launch(self, container_id: str) -> ProcessHandle:
        cid = str(container_id or "").strip()
        if not cid:
            raise SpawnError("missing container id")
        argv = render_command(self.command, cid)
        if not argv:
            raise SpawnError("empty eval command", container_id=cid)

        proc_env = os.environ.copy()
        proc_env.update({k: v for k, v in self.env.items() if isinstance(k, str) and isinstance(v, str)})
        # The engine drives an interactive shell; keep it from emitting colour/cursor codes.
        if "TERM" not in self.env:
            proc_env["TERM"] = "dumb"

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=proc_env,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("eval spawn failed: %s", e, extra={"container_id": cid})
            raise SpawnError(f"{argv[0]}: {e.strerror or e}", container_id=cid, details={"argv": argv}) from e

        logger.info("eval process started", extra={"container_id": cid, "pid": proc.pid})
        return ProcessHandle(proc, container_id=cid, argv=argv)
