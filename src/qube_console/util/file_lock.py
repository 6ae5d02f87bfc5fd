from __future__ import annotations

import os
from pathlib import Path
from typing import IO


class LockUnavailableError(RuntimeError):
    """Raised when a non-blocking lock is already held by another process."""


def _ensure_lock_region(f: IO[bytes]) -> None:
    # Region locks on Windows need at least one byte in the file.
    try:
        f.seek(0, os.SEEK_END)
        if f.tell() <= 0:
            f.write(b"\0")
            f.flush()
        f.seek(0)
    except Exception:
        pass


def _lock(fd: int, *, blocking: bool) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
        return

    import fcntl  # POSIX only

    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    fcntl.flock(fd, flags)


def _unlock(fd: int) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        return

    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_UN)


def acquire_lockfile(path: Path, *, blocking: bool = True) -> IO[bytes]:
    """Open + lock `path`. The lock is held for as long as the returned handle stays open."""
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    _ensure_lock_region(f)
    try:
        _lock(f.fileno(), blocking=blocking)
    except OSError as e:
        try:
            f.close()
        except Exception:
            pass
        if not blocking:
            raise LockUnavailableError(str(e)) from e
        raise
    except Exception:
        try:
            f.close()
        except Exception:
            pass
        raise
    return f


def write_lock_owner(f: IO[bytes], pid: int) -> None:
    """Record the owning pid past the lock byte (diagnostics only)."""
    try:
        f.seek(1)
        f.truncate()
        f.write(f"{int(pid)}\n".encode("ascii"))
        f.flush()
    except Exception:
        pass


def release_lockfile(f: IO[bytes]) -> None:
    try:
        _unlock(f.fileno())
    except Exception:
        pass
    try:
        f.close()
    except Exception:
        pass
