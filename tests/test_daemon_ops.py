import json
import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path


FAKE_EVAL = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_eval.py")


def _service():
    from qube_console.daemon.server import ConsoleService
    from qube_console.kernel.settings import EvalSettings, Settings

    settings = Settings(
        eval=EvalSettings(
            command=[sys.executable, "-u", FAKE_EVAL, "{container}"],
            quiescence_ms=300,
            command_timeout_seconds=10,
        )
    )
    return ConsoleService(settings=settings)


def _req(op: str, **args):  # type: ignore[no-untyped-def]
    from qube_console.contracts.v1 import DaemonRequest

    return DaemonRequest(op=op, args=args)


def _wait_ready(session, timeout: float = 10.0) -> None:
    seen = threading.Event()
    buf = []

    def _on(chunk):  # type: ignore[no-untyped-def]
        if chunk is None:
            return
        buf.append(chunk.text())
        if "ready" in "".join(buf):
            seen.set()

    token = session.add_listener(_on)
    try:
        session.write(b"echo ready\n")
        if not seen.wait(timeout):
            raise AssertionError("fake eval did not start")
    finally:
        session.remove_listener(token)
    time.sleep(0.1)


class TestHandleRequest(unittest.TestCase):
    def test_ping(self) -> None:
        from qube_console.daemon.server import handle_request

        svc = _service()
        try:
            resp, should_exit = handle_request(_req("ping"), svc)
            self.assertTrue(resp.ok)
            self.assertFalse(should_exit)
            self.assertEqual(resp.result["pid"], os.getpid())
        finally:
            svc.close()

    def test_session_lifecycle(self) -> None:
        from qube_console.daemon.server import handle_request

        svc = _service()
        try:
            resp, _ = handle_request(_req("session_start", container_id="web-1"), svc)
            self.assertTrue(resp.ok, resp.error)
            self.assertEqual(resp.result["container_id"], "web-1")
            pid = resp.result["session"]["pid"]
            self.assertGreater(pid, 0)

            # Starting again reuses the live process.
            resp, _ = handle_request(_req("session_start", container_id="web-1"), svc)
            self.assertEqual(resp.result["session"]["pid"], pid)

            _wait_ready(svc.registry.get("web-1"))

            # The target may come from a console location instead of container_id.
            resp, _ = handle_request(_req("session_send", location="console.html?name=web-1", text="ls"), svc)
            self.assertTrue(resp.ok, resp.error)
            self.assertEqual(resp.result["output"], "file_a\nfile_b")
            self.assertEqual(resp.result["captured"]["container_id"], "web-1")

            resp, _ = handle_request(_req("session_list"), svc)
            self.assertEqual([s["container_id"] for s in resp.result["sessions"]], ["web-1"])

            resp, _ = handle_request(_req("session_stop", container_id="web-1"), svc)
            self.assertTrue(resp.ok)
            resp, _ = handle_request(_req("session_list"), svc)
            self.assertEqual(resp.result["sessions"], [])
        finally:
            svc.close()

    def test_errors(self) -> None:
        from qube_console.daemon.server import handle_request

        svc = _service()
        try:
            resp, _ = handle_request(_req("session_send", text="ls"), svc)
            self.assertFalse(resp.ok)
            self.assertEqual(resp.error.code, "missing_container_id")

            resp, _ = handle_request(_req("session_send", container_id="nope", text="ls"), svc)
            self.assertEqual(resp.error.code, "session_not_found")
            self.assertEqual(resp.error.details.get("container_id"), "nope")

            resp, _ = handle_request(_req("session_stop", container_id="nope"), svc)
            self.assertEqual(resp.error.code, "session_not_found")

            resp, _ = handle_request(_req("frobnicate"), svc)
            self.assertEqual(resp.error.code, "unknown_op")
        finally:
            svc.close()

    def test_spawn_failure_is_reported(self) -> None:
        from qube_console.daemon.server import ConsoleService, handle_request
        from qube_console.kernel.settings import EvalSettings, Settings

        svc = ConsoleService(settings=Settings(eval=EvalSettings(command=["/nonexistent/qube-eval", "{container}"])))
        try:
            resp, _ = handle_request(_req("session_start", container_id="web-1"), svc)
            self.assertFalse(resp.ok)
            self.assertEqual(resp.error.code, "spawn_failed")
        finally:
            svc.close()

    def test_shutdown_disposes_sessions(self) -> None:
        from qube_console.daemon.server import handle_request

        svc = _service()
        resp, _ = handle_request(_req("session_start", container_id="web-1"), svc)
        session = svc.registry.get("web-1")
        resp, should_exit = handle_request(_req("shutdown"), svc)
        self.assertTrue(resp.ok)
        self.assertTrue(should_exit)
        self.assertTrue(session.wait_exit(5))
        self.assertEqual(svc.registry.list(), [])


class TestDaemonSocket(unittest.TestCase):
    def test_serve_call_attach_and_shutdown(self) -> None:
        from qube_console.daemon.server import DaemonPaths, call_daemon, open_attach, serve_forever

        with tempfile.TemporaryDirectory() as td:
            paths = DaemonPaths(home=Path(td))
            svc = _service()
            stop = threading.Event()
            t = threading.Thread(target=serve_forever, args=(paths,), kwargs={"service": svc, "stop_event": stop}, daemon=True)
            t.start()
            try:
                deadline = time.time() + 5
                while not paths.pid_path.exists() and time.time() < deadline:
                    time.sleep(0.05)

                resp = call_daemon({"op": "ping"}, paths=paths, timeout_s=5)
                self.assertTrue(resp["ok"], resp)

                resp = call_daemon({"op": "session_start", "args": {"container_id": "web-1"}}, paths=paths, timeout_s=5)
                self.assertTrue(resp["ok"], resp)

                sock, result = open_attach("web-1", paths=paths, timeout_s=5)
                try:
                    self.assertEqual(result["container_id"], "web-1")
                    sock.settimeout(10)
                    sock.sendall((json.dumps({"t": "i", "d": "echo streamed", "id": "c1"}) + "\n").encode("utf-8"))
                    buf = b""
                    frames = []
                    while not any(f.get("t") == "o" and "streamed" in f.get("d", "") for f in frames):
                        chunk = sock.recv(4096)
                        if not chunk:
                            break
                        buf += chunk
                        while b"\n" in buf:
                            line, buf = buf.split(b"\n", 1)
                            frames.append(json.loads(line))
                    out = [f for f in frames if f.get("t") == "o"]
                    self.assertTrue(out)
                    self.assertEqual(out[-1]["cmd"], "c1")
                finally:
                    sock.close()

                resp = call_daemon({"op": "eval_attach", "args": {"container_id": "missing"}}, paths=paths, timeout_s=5)
                self.assertFalse(resp["ok"])
                self.assertEqual(resp["error"]["code"], "session_not_found")

                resp = call_daemon({"op": "shutdown"}, paths=paths, timeout_s=5)
                self.assertTrue(resp["ok"])
                t.join(10)
                self.assertFalse(t.is_alive())
                self.assertFalse(paths.sock_path.exists())
                self.assertFalse(paths.pid_path.exists())
            finally:
                stop.set()
                svc.close()

    def test_call_without_daemon_is_unavailable(self) -> None:
        from qube_console.daemon.server import DaemonPaths, call_daemon

        with tempfile.TemporaryDirectory() as td:
            resp = call_daemon({"op": "ping"}, paths=DaemonPaths(home=Path(td)), timeout_s=1)
            self.assertFalse(resp["ok"])
            self.assertEqual(resp["error"]["code"], "daemon_unavailable")

    def test_raise_for_response_maps_codes(self) -> None:
        from qube_console.daemon.server import raise_for_response
        from qube_console.errors import ProcessDead

        self.assertEqual(raise_for_response({"ok": True, "result": {"a": 1}}), {"a": 1})
        with self.assertRaises(ProcessDead) as cm:
            raise_for_response(
                {"ok": False, "error": {"code": "process_dead", "message": "gone", "details": {"container_id": "w"}}}
            )
        self.assertEqual(cm.exception.container_id, "w")


if __name__ == "__main__":
    unittest.main()
