import json
import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path


FAKE_EVAL = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_eval.py")


class TestEvalWebsocket(unittest.TestCase):
    def setUp(self) -> None:
        from qube_console.daemon.server import ConsoleService, DaemonPaths, serve_forever
        from qube_console.kernel.settings import EvalSettings, Settings

        self._old_env = {k: os.environ.get(k) for k in ("QUBE_CONSOLE_HOME", "QUBE_CONSOLE_WEB_TOKEN")}
        os.environ.pop("QUBE_CONSOLE_WEB_TOKEN", None)
        self._td = tempfile.TemporaryDirectory()
        home = Path(self._td.name).resolve()
        os.environ["QUBE_CONSOLE_HOME"] = str(home)

        self.paths = DaemonPaths(home=home)
        self.service = ConsoleService(
            settings=Settings(eval=EvalSettings(command=[sys.executable, "-u", FAKE_EVAL, "{container}"]))
        )
        self.stop = threading.Event()
        self.thread = threading.Thread(
            target=serve_forever,
            args=(self.paths,),
            kwargs={"service": self.service, "stop_event": self.stop},
            daemon=True,
        )
        self.thread.start()
        deadline = time.time() + 5
        while not self.paths.pid_path.exists() and time.time() < deadline:
            time.sleep(0.05)

    def tearDown(self) -> None:
        from qube_console.daemon.server import call_daemon

        call_daemon({"op": "shutdown"}, paths=self.paths, timeout_s=5)
        self.stop.set()
        self.thread.join(10)
        self.service.close()
        for k, v in self._old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        self._td.cleanup()

    def test_raw_framing_relays_plain_text(self) -> None:
        from fastapi.testclient import TestClient

        from qube_console.ports.web.app import create_app

        with TestClient(create_app()) as client:
            with client.websocket_connect("/eval/web-raw/command") as ws:
                ws.send_text("echo raw-hello")
                buf = ""
                while "raw-hello\n" not in buf:
                    buf += ws.receive_text()
                self.assertEqual(buf, "raw-hello\n")

        # The websocket started the session on demand.
        self.assertTrue(self.service.registry.get("web-raw").is_alive())

    def test_tagged_framing_carries_command_ids_and_exit(self) -> None:
        from fastapi.testclient import TestClient

        from qube_console.ports.web.app import create_app

        with TestClient(create_app()) as client:
            with client.websocket_connect("/eval/web-tagged/command?framing=tagged") as ws:
                ws.send_text(json.dumps({"t": "i", "d": "echo tagged-hello", "id": "c7"}))
                while True:
                    frame = ws.receive_json()
                    if frame.get("t") == "o" and "tagged-hello" in frame.get("d", ""):
                        break
                self.assertEqual(frame["cmd"], "c7")
                self.assertEqual(frame["s"], "stdout")

                # Non-input frames are ignored.
                ws.send_text(json.dumps({"t": "o", "d": "echo ignored"}))
                ws.send_text(json.dumps({"t": "i", "d": "err oops", "id": "c8"}))
                while True:
                    frame = ws.receive_json()
                    if frame.get("t") == "o" and "oops" in frame.get("d", ""):
                        break
                self.assertEqual(frame["cmd"], "c8")
                self.assertEqual(frame["s"], "stderr")

                ws.send_text(json.dumps({"t": "i", "d": "exit 0", "id": "c9"}))
                while True:
                    frame = ws.receive_json()
                    if frame.get("t") == "exit":
                        break
                self.assertEqual(frame["code"], 0)


if __name__ == "__main__":
    unittest.main()
