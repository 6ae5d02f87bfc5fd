import json
import socket
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


class _EngineHandler(BaseHTTPRequestHandler):
    calls = []

    def log_message(self, format, *args):  # type: ignore[no-untyped-def]
        return

    def _reply(self, status: int, body: str, content_type: str = "application/json") -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self) -> None:  # noqa: N802
        self.calls.append(("GET", self.path))
        if self.path == "/list":
            self._reply(
                200,
                json.dumps(
                    [
                        {"name": "web-1", "pid": 4242, "image": "alpine", "ports": "8080:80", "memory_mb": 12.5},
                        {"name": "db", "pid": 0, "image": "postgres", "extra_field": True},
                    ]
                ),
            )
        elif self.path == "/images":
            self._reply(200, json.dumps({"images": [{"name": "alpine"}]}))
        elif self.path == "/volumes":
            self._reply(200, json.dumps(["data"]))
        else:
            self._reply(404, "not found", "text/plain")

    def do_POST(self) -> None:  # noqa: N802
        self.calls.append(("POST", self.path))
        if self.path.startswith("/start/"):
            self._reply(200, "started", "text/plain")
        elif self.path.startswith("/stop/"):
            self._reply(200, json.dumps({"stopped": True}))
        else:
            self._reply(500, "boom", "text/plain")


class TestEngineClient(unittest.TestCase):
    def setUp(self) -> None:
        _EngineHandler.calls = []
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _EngineHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address[:2]
        self.base = f"http://{host}:{port}"

    def tearDown(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(5)

    def test_list_containers(self) -> None:
        from qube_console.kernel.engine import EngineClient

        items = EngineClient(api_base=self.base + "/").list_containers()
        self.assertEqual([c.name for c in items], ["web-1", "db"])
        self.assertTrue(items[0].running)
        self.assertEqual(items[0].memory_mb, 12.5)
        self.assertFalse(items[1].running)

    def test_start_stop_and_listings(self) -> None:
        from qube_console.kernel.engine import EngineClient

        client = EngineClient(api_base=self.base)
        self.assertEqual(client.start("web 1"), {"message": "started"})
        self.assertEqual(client.stop("web-1"), {"stopped": True})
        self.assertEqual(client.images().items, [{"name": "alpine"}])
        self.assertEqual(client.volumes().items, ["data"])
        self.assertIn(("POST", "/start/web%201"), _EngineHandler.calls)

    def test_http_error_is_engine_error(self) -> None:
        from qube_console.kernel.engine import EngineClient, EngineError

        with self.assertRaises(EngineError) as cm:
            EngineClient(api_base=self.base)._request("GET", "/missing")
        self.assertEqual(cm.exception.code, "engine_unavailable")
        self.assertEqual(cm.exception.details.get("status"), 404)

    def test_unreachable_engine(self) -> None:
        from qube_console.kernel.engine import EngineClient, EngineError

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        with self.assertRaises(EngineError):
            EngineClient(api_base=f"http://127.0.0.1:{port}", timeout_s=1).list_containers()


if __name__ == "__main__":
    unittest.main()
