import json
import unittest


class TestWebHelpers(unittest.TestCase):
    def test_http_status_mapping(self) -> None:
        from qube_console.ports.web.app import http_status_for

        self.assertEqual(http_status_for("session_not_found"), 404)
        self.assertEqual(http_status_for("process_dead"), 410)
        self.assertEqual(http_status_for("daemon_unavailable"), 503)
        self.assertEqual(http_status_for("command_timed_out"), 504)
        self.assertEqual(http_status_for("spawn_failed"), 502)
        self.assertEqual(http_status_for("something_else"), 400)

    def test_tagged_input_frame(self) -> None:
        from qube_console.ports.web.app import tagged_input_frame

        self.assertEqual(
            tagged_input_frame(json.dumps({"t": "i", "d": "ls", "id": "c1"})),
            {"t": "i", "d": "ls", "id": "c1"},
        )
        self.assertIsNone(tagged_input_frame("ls"))
        self.assertIsNone(tagged_input_frame(json.dumps({"t": "o", "d": "x"})))
        self.assertIsNone(tagged_input_frame(json.dumps({"t": "i", "d": ""})))

    def test_raw_frames(self) -> None:
        from qube_console.ports.web.app import raw_input_frame, raw_output_text

        self.assertEqual(raw_input_frame("\x03"), {"t": "i", "d": "\x03", "id": ""})
        self.assertEqual(raw_output_text({"t": "o", "d": "file_a\n", "cmd": None}), "file_a\n")
        self.assertEqual(raw_output_text({"t": "error", "code": "process_dead", "message": "gone"}), "Error: gone\n")
        self.assertIsNone(raw_output_text({"t": "hb"}))
        self.assertIsNone(raw_output_text({"t": "exit", "code": 0}))

    def test_app_routes(self) -> None:
        from qube_console.ports.web.app import create_app

        app = create_app()
        paths = {getattr(r, "path", "") for r in app.routes}
        for expected in (
            "/api/v1/ping",
            "/api/v1/sessions",
            "/api/v1/sessions/{container}",
            "/api/v1/sessions/{container}/send",
            "/api/v1/containers",
            "/eval/{container}/command",
        ):
            self.assertIn(expected, paths)


class TestConsoleLocation(unittest.TestCase):
    def test_location_round_trips_container(self) -> None:
        from qube_console.kernel.activation import container_from_location
        from qube_console.ports.tui.transport import LocalBridge, console_location

        self.assertEqual(console_location("web 1"), "console.html?name=web+1")
        bridge = LocalBridge()
        bridge.navigate("web 1")
        self.assertEqual(bridge.container, "web 1")
        self.assertEqual(container_from_location(bridge.location), "web 1")

    def test_stream_url(self) -> None:
        from qube_console.ports.tui.transport import StreamTransport

        t = StreamTransport(base_url="ws://127.0.0.1:8850/", on_output=lambda *_: None, on_closed=lambda _: None)
        self.assertEqual(t.url_for("web-1"), "ws://127.0.0.1:8850/eval/web-1/command?framing=tagged")
        raw = StreamTransport(
            base_url="ws://h:1", on_output=lambda *_: None, on_closed=lambda _: None, tagged=False, token="s"
        )
        self.assertEqual(raw.url_for("a/b"), "ws://h:1/eval/a%2Fb/command?token=s")

    def test_stream_dispatch_frames(self) -> None:
        from qube_console.ports.tui.transport import StreamTransport

        got = []
        t = StreamTransport(base_url="ws://h:1", on_output=lambda text, cid: got.append((text, cid)), on_closed=lambda _: None)
        t._dispatch(json.dumps({"t": "o", "d": "hi\n", "cmd": "c1"}))
        t._dispatch(json.dumps({"t": "hb"}))
        t._dispatch(json.dumps({"t": "error", "code": "process_dead", "message": "gone"}))
        t._dispatch(json.dumps({"t": "exit", "code": 3}))
        t._dispatch("not json")
        self.assertEqual(
            got,
            [("hi\n", "c1"), ("Error: gone\n", None), ("[process exited: 3]\n", None)],
        )


if __name__ == "__main__":
    unittest.main()
