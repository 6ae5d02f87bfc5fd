import io
import unittest
from contextlib import redirect_stdout


class TestCli(unittest.TestCase):
    def test_parser_commands(self) -> None:
        from qube_console.cli import build_parser, cmd_console, cmd_session_send

        p = build_parser()
        args = p.parse_args(["session", "send", "web-1", "ls", "-la"])
        self.assertIs(args.func, cmd_session_send)
        self.assertEqual(args.text, ["ls", "-la"])

        args = p.parse_args(["console", "--stream", "--raw"])
        self.assertIs(args.func, cmd_console)
        self.assertEqual(args.container, "")
        self.assertTrue(args.stream)
        self.assertTrue(args.raw)

    def test_version(self) -> None:
        from qube_console import __version__
        from qube_console.cli import main

        buf = io.StringIO()
        with redirect_stdout(buf):
            rc = main(["version"])
        self.assertEqual(rc, 0)
        self.assertEqual(buf.getvalue().strip(), __version__)

    def test_open_rejects_malformed_url(self) -> None:
        import json

        from qube_console.cli import main

        buf = io.StringIO()
        with redirect_stdout(buf):
            rc = main(["open", "http://example.com/x"])
        self.assertEqual(rc, 2)
        self.assertEqual(json.loads(buf.getvalue())["error"]["code"], "parse_error")


if __name__ == "__main__":
    unittest.main()
