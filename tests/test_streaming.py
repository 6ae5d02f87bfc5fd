import json
import os
import socket
import sys
import threading
import time
import unittest


FAKE_EVAL = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_eval.py")


def _registry():
    from qube_console.runners.eval import SessionRegistry
    from qube_console.runners.launcher import Launcher

    return SessionRegistry(launcher=Launcher(command=[sys.executable, "-u", FAKE_EVAL, "{container}"]))


class _FrameReader:
    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.buf = b""

    def next(self, timeout: float = 5.0) -> dict:
        deadline = time.time() + timeout
        while b"\n" not in self.buf:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise AssertionError("timed out waiting for a frame")
            self.sock.settimeout(remaining)
            chunk = self.sock.recv(65536)
            if not chunk:
                raise AssertionError("stream closed")
            self.buf += chunk
        line, self.buf = self.buf.split(b"\n", 1)
        return json.loads(line.decode("utf-8"))

    def until(self, pred, timeout: float = 5.0) -> list:
        frames = []
        deadline = time.time() + timeout
        while True:
            frame = self.next(timeout=max(0.01, deadline - time.time()))
            frames.append(frame)
            if pred(frame):
                return frames


def _send(sock: socket.socket, obj: dict) -> None:
    sock.sendall((json.dumps(obj) + "\n").encode("utf-8"))


class TestStreamingRelay(unittest.TestCase):
    def test_frames_are_tagged_with_the_in_flight_command(self) -> None:
        from qube_console.daemon.streaming import stream_session_to_socket

        reg = _registry()
        server, client = socket.socketpair()
        try:
            session = reg.get_or_create("web-1")
            t = threading.Thread(
                target=stream_session_to_socket,
                kwargs={"sock": server, "session": session, "heartbeat_seconds": 1},
                daemon=True,
            )
            t.start()
            reader = _FrameReader(client)

            _send(client, {"t": "i", "d": "echo hi", "id": "c1"})
            frames = reader.until(lambda f: f.get("t") == "o" and "hi" in f.get("d", ""), timeout=10)
            out = [f for f in frames if f.get("t") == "o"]
            self.assertTrue(out)
            self.assertEqual(out[-1]["cmd"], "c1")
            self.assertEqual(out[-1]["s"], "stdout")

            _send(client, {"t": "i", "d": "err oops", "id": "c2"})
            frames = reader.until(lambda f: f.get("t") == "o" and "oops" in f.get("d", ""))
            self.assertEqual(frames[-1]["s"], "stderr")
            self.assertEqual(frames[-1]["cmd"], "c2")

            _send(client, {"t": "i", "d": "exit 3", "id": "c3"})
            frames = reader.until(lambda f: f.get("t") == "exit")
            self.assertEqual(frames[-1]["code"], 3)
            t.join(timeout=5)
            self.assertFalse(t.is_alive())
        finally:
            client.close()
            reg.dispose_all()

    def test_idle_stream_sends_heartbeats(self) -> None:
        from qube_console.daemon.streaming import stream_session_to_socket

        reg = _registry()
        server, client = socket.socketpair()
        try:
            session = reg.get_or_create("web-1")
            threading.Thread(
                target=stream_session_to_socket,
                kwargs={"sock": server, "session": session, "heartbeat_seconds": 1},
                daemon=True,
            ).start()
            frames = _FrameReader(client).until(lambda f: f.get("t") == "heartbeat", timeout=5)
            self.assertEqual(frames[-1]["t"], "heartbeat")
        finally:
            client.close()
            reg.dispose_all()

    def test_replay_sends_backlog_first(self) -> None:
        from qube_console.daemon.correlator import CommandCorrelator
        from qube_console.daemon.streaming import stream_session_to_socket

        reg = _registry()
        server, client = socket.socketpair()
        try:
            session = reg.get_or_create("web-1")
            out = CommandCorrelator(quiescence_ms=1500).send(session, "echo earlier")
            self.assertIn("earlier", out.text)

            threading.Thread(
                target=stream_session_to_socket,
                kwargs={"sock": server, "session": session, "replay": True},
                daemon=True,
            ).start()
            frame = _FrameReader(client).next()
            self.assertEqual(frame["t"], "o")
            self.assertIn("earlier", frame["d"])
            self.assertIsNone(frame["cmd"])
        finally:
            client.close()
            reg.dispose_all()

    def test_dead_session_ends_stream_with_exit_frame(self) -> None:
        from qube_console.daemon.streaming import stream_session_to_socket

        reg = _registry()
        server, client = socket.socketpair()
        try:
            session = reg.get_or_create("web-1")
            threading.Thread(
                target=stream_session_to_socket,
                kwargs={"sock": server, "session": session},
                daemon=True,
            ).start()
            reader = _FrameReader(client)
            session.mark_dead("test")
            frames = reader.until(lambda f: f.get("t") == "exit", timeout=5)
            self.assertEqual(frames[-1]["t"], "exit")
        finally:
            client.close()
            reg.dispose_all()

    def test_replay_does_not_repeat_backlog_output(self) -> None:
        from qube_console.daemon.correlator import CommandCorrelator
        from qube_console.daemon.streaming import stream_session_to_socket

        reg = _registry()
        server, client = socket.socketpair()
        try:
            session = reg.get_or_create("web-1")
            CommandCorrelator(quiescence_ms=1500).send(session, "echo one")

            threading.Thread(
                target=stream_session_to_socket,
                kwargs={"sock": server, "session": session, "replay": True},
                daemon=True,
            ).start()
            reader = _FrameReader(client)
            frames = [reader.next()]
            _send(client, {"t": "i", "d": "echo two", "id": "c2"})
            frames += reader.until(lambda f: f.get("t") == "o" and "two" in f.get("d", ""))
            text = "".join(f["d"] for f in frames if f.get("t") == "o")
            self.assertEqual(text, "one\ntwo\n")
        finally:
            client.close()
            reg.dispose_all()

    def test_control_bytes_bypass_a_held_command_slot(self) -> None:
        from qube_console.daemon.streaming import _Relay

        reg = _registry()
        server, client = socket.socketpair()
        held = threading.Event()
        release = threading.Event()
        holder = None
        try:
            session = reg.get_or_create("web-1")
            seen = threading.Event()
            buf = []

            def _on(chunk):  # type: ignore[no-untyped-def]
                if chunk is None:
                    return
                buf.append(chunk.text())
                if "interrupted" in "".join(buf):
                    seen.set()

            session.add_listener(_on)

            def _hold() -> None:
                with session.command_slot(None):
                    held.set()
                    release.wait(10)

            holder = threading.Thread(target=_hold, daemon=True)
            holder.start()
            self.assertTrue(held.wait(5))

            relay = _Relay(server, session, command_timeout_s=5)
            writer = threading.Thread(target=relay.write_input, args=("\x03", ""), daemon=True)
            writer.start()
            writer.join(2)
            self.assertFalse(writer.is_alive())

            # The stand-in reads whole lines; terminate the one holding the interrupt.
            session.write(b"\n")
            self.assertTrue(seen.wait(5))
            self.assertIsNone(session.in_flight)
        finally:
            release.set()
            if holder is not None:
                holder.join(5)
            server.close()
            client.close()
            reg.dispose_all()

    def test_command_input_waits_for_the_command_slot(self) -> None:
        from qube_console.daemon.streaming import _Relay

        reg = _registry()
        server, client = socket.socketpair()
        held = threading.Event()
        release = threading.Event()
        holder = None
        try:
            session = reg.get_or_create("web-1")
            seen = threading.Event()
            buf = []

            def _on(chunk):  # type: ignore[no-untyped-def]
                if chunk is None:
                    return
                buf.append(chunk.text())
                if "queued" in "".join(buf):
                    seen.set()

            session.add_listener(_on)

            def _hold() -> None:
                with session.command_slot(None):
                    held.set()
                    release.wait(10)

            holder = threading.Thread(target=_hold, daemon=True)
            holder.start()
            self.assertTrue(held.wait(5))

            relay = _Relay(server, session, command_timeout_s=5)
            writer = threading.Thread(target=relay.write_input, args=("echo queued", "c9"), daemon=True)
            writer.start()
            writer.join(0.3)
            self.assertTrue(writer.is_alive())
            self.assertFalse(seen.is_set())

            release.set()
            writer.join(5)
            self.assertFalse(writer.is_alive())
            self.assertTrue(seen.wait(5))
            self.assertEqual(session.in_flight, "c9")
        finally:
            release.set()
            if holder is not None:
                holder.join(5)
            server.close()
            client.close()
            reg.dispose_all()

    def test_input_helpers(self) -> None:
        from qube_console.daemon.streaming import is_control_input, normalize_command_input

        self.assertTrue(is_control_input("\x03"))
        self.assertTrue(is_control_input("\x18"))
        self.assertFalse(is_control_input("ls"))
        self.assertEqual(normalize_command_input("ls"), "ls\n")
        self.assertEqual(normalize_command_input("ls\n"), "ls\n")
        self.assertEqual(normalize_command_input("ls\r\n"), "ls\n")


if __name__ == "__main__":
    unittest.main()
