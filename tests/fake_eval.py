"""Stand-in for `qube eval <container>` used by the tests.

Reads one command per line from stdin:
  ls                -> two file names
  echo <text>       -> <text>
  err <text>        -> <text> on stderr
  sleep <seconds>   -> "slept" after the delay
  close-stdin       -> stops reading (stdin closed), stays alive
  exit [code]       -> exits (default 3)
  a line holding Ctrl-C -> "interrupted"
With --echo every command is first echoed back, like a tty shell.
"""
import os
import sys
import time


def main() -> int:
    echo = "--echo" in sys.argv[1:]
    while True:
        line = sys.stdin.readline()
        if not line:
            return 0
        cmd = line.rstrip("\n")
        if echo:
            sys.stdout.write(cmd + "\n")
            sys.stdout.flush()
        name, _, rest = cmd.partition(" ")
        if name == "ls":
            sys.stdout.write("file_a\nfile_b\n")
        elif name == "echo":
            sys.stdout.write(rest + "\n")
        elif name == "err":
            sys.stderr.write(rest + "\n")
            sys.stderr.flush()
        elif name == "sleep":
            time.sleep(float(rest or "1"))
            sys.stdout.write("slept\n")
        elif name == "close-stdin":
            sys.stdin.close()
            try:
                os.close(0)
            except OSError:
                pass
            sys.stdout.write("stdin closed\n")
            sys.stdout.flush()
            time.sleep(30)
            return 0
        elif "\x03" in cmd:
            sys.stdout.write("interrupted\n")
        elif name == "exit":
            sys.stdout.flush()
            return int(rest or "3")
        elif cmd:
            sys.stdout.write(f"unknown: {cmd}\n")
        sys.stdout.flush()


if __name__ == "__main__":
    raise SystemExit(main())
