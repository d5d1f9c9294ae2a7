"""Child-process entry point for :class:`SandboxedExecutor`.

Reads one JSON request (``code``, ``roots``, ``nodes``) from stdin. Writes a
``ready`` line just before the snippet starts and one JSON result line when
it finishes. Logs go to stderr so stdout carries only those lines.
"""

import json
import sys

import structlog

from intentgraph.sandbox.executor import READY_MARKER, run_snippet


def main() -> None:
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    channel = sys.stdout.buffer

    request = json.loads(sys.stdin.buffer.read())

    def signal_ready() -> None:
        channel.write(READY_MARKER + b"\n")
        channel.flush()

    result = run_snippet(
        request["code"],
        request["roots"],
        request["nodes"],
        on_ready=signal_ready,
    )
    channel.write(json.dumps(result).encode("utf-8") + b"\n")
    channel.flush()


if __name__ == "__main__":
    main()
