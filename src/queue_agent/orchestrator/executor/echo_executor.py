"""Local demo executor for subprocess integration tests.

Speaks the stdio protocol and reports a scripted outcome instead of
automating a real page.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import TextIO

MODES = ("success", "fail", "crash", "silent", "no-ack", "not-ready", "mute")


def main(argv: list[str] | None = None, *, stdin: TextIO | None = None) -> int:
    """Answer PING/START_JOB according to ``--mode``."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", choices=MODES, default="success")
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--error", default="Sale form rejected the price")
    parser.add_argument("--url", default="")
    args = parser.parse_args(argv)

    source = stdin or sys.stdin
    for raw_line in source:
        line = raw_line.strip()
        if not line:
            continue
        message = json.loads(line)
        message_type = message.get("type")

        if message_type == "PING":
            _emit({"type": "PONG", "ready": args.mode != "not-ready"})
            continue
        if message_type != "START_JOB":
            continue
        if args.mode == "mute":
            continue
        if args.mode == "no-ack":
            _emit({"type": "ACK", "received": False})
            continue

        _emit({"type": "ACK", "received": True})
        job_id = message.get("job", {}).get("id")
        if args.delay > 0:
            time.sleep(args.delay)
        if args.mode == "crash":
            return 3
        if args.mode == "success":
            _emit({"type": "JOB_SUCCESS", "jobId": job_id})
        elif args.mode == "fail":
            _emit({"type": "JOB_FAILED", "jobId": job_id, "error": args.error})
    return 0


def _emit(message: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
