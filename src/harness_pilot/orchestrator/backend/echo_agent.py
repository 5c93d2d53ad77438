"""Local demo harness for executor and dispatcher integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

ANSWER_MARKER = "Operator answer:"


def main(argv: list[str] | None = None) -> int:
    """Echo the instruction back the way a coding agent would report it."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt")
    parser.add_argument("--ask", default=None, help="Question to ask unless already answered.")
    parser.add_argument("--fail", action="store_true", help="Exit non-zero after running.")
    parser.add_argument("--touch", default=None, help="File to create in the workspace.")
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    print(f"Working on {args.prompt.splitlines()[0] if args.prompt else ''}")
    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.fail:
        print("error: simulated harness failure", file=sys.stderr)
        return 2

    if args.ask and ANSWER_MARKER not in args.prompt:
        print(args.ask)
        return 0

    if args.touch:
        target = Path(args.touch)
        target.write_text(args.prompt, "utf-8")
        print(f"Created {target}")

    print("Done.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
