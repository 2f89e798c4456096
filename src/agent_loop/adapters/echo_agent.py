"""Local fake agent CLI for process adapter tests and smoke runs."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

COMPLETION_MARKER = "TASK_COMPLETE"


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back, optionally misbehaving on request."""

    parser = argparse.ArgumentParser(prog="echo_agent")
    parser.add_argument("prompt", nargs="?", default=None)
    parser.add_argument("--prompt", dest="prompt_option", default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--usage", default="", help="input:output token counts to report")
    parser.add_argument("--complete-file", default="", help="prompt file to mark complete")
    # Agent-specific flags such as --print are accepted and ignored.
    args, _ = parser.parse_known_args(argv)

    prompt = args.prompt_option or args.prompt
    if prompt is None:
        prompt = sys.stdin.read()
    if args.sleep > 0:
        time.sleep(args.sleep)

    lines = [line for line in prompt.strip().splitlines() if line.strip()]
    sys.stdout.write(f"echo: {lines[-1] if lines else ''}\n")
    sys.stdout.write(f"prompt_chars: {len(prompt)}\n")
    if args.usage:
        input_tokens, _, output_tokens = args.usage.partition(":")
        sys.stdout.write(f"input_tokens: {input_tokens}\noutput_tokens: {output_tokens}\n")
    if args.stderr:
        sys.stderr.write(f"{args.stderr}\n")
    if args.complete_file:
        path = Path(args.complete_file)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n{COMPLETION_MARKER}\n")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
