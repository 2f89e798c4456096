"""Local fake ACP agent speaking line-framed JSON-RPC over stdio.

Behaviour is driven by keywords in the prompt text:

- ``ECHO_TOOL``: report a tool call, ask for permission, finish it.
- ``ECHO_ERROR``: answer the prompt with a JSON-RPC error.
- ``ECHO_CRASH``: exit without answering.
- ``ECHO_SLOW``: sleep before answering.
- ``ECHO_EXIT``: answer, then exit.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, TextIO

COMPLETION_MARKER = "TASK_COMPLETE"


class EchoAcpAgent:
    """Minimal ACP peer used by tests and local smoke runs."""

    def __init__(  # noqa: PLR0913
        self,
        stdin: TextIO,
        stdout: TextIO,
        *,
        session_id: str = "echo-session-1",
        slow_seconds: float = 5.0,
        complete_file: Path | None = None,
        complete_after: int = 1,
    ) -> None:
        self.stdin = stdin
        self.stdout = stdout
        self.session_id = session_id
        self.slow_seconds = slow_seconds
        self.complete_file = complete_file
        self.complete_after = complete_after
        self.prompts_seen = 0
        self._next_id = 1000

    def serve(self) -> int:
        for raw_line in self.stdin:
            line = raw_line.strip()
            if not line:
                continue
            message = json.loads(line)
            if "method" not in message or "id" not in message:
                continue
            exit_code = self._handle(message)
            if exit_code is not None:
                return exit_code
        return 0

    def _handle(self, message: dict[str, Any]) -> int | None:
        method = message["method"]
        request_id = message["id"]
        params = message.get("params") or {}
        if method == "initialize":
            self._reply(request_id, {"protocolVersion": 1, "agentCapabilities": {}})
        elif method == "session/new":
            self._reply(request_id, {"sessionId": self.session_id})
        elif method == "session/prompt":
            return self._prompt(request_id, _prompt_text(params))
        else:
            self._send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method not found: {method}"},
                },
            )
        return None

    def _prompt(self, request_id: object, text: str) -> int | None:
        self.prompts_seen += 1
        if "ECHO_CRASH" in text:
            sys.stderr.write("echo agent crashing on request\n")
            sys.stderr.flush()
            return 3
        if "ECHO_SLOW" in text:
            time.sleep(self.slow_seconds)
        if "ECHO_ERROR" in text:
            self._send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32000, "message": "echo agent failure", "data": {"n": 1}},
                },
            )
            return None

        self._update({"sessionUpdate": "agent_thought_chunk", "content": _text("thinking")})
        plan = [{"content": "echo", "status": "pending"}]
        self._update({"sessionUpdate": "plan", "entries": plan})
        if "ECHO_TOOL" in text:
            self._tool_call()

        lines = [line for line in text.strip().splitlines() if line.strip()]
        reply = f"echo: {lines[-1] if lines else ''}"
        half = len(reply) // 2
        for chunk in (reply[:half], reply[half:]):
            self._update({"sessionUpdate": "agent_message_chunk", "content": _text(chunk)})

        if self.complete_file is not None and self.prompts_seen >= self.complete_after:
            with self.complete_file.open("a", encoding="utf-8") as handle:
                handle.write(f"\n{COMPLETION_MARKER}\n")
        self._reply(request_id, {"stopReason": "end_turn"})
        if "ECHO_EXIT" in text:
            return 0
        return None

    def _tool_call(self) -> None:
        self._update(
            {
                "sessionUpdate": "tool_call",
                "toolCallId": "call-1",
                "title": "write_file",
                "kind": "edit",
                "status": "pending",
                "rawInput": {"path": "notes.txt"},
            },
        )
        self._next_id += 1
        permission_id = self._next_id
        self._send(
            {
                "jsonrpc": "2.0",
                "id": permission_id,
                "method": "session/request_permission",
                "params": {
                    "sessionId": self.session_id,
                    "toolCall": {"toolCallId": "call-1", "title": "write_file", "kind": "edit"},
                    "options": [
                        {"optionId": "allow", "name": "Allow", "kind": "allow_once"},
                        {"optionId": "reject", "name": "Reject", "kind": "reject_once"},
                    ],
                },
            },
        )
        answer = self._read_response(permission_id)
        outcome = (answer.get("result") or {}).get("outcome") or {}
        approved = outcome.get("outcome") == "selected" and outcome.get("optionId") == "allow"

        self._update(_status_update("in_progress"))
        final_status = "completed" if approved else "failed"
        self._update(
            {
                "sessionUpdate": "tool_call_update",
                "toolCallId": "call-1",
                "status": final_status,
                "rawOutput": {"approved": approved},
            },
        )
        # Out-of-order update that a well-behaved client must ignore.
        self._update(_status_update("pending"))

    def _read_response(self, request_id: int) -> dict[str, Any]:
        for raw_line in self.stdin:
            line = raw_line.strip()
            if not line:
                continue
            message = json.loads(line)
            if message.get("id") == request_id and "method" not in message:
                return message
        return {}

    def _update(self, update: dict[str, Any]) -> None:
        self._send(
            {
                "jsonrpc": "2.0",
                "method": "session/update",
                "params": {"sessionId": self.session_id, "update": update},
            },
        )

    def _reply(self, request_id: object, result: object) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _send(self, message: dict[str, Any]) -> None:
        self.stdout.write(json.dumps(message) + "\n")
        self.stdout.flush()


def _text(text: str) -> dict[str, str]:
    return {"type": "text", "text": text}


def _status_update(status: str) -> dict[str, str]:
    return {"sessionUpdate": "tool_call_update", "toolCallId": "call-1", "status": status}


def _prompt_text(params: dict[str, Any]) -> str:
    blocks = params.get("prompt") or []
    if isinstance(blocks, str):
        return blocks
    return "".join(block.get("text", "") for block in blocks if isinstance(block, dict))


def main(argv: list[str] | None = None) -> int:
    """Serve ACP on stdio until stdin closes."""

    parser = argparse.ArgumentParser(prog="acp_echo_agent")
    parser.add_argument("--slow-seconds", type=float, default=5.0)
    parser.add_argument("--complete-file", default="")
    parser.add_argument("--complete-after", type=int, default=1)
    args = parser.parse_args(argv)

    agent = EchoAcpAgent(
        sys.stdin,
        sys.stdout,
        slow_seconds=args.slow_seconds,
        complete_file=Path(args.complete_file) if args.complete_file else None,
        complete_after=args.complete_after,
    )
    return agent.serve()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
