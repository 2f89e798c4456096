"""Line-framed JSON-RPC 2.0 client for a long-lived agent subprocess.

Two daemon threads drain the child's stdout and stderr so the child never
blocks on a full pipe while we write. Parsed stdout messages go into a queue
that :meth:`AcpClient.request` drains until the matching response arrives,
dispatching notifications and agent-initiated requests along the way.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from agent_loop.adapters.acp.models import (
    AcpProcessExitedError,
    AcpProtocolError,
    AcpRequestTimeoutError,
    decode_message,
    encode_message,
    is_notification,
    is_request,
    is_response,
    make_error,
    make_request,
    make_result,
    response_error,
)
from agent_loop.adapters.process import terminate_process

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
DEFAULT_REQUEST_TIMEOUT_SECONDS = 300.0
STDERR_TAIL_LINES = 50
_POLL_SECONDS = 0.2

NotificationHandler = Callable[[str, dict[str, Any]], None]
RequestHandler = Callable[[str, dict[str, Any]], Any]

_EOF = object()


class AcpClient:
    """JSON-RPC peer over the stdin/stdout of one agent process."""

    def __init__(  # noqa: PLR0913
        self,
        command: Sequence[str],
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        on_notification: NotificationHandler | None = None,
        on_request: RequestHandler | None = None,
    ) -> None:
        if not command:
            raise ValueError("ACP agent command must not be empty")
        self.command = list(command)
        self.cwd = cwd
        self.env = dict(env or {})
        self.request_timeout_seconds = request_timeout_seconds
        self.on_notification = on_notification
        self.on_request = on_request
        self._process: subprocess.Popen[str] | None = None
        self._messages: queue.Queue[object] = queue.Queue()
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._threads: list[threading.Thread] = []
        self._write_lock = threading.Lock()
        self._next_id = 0
        self._eof = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None and not self._eof

    @property
    def returncode(self) -> int | None:
        return self._process.poll() if self._process is not None else None

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def start(self) -> None:
        """Spawn the agent; ``OSError`` propagates when it cannot be started."""

        if self._process is not None:
            raise RuntimeError("ACP client already started")

        logger.debug("Starting ACP agent: %s", " ".join(self.command))
        self._process = subprocess.Popen(  # noqa: S603
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env={**os.environ, **self.env},
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self._eof = False
        self._threads = [
            threading.Thread(target=self._pump_stdout, name="acp-stdout", daemon=True),
            threading.Thread(target=self._pump_stderr, name="acp-stderr", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Close stdin and terminate the agent; safe to call repeatedly."""

        process = self._process
        if process is None:
            return
        logger.debug("Stopping ACP agent")
        try:
            if process.stdin is not None and not process.stdin.closed:
                process.stdin.close()
        except OSError as error:
            logger.debug("Closing ACP stdin failed: %s", error)
        try:
            process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            terminate_process(process)
        for thread in self._threads:
            thread.join(timeout=1)
        self._process = None
        self._threads = []
        self._messages = queue.Queue()

    def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> Any:
        """Send a request and block until its response; returns ``result``.

        Raises ``AcpProtocolError`` for error responses, ``AcpProcessExitedError``
        when the agent dies first and ``AcpRequestTimeoutError`` when no response
        arrives.
        """

        self._next_id += 1
        request_id = self._next_id
        self._send(make_request(request_id, method, params))
        logger.debug("Sent ACP request %s (id=%d)", method, request_id)
        timeout = self.request_timeout_seconds if timeout_seconds is None else timeout_seconds
        return self._wait_for(request_id, method, time.monotonic() + timeout)

    def wait_for_response(self, request_id: int, *, timeout_seconds: float) -> Any:
        """Keep dispatching traffic until the response to an earlier request arrives."""

        return self._wait_for(request_id, "response", time.monotonic() + timeout_seconds)

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._send(message)

    def _send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise RuntimeError("ACP client not started")
        if self._eof:
            raise self.exited_error()
        try:
            with self._write_lock:
                process.stdin.write(encode_message(message))
                process.stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as error:
            raise self.exited_error() from error

    def _wait_for(self, request_id: int, method: str, deadline: float) -> Any:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AcpRequestTimeoutError(
                    f"ACP request {method} (id={request_id}) timed out",
                    request_id=request_id,
                )
            try:
                item = self._messages.get(timeout=min(remaining, _POLL_SECONDS))
            except queue.Empty:
                continue
            if item is _EOF:
                self._eof = True
                self._reap()
                raise self.exited_error()
            if not isinstance(item, dict):
                continue
            message = item
            if is_response(message):
                if message.get("id") != request_id:
                    logger.debug("Dropping stale ACP response id=%s", message.get("id"))
                    continue
                error = response_error(message)
                if error is not None:
                    raise error
                return message.get("result")
            self._dispatch(message)

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = str(message.get("method"))
        params = message.get("params")
        params = params if isinstance(params, dict) else {}
        if is_notification(message):
            if self.on_notification is not None:
                self.on_notification(method, params)
            return
        if is_request(message):
            self._answer(message.get("id"), method, params)
            return
        logger.debug("Unhandled ACP message: %s", message)

    def _answer(self, request_id: object, method: str, params: dict[str, Any]) -> None:
        if self.on_request is None:
            self._send(make_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}"))
            return
        try:
            result = self.on_request(method, params)
        except AcpProtocolError as error:
            self._send(make_error(request_id, error.code or INTERNAL_ERROR, str(error)))
            return
        self._send(make_result(request_id, result))

    def _reap(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            return
        for thread in self._threads:
            thread.join(timeout=0.5)

    def exited_error(self) -> AcpProcessExitedError:
        code = self.returncode
        tail = self.stderr_tail()
        message = f"ACP agent process exited (code {code})"
        if tail:
            message = f"{message}: {tail.splitlines()[-1]}"
        return AcpProcessExitedError(message, data={"exit_code": code, "stderr": tail})

    def _pump_stdout(self) -> None:
        process = self._process
        messages = self._messages
        if process is None or process.stdout is None:
            messages.put(_EOF)
            return
        try:
            for raw_line in process.stdout:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    messages.put(decode_message(line))
                except AcpProtocolError as error:
                    logger.warning("Failed to parse ACP message: %s", error)
        except (OSError, ValueError) as error:
            logger.debug("ACP stdout reader stopped: %s", error)
        finally:
            messages.put(_EOF)

    def _pump_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        try:
            for raw_line in process.stderr:
                line = raw_line.rstrip()
                if line:
                    self._stderr_tail.append(line)
                    logger.debug("acp stderr: %s", line)
        except (OSError, ValueError) as error:
            logger.debug("ACP stderr reader stopped: %s", error)
