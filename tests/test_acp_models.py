from __future__ import annotations

import allure
import pytest

from agent_loop.adapters.acp import AcpSession, ToolCall, ToolCallStatus
from agent_loop.adapters.acp.models import (
    AcpProtocolError,
    decode_message,
    encode_message,
    is_notification,
    is_request,
    is_response,
    make_request,
    response_error,
)

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("ACP Adapter"),
]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("pending", ToolCallStatus.PENDING),
        ("in_progress", ToolCallStatus.RUNNING),
        ("Completed", ToolCallStatus.COMPLETED),
        ("failed", ToolCallStatus.FAILED),
        ("exploded", None),
        (None, None),
    ],
)
def test_tool_call_status_parse(raw: object, expected: ToolCallStatus | None) -> None:
    assert ToolCallStatus.parse(raw) is expected


def test_tool_call_transitions_only_move_forward() -> None:
    tool_call = ToolCall(tool_call_id="call-1", tool_name="write_file")

    assert tool_call.advance(ToolCallStatus.RUNNING) is True
    assert tool_call.advance(ToolCallStatus.PENDING) is False
    assert tool_call.advance(ToolCallStatus.COMPLETED) is True
    assert tool_call.advance(ToolCallStatus.FAILED) is False
    assert tool_call.status is ToolCallStatus.COMPLETED


def test_session_folds_updates() -> None:
    session = AcpSession(session_id="s-1")

    session.apply_update({"sessionUpdate": "agent_message_chunk", "content": {"text": "Hel"}})
    session.apply_update({"sessionUpdate": "agent_message_chunk", "content": [{"text": "lo"}]})
    session.apply_update({"sessionUpdate": "agent_thought_chunk", "content": "hmm"})
    session.apply_update({"sessionUpdate": "plan", "entries": [{"content": "step"}]})
    session.apply_update(
        {
            "sessionUpdate": "tool_call",
            "toolCallId": "call-1",
            "title": "read_file",
            "rawInput": {"path": "a.txt"},
        },
    )
    session.apply_update(
        {
            "sessionUpdate": "tool_call_update",
            "toolCallId": "call-1",
            "status": "completed",
            "rawOutput": "contents",
        },
    )
    session.apply_update(
        {"sessionUpdate": "tool_call_update", "toolCallId": "call-1", "status": "pending"},
    )
    session.apply_update({"sessionUpdate": "something_new"})

    assert session.output == "Hello"
    assert session.thoughts == "hmm"
    assert session.plan == [{"content": "step"}]
    (tool_call,) = session.tool_calls
    assert tool_call.tool_name == "read_file"
    assert tool_call.arguments == {"path": "a.txt"}
    assert tool_call.status is ToolCallStatus.COMPLETED
    assert tool_call.result == "contents"


def test_update_for_unknown_tool_call_is_ignored() -> None:
    session = AcpSession(session_id="s-1")

    session.apply_update(
        {"sessionUpdate": "tool_call_update", "toolCallId": "ghost", "status": "failed"},
    )

    assert session.tool_calls == []


def test_begin_turn_resets_accumulated_state() -> None:
    session = AcpSession(session_id="s-1", output="old", error="bad", completed=True)

    session.begin_turn()

    assert (session.output, session.error, session.completed) == ("", None, False)
    assert session.to_dict()["session_id"] == "s-1"


def test_message_framing() -> None:
    request = make_request(7, "session/prompt", {"sessionId": "s"})
    line = encode_message(request)

    assert line.endswith("\n")
    assert decode_message(line) == request
    assert is_request(request)
    assert is_notification({"jsonrpc": "2.0", "method": "session/update"})
    assert is_response({"jsonrpc": "2.0", "id": 7, "result": None})


@pytest.mark.parametrize("line", ["{not json", "[1, 2]"])
def test_decode_rejects_non_objects(line: str) -> None:
    with pytest.raises(AcpProtocolError):
        decode_message(line)


def test_response_error_carries_code_and_data() -> None:
    error = response_error(
        {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nope", "data": [1]}},
    )

    assert error is not None
    assert str(error) == "nope"
    assert (error.code, error.data) == (-32000, [1])
    assert response_error({"jsonrpc": "2.0", "id": 1, "result": {}}) is None
