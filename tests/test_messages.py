import json

import pytest

from vibecoder.chat.messages import (
    CANCEL_QUEUED_ACTION,
    MAX_TEXT_LENGTH,
    PROCESS_NOW_ACTION,
    STOP_ACTION,
    Metadata,
    build_aborted_message,
    build_cancelled_message,
    build_error_message,
    build_progress_message,
    build_queued_message,
    build_result_message,
    build_thinking_message,
    decode_action_value,
    encode_action_value,
    format_duration,
    format_tool_info,
    split_text,
    truncate,
    user_mention,
    version_tag,
)


def _words(n: int) -> str:
    return " ".join(f"word{i}" for i in range(n))


@pytest.mark.parametrize("seconds,expected", [(0, "0s"), (42, "42s"), (60, "1m 0s"), (135, "2m 15s")])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_user_mention_skips_unknown_users():
    assert user_mention("U123") == "<@U123>"
    assert user_mention("unknown") == ""
    assert user_mention(None) == ""


def test_version_tag():
    assert version_tag("1.2.0", "6575b2fdeadbeef") == "v1.2.0 (6575b2f)"
    assert version_tag(None, None) == ""


def test_truncate_adds_ellipsis_only_when_needed():
    assert truncate("short", 10) == "short"
    assert truncate("x" * 20, 10) == "x" * 10 + "..."


def test_split_text_empty_and_exact_length():
    assert split_text("", 100) == [""]
    exact = "y" * 100
    assert split_text(exact, 100) == [exact]


def test_split_text_prefers_newlines_in_second_half():
    text = "a" * 70 + "\n" + "b" * 70
    assert split_text(text, 100) == ["a" * 70, "b" * 70]


def test_split_text_ignores_break_in_first_half():
    text = "a" * 10 + " " + "b" * 150
    chunks = split_text(text, 100)
    assert chunks[0] == text[:100]
    assert all(len(c) <= 100 for c in chunks)


def test_split_text_hard_cut_reconstructs_exactly():
    text = "z" * 1050
    chunks = split_text(text, 100)
    assert all(len(c) <= 100 for c in chunks)
    assert "".join(chunks) == text


def test_split_text_far_beyond_limit_keeps_every_word():
    text = _words(3000)
    chunks = split_text(text, MAX_TEXT_LENGTH)
    assert len(chunks) > 1
    assert all(0 < len(c) <= MAX_TEXT_LENGTH for c in chunks)
    assert " ".join(chunks).split() == text.split()


def test_format_tool_info_includes_known_fields():
    info = format_tool_info("Bash", {"description": "List files", "command": "ls -la"})
    assert info.startswith(":wrench: *Bash*")
    assert "List files" in info
    assert "`ls -la`" in info
    assert format_tool_info("Read", {"file_path": "/tmp/a.py"}).endswith("File: /tmp/a.py")
    assert format_tool_info("Grep", None) == ":wrench: *Grep*"


def test_action_value_roundtrip_and_garbage():
    value = encode_action_value("C1:1.0", "abc")
    assert json.loads(value) == {"key": "C1:1.0", "job_id": "abc"}
    assert decode_action_value(value) == ("C1:1.0", "abc")
    assert decode_action_value("not json") is None
    assert decode_action_value('{"key": "k"}') is None
    assert decode_action_value(None) is None


def test_thinking_message_has_stop_button_and_metadata():
    payload = build_thinking_message("U1", "C1:1.0", "job1", "v1.0.0")
    blocks = payload.to_blocks()
    assert blocks[0]["type"] == "context"
    assert "0s elapsed, 0 tool calls, v1.0.0" in blocks[0]["elements"][0]["text"]
    assert "<@U1>" in blocks[1]["text"]["text"]
    button = blocks[2]["elements"][0]
    assert button["action_id"] == STOP_ACTION
    assert decode_action_value(button["value"]) == ("C1:1.0", "job1")


def test_with_elapsed_changes_only_the_timestamp():
    payload = build_progress_message("U1", "k", "j", "partial answer", ":wrench: *Bash*", 3, 2)
    refreshed = payload.with_elapsed(65)
    assert refreshed.body == payload.body
    assert refreshed.actions == payload.actions
    assert refreshed.metadata == Metadata(
        elapsed_seconds=65, tool_call_count=2, finished=False, version_tag=payload.metadata.version_tag,
    )
    old, new = payload.to_blocks(), refreshed.to_blocks()
    assert old[1:] == new[1:]
    assert "1m 5s elapsed" in new[0]["elements"][0]["text"]


def test_progress_message_truncates_text():
    payload = build_progress_message("U1", "k", "j", "x" * 5000, None, 1, 0, max_length=500)
    assert len(payload.body) <= 500
    assert payload.body.endswith("...")


def test_result_message_splits_overflow():
    text = _words(1000)
    payload, overflow = build_result_message("U1", text, 42, 3, max_length=500)
    assert payload.metadata.finished
    assert "42s total, 3 tool calls" in payload.metadata.render()
    assert payload.actions == ()
    assert overflow
    assert len(payload.body) <= 500
    body_words = payload.body.split()[1:]
    assert body_words + " ".join(overflow).split() == text.split()


def test_result_message_empty_text():
    payload, overflow = build_result_message(None, "", 1, 0)
    assert overflow == []
    assert payload.body == "(empty response)"


def test_error_and_aborted_messages_have_no_buttons():
    err = build_error_message("U1", "boom")
    assert "boom" in err.body and err.actions == ()
    aborted = build_aborted_message("U2")
    assert "<@U2>" in aborted.body and aborted.actions == ()


def test_queued_message_position_and_buttons():
    first = build_queued_message("U1", "k", "j", 1)
    assert "You're next" in first.body
    third = build_queued_message("U1", "k", "j", 3)
    assert "number 3" in third.body
    actions = third.to_blocks()[-1]["elements"]
    assert [a["action_id"] for a in actions] == [PROCESS_NOW_ACTION, CANCEL_QUEUED_ACTION]
    assert actions[0]["style"] == "primary"


def test_cancelled_message_has_no_buttons():
    plain = build_cancelled_message("U1")
    assert plain.fallback_text == "Request cancelled."
    assert plain.actions == ()
    expired = build_cancelled_message("U1", "it waited in the queue for too long")
    assert expired.body.startswith("<@U1>")
    assert expired.fallback_text == "Request cancelled: it waited in the queue for too long."
