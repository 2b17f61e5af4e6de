import json

import pytest

from shared.frame import BadFrameError, Frame, create_frame


def test_parses_event_and_data():
    frame = Frame.from_json('{"event":"private_message","data":{"receiverId":"b","content":"hi"}}')
    assert frame.event == "private_message"
    assert frame.data == {"receiverId": "b", "content": "hi"}


def test_missing_or_null_data_reads_as_empty_object():
    assert Frame.from_json('{"event":"call_ended"}').data == {}
    assert Frame.from_json('{"event":"call_ended","data":null}').data == {}


def test_binary_frames_are_decoded_as_utf8():
    raw = json.dumps({"event": "private_message", "data": {"content": "hé"}}).encode("utf-8")
    assert Frame.from_json(raw).data["content"] == "hé"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"data": {}}',
        '{"event": "", "data": {}}',
        '{"event": 5, "data": {}}',
        '{"event": "mark_read", "data": [1]}',
        b"\xff\xfe",
    ],
)
def test_malformed_frames_raise(raw):
    with pytest.raises(BadFrameError):
        Frame.from_json(raw)


def test_to_json_is_compact():
    assert create_frame("message_status", {"messageId": "m1", "status": "read"}).to_json() == (
        '{"event":"message_status","data":{"messageId":"m1","status":"read"}}'
    )


def test_create_frame_copies_data():
    data = {"a": 1}
    frame = create_frame("x", data)
    data["a"] = 2
    assert frame.data == {"a": 1}
