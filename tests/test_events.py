"""Tests for the listener wire format."""
from datetime import datetime, timezone

from searchrelay.models.events import EventKind, SignalType, SSEEvent
from searchrelay.services import streaming
from searchrelay.services.frames import parse_frame


def test_sequenced_event_format_is_exact():
    event = SSEEvent(
        EventKind.THINKING,
        {"type": "THINKING", "content": "héllo, wörld", "sequence": 3},
        3,
    )

    assert event.format() == (
        "id: 3\n"
        "event: THINKING\n"
        'data: {"type":"THINKING","content":"héllo, wörld","sequence":3}\n'
        "\n"
    )


def test_unsequenced_event_omits_id_line():
    event = SSEEvent(SignalType.HEARTBEAT, {"timestamp": "2025-01-01T00:00:00.000Z"})

    assert event.format() == 'event: heartbeat\ndata: {"timestamp":"2025-01-01T00:00:00.000Z"}\n\n'


def test_encoded_event_parses_back_to_the_same_frame():
    event = SSEEvent(EventKind.REPORT, {"content": "Résumé", "sequence": 12}, 12)

    frame = parse_frame(event.encode())

    assert frame.id == "12"
    assert frame.event == "REPORT"
    assert frame.data == {"content": "Résumé", "sequence": 12}


def test_iso_timestamp_uses_millisecond_zulu_form():
    moment = datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)

    assert streaming.iso_timestamp(moment) == "2025-01-02T03:04:05.678Z"


def test_result_payload_omits_empty_metadata():
    payload = streaming.result_payload(EventKind.INTERMEDIATE, "found it", 4)

    assert payload["type"] == "INTERMEDIATE"
    assert payload["content"] == "found it"
    assert payload["sequence"] == 4
    assert "metadata" not in payload


def test_result_payload_includes_metadata_when_present():
    payload = streaming.result_payload(
        EventKind.THINKING, "calling tools", 1, metadata={"messageType": "ai"}
    )

    assert payload["metadata"] == {"messageType": "ai"}


def test_signal_payloads():
    assert streaming.connected("s1").data["searchId"] == "s1"
    assert streaming.disconnect().data == {"message": "Connection closed by server"}

    complete = streaming.complete("s1", 2, 1500)
    assert complete.event is SignalType.COMPLETE
    assert complete.data["totalResults"] == 2
    assert complete.data["duration"] == 1500

    error = streaming.error("boom")
    assert error.data["code"] == "SEARCH_FAILED"
    assert error.id is None
