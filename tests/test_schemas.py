"""Tests for the conversation data model and history records."""

import pytest

from magma.api.schemas import (
    GeoFeature,
    HistoryEntry,
    HistoryKind,
    ToolUseRequest,
    Turn,
    Usage,
    extract_text,
    tool_call_payload,
    tool_uses,
    validate_conversation,
)


def _assistant_with_tools(*ids: str) -> Turn:
    return Turn(
        role="assistant",
        content=[{"type": "tool_use", "id": i, "name": "echo", "input": {}} for i in ids],
    )


def _results(*ids: str) -> Turn:
    return Turn(
        role="tool_result",
        content=[{"type": "tool_result", "tool_use_id": i, "content": "ok"} for i in ids],
    )


def test_tool_uses_in_request_order():
    content = [
        {"type": "text", "text": "Let me check."},
        {"type": "tool_use", "id": "b", "name": "x", "input": {"q": 1}},
        {"type": "tool_use", "id": "a", "name": "y"},
    ]

    requests = tool_uses(content)

    assert requests == [ToolUseRequest(id="b", name="x", arguments={"q": 1}), ToolUseRequest(id="a", name="y")]
    assert extract_text(content) == "Let me check."


def test_extract_text_without_text_blocks():
    assert extract_text([{"type": "tool_use", "id": "a", "name": "x", "input": {}}]) == ""


def test_valid_conversation_passes():
    validate_conversation([
        Turn(role="user", content="Hi"),
        _assistant_with_tools("a", "b"),
        _results("b", "a"),
        Turn(role="assistant", content=[{"type": "text", "text": "Done"}]),
    ])


def test_mismatched_results_rejected():
    with pytest.raises(ValueError, match="do not match"):
        validate_conversation([Turn(role="user", content="Hi"), _assistant_with_tools("a", "b"), _results("a")])


def test_orphan_tool_result_rejected():
    with pytest.raises(ValueError, match="without a preceding"):
        validate_conversation([Turn(role="user", content="Hi"), _results("a")])


def test_history_entry_to_dict_flattens_payload():
    entry = HistoryEntry(
        kind=HistoryKind.TOOL_CALL,
        sequence=3,
        payload=tool_call_payload(ToolUseRequest(id="t1", name="geocode_address", arguments={"address": "x"})),
    )

    data = entry.to_dict()

    assert data["type"] == "tool_call"
    assert data["sequence"] == 3
    assert data["tool_use_id"] == "t1"
    assert data["tool_name"] == "geocode_address"
    assert data["arguments"] == {"address": "x"}
    assert "timestamp" in data


def test_geo_feature_wire_shape():
    feature = GeoFeature(id="f1", latitude=1.0, longitude=2.0, label="Here")

    assert feature.to_dict() == {"id": "f1", "type": "marker", "lat": 1.0, "lon": 2.0, "label": "Here"}


def test_usage_handles_missing_usage():
    usage = Usage(3.0, 15.0)
    usage.add(None)
    usage.add({"input_tokens": 1_000_000, "output_tokens": 0})

    summary = usage.summary()

    assert summary.api_calls == 2
    assert summary.input_tokens == 1_000_000
    assert summary.estimated_cost_usd == pytest.approx(3.0)
