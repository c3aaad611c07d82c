"""Shared fixtures: settings, an in-memory history store and a scripted model."""

import uuid
from datetime import UTC, datetime
from typing import Any

import pytest

from magma.api.model_client import ModelResponse
from magma.api.schemas import GeoFeature, HistoryEntry, Turn
from magma.config import Settings
from magma.errors import MalformedHistoryError

# ---------------------------------------------------------------------------
# Model response helpers
# ---------------------------------------------------------------------------


def text_response(text: str, usage: dict | None = None) -> ModelResponse:
    return ModelResponse(
        content=[{"type": "text", "text": text}],
        stop_reason="end_turn",
        usage=usage or {"input_tokens": 10, "output_tokens": 5},
    )


def tool_response(*calls: tuple[str, str, dict], text: str = "") -> ModelResponse:
    """Build a tool_use response from (id, name, input) triples."""
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for tool_id, name, arguments in calls:
        content.append({"type": "tool_use", "id": tool_id, "name": name, "input": arguments})
    return ModelResponse(
        content=content,
        stop_reason="tool_use",
        usage={"input_tokens": 20, "output_tokens": 8},
    )


class ScriptedModel:
    """Stands in for ModelClient: returns preset responses, records every call.

    Turns are snapshotted per call because the loop keeps appending to the
    same working list.
    """

    def __init__(self, *responses: ModelResponse) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def send(self, system_prompt, turns, tools=None) -> ModelResponse:
        self.calls.append({"system": system_prompt, "turns": list(turns), "tools": tools})
        if not self.responses:
            raise AssertionError("ScriptedModel ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


# ---------------------------------------------------------------------------
# In-memory history store
# ---------------------------------------------------------------------------


class FakeHistoryStore:
    """Dict-backed stand-in for HistoryStore with the same method surface."""

    def __init__(self) -> None:
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: list[dict[str, Any]] = []
        self.features: dict[str, tuple[str, GeoFeature]] = {}  # id -> (message_id, feature)
        self.touched: list[str] = []

    def _now(self) -> str:
        return datetime.now(UTC).isoformat()

    async def create_conversation(self, title=None, metadata=None, conversation_id=None) -> dict[str, Any]:
        cid = conversation_id or str(uuid.uuid4())
        conversation = {
            "id": cid,
            "title": title,
            "metadata": metadata,
            "created_at": self._now(),
            "updated_at": self._now(),
        }
        self.conversations[cid] = conversation
        return dict(conversation)

    async def ensure_conversation(self, conversation_id: str) -> None:
        if conversation_id not in self.conversations:
            await self.create_conversation(conversation_id=conversation_id)

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        conversation = self.conversations.get(conversation_id)
        return dict(conversation) if conversation else None

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        ordered = sorted(self.conversations.values(), key=lambda c: c["updated_at"], reverse=True)
        return ordered[offset:offset + limit]

    async def touch(self, conversation_id: str) -> None:
        self.touched.append(conversation_id)
        self.conversations[conversation_id]["updated_at"] = self._now()

    async def append_message(self, conversation_id: str, message_type: str, content: dict) -> str:
        sequence = 1 + max(
            (m["sequence_number"] for m in self.messages if m["conversation_id"] == conversation_id),
            default=0,
        )
        message_id = str(uuid.uuid4())
        self.messages.append({
            "id": message_id,
            "conversation_id": conversation_id,
            "type": message_type,
            "sequence_number": sequence,
            "content": content,
            "timestamp": self._now(),
        })
        return message_id

    async def append_history_entry(self, conversation_id: str, entry: HistoryEntry) -> str:
        return await self.append_message(conversation_id, entry.kind.value, entry.payload)

    def messages_for(self, conversation_id: str, types: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        rows = [
            m for m in self.messages
            if m["conversation_id"] == conversation_id and (types is None or m["type"] in types)
        ]
        return sorted(rows, key=lambda m: m["sequence_number"])

    async def load_history(self, conversation_id: str) -> list[Turn]:
        turns = []
        for message in self.messages_for(conversation_id, ("user", "assistant")):
            text = message["content"].get("text") if isinstance(message["content"], dict) else None
            if not isinstance(text, str):
                raise MalformedHistoryError(message["id"], "expected { text: string }")
            if not text and message["type"] == "assistant":
                continue
            turns.append(Turn(role=message["type"], content=text))
        return turns

    async def get_conversation_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        result = []
        for message in self.messages_for(conversation_id):
            features = []
            if message["type"] == "assistant":
                features = [f.to_dict() for f in await self.list_message_features(message["id"])]
            result.append({**{k: v for k, v in message.items() if k != "conversation_id"}, "geo_features": features})
        return result

    async def append_feature(self, message_id: str, feature: GeoFeature) -> None:
        if feature.id in self.features:
            raise ValueError(f"duplicate feature id {feature.id}")
        self.features[feature.id] = (message_id, feature)

    async def list_message_features(self, message_id: str) -> list[GeoFeature]:
        return [f for mid, f in self.features.values() if mid == message_id]

    async def list_features(self, conversation_id: str) -> list[GeoFeature]:
        message_ids = {m["id"] for m in self.messages_for(conversation_id)}
        return [f for mid, f in self.features.values() if mid in message_ids]

    async def find_features_by_label(self, conversation_id: str, query: str) -> list[GeoFeature]:
        return [
            f for f in await self.list_features(conversation_id)
            if query.lower() in f.label.lower()
        ]

    async def delete_feature(self, feature_id: str) -> None:
        self.features.pop(feature_id, None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with a low round limit for loop termination tests."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        max_tool_rounds=3,
        max_tokens=1024,
    )


@pytest.fixture
def store() -> FakeHistoryStore:
    return FakeHistoryStore()


def make_feature(label: str, lat: float = 45.5, lon: float = -122.6) -> GeoFeature:
    return GeoFeature(id=str(uuid.uuid4()), latitude=lat, longitude=lon, label=label)
