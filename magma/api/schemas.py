"""Data contract for the orchestration loop.

Content blocks are a tagged union discriminated by "type"; tool arguments
and results are opaque JSON values. Everything that leaves the loop
(history, features, usage) is a pydantic DTO so transports can
model_dump() it directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, NotRequired, TypedDict

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(TypedDict):
    type: Literal["text"]
    text: str


class ToolUseBlock(TypedDict):
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(TypedDict):
    type: Literal["tool_result"]
    tool_use_id: str
    content: str
    is_error: NotRequired[bool]


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock

TurnRole = Literal["user", "assistant", "tool_result"]


@dataclass
class Turn:
    """One conversation turn.

    user turns carry plain text, assistant turns carry content blocks as
    returned by the model, tool_result turns carry one ToolResultBlock per
    tool_use id of the preceding assistant turn.
    """

    role: TurnRole
    content: str | list[dict[str, Any]]

    def to_api(self) -> dict[str, Any]:
        # Tool results travel to the provider in a user-role message
        role = "user" if self.role == "tool_result" else self.role
        return {"role": role, "content": self.content}


@dataclass
class ToolUseRequest:
    """A tool invocation requested by the model. id is the correlation key."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


def tool_uses(content: list[dict[str, Any]]) -> list[ToolUseRequest]:
    """Return the tool_use blocks of a response, in request order."""
    return [
        ToolUseRequest(id=block["id"], name=block["name"], arguments=block.get("input") or {})
        for block in content
        if block.get("type") == "tool_use"
    ]


def extract_text(content: list[dict[str, Any]]) -> str:
    """Join every text block with newlines; empty string if there are none."""
    return "\n".join(block.get("text", "") for block in content if block.get("type") == "text")


def tool_result_block(tool_use_id: str, text: str, is_error: bool = False) -> dict[str, Any]:
    block: dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": text}
    if is_error:
        block["is_error"] = True
    return block


def validate_conversation(turns: list[Turn]) -> None:
    """Raise ValueError unless every tool_use id is answered by the next turn.

    A tool_result turn must immediately follow an assistant turn with
    tool_use blocks and answer exactly those ids.
    """
    for index, turn in enumerate(turns):
        if turn.role == "tool_result":
            previous = turns[index - 1] if index > 0 else None
            if previous is None or previous.role != "assistant" or isinstance(previous.content, str):
                raise ValueError(f"Turn {index}: tool_result without a preceding tool_use turn")
            continue

        if turn.role != "assistant" or isinstance(turn.content, str):
            continue

        requested = [request.id for request in tool_uses(turn.content)]
        if not requested:
            continue

        following = turns[index + 1] if index + 1 < len(turns) else None
        if following is None or following.role != "tool_result" or isinstance(following.content, str):
            raise ValueError(f"Turn {index}: tool_use ids {requested} never answered")

        answered = [block.get("tool_use_id") for block in following.content]
        if sorted(answered) != sorted(requested):
            raise ValueError(
                f"Turn {index + 1}: tool results {answered} do not match requests {requested}"
            )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class HistoryKind(StrEnum):
    USER_PROMPT = "user_prompt"
    LLM_RESPONSE = "llm_response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"


class HistoryEntry(BaseModel):
    """One append-only audit record. sequence orders entries; timestamp is informational."""

    kind: HistoryKind
    sequence: int
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }


def user_prompt_payload(prompt: str) -> dict[str, Any]:
    return {"prompt": prompt}


def llm_response_payload(content: list[dict[str, Any]], stop_reason: str) -> dict[str, Any]:
    return {"content": content, "stop_reason": stop_reason}


def tool_call_payload(request: ToolUseRequest) -> dict[str, Any]:
    return {"tool_use_id": request.id, "tool_name": request.name, "arguments": request.arguments}


def tool_result_payload(request: ToolUseRequest, result: str) -> dict[str, Any]:
    return {"tool_use_id": request.id, "tool_name": request.name, "result": result}


def tool_error_payload(request: ToolUseRequest, error: str) -> dict[str, Any]:
    return {"tool_use_id": request.id, "tool_name": request.name, "error": error}


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------


class GeoFeature(BaseModel):
    """A geocoded map marker derived from a tool result."""

    id: str
    kind: Literal["marker"] = "marker"
    latitude: float
    longitude: float
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "lat": self.latitude,
            "lon": self.longitude,
            "label": self.label,
        }


# ---------------------------------------------------------------------------
# Usage and result
# ---------------------------------------------------------------------------


class UsageSummary(BaseModel):
    api_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0


class Usage:
    """Accumulates token usage across the model calls of one run."""

    def __init__(self, input_cost_per_mtok: float, output_cost_per_mtok: float) -> None:
        self._input_rate = input_cost_per_mtok
        self._output_rate = output_cost_per_mtok
        self.api_calls = 0
        self.input_tokens = 0
        self.output_tokens = 0

    def add(self, usage: dict[str, int] | None) -> None:
        self.api_calls += 1
        if not usage:
            return
        # Cache creation and cache reads are billed input too
        self.input_tokens += (
            (usage.get("input_tokens") or 0)
            + (usage.get("cache_creation_input_tokens") or 0)
            + (usage.get("cache_read_input_tokens") or 0)
        )
        self.output_tokens += usage.get("output_tokens") or 0

    def summary(self) -> UsageSummary:
        cost = (
            self.input_tokens * self._input_rate + self.output_tokens * self._output_rate
        ) / 1_000_000
        return UsageSummary(
            api_calls=self.api_calls,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.input_tokens + self.output_tokens,
            estimated_cost_usd=round(cost, 6),
        )


class LoopResult(BaseModel):
    """Terminal output of one orchestration run."""

    final_text: str
    history: list[HistoryEntry] = Field(default_factory=list)
    features: list[GeoFeature] = Field(default_factory=list)
    usage: UsageSummary = Field(default_factory=UsageSummary)
