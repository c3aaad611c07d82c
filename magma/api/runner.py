"""Agent runner -- the bounded tool-use orchestration loop.

Alternates between calling the model, executing the tools it requests
(strictly sequentially, in request order), and feeding the results back,
until the model stops asking for tools or the round limit is hit.

Every transition appends a HistoryEntry (optionally handed to a recorder
as it happens) and publishes a ProgressEvent to the run's sink.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from magma.api.features import extract_features, removed_feature_id
from magma.api.model_client import ModelClient
from magma.api.prompts import build_system_prompt
from magma.api.schemas import (
    GeoFeature,
    HistoryEntry,
    HistoryKind,
    LoopResult,
    ToolUseRequest,
    Turn,
    Usage,
    extract_text,
    llm_response_payload,
    tool_call_payload,
    tool_error_payload,
    tool_result_block,
    tool_result_payload,
    tool_uses,
    user_prompt_payload,
    validate_conversation,
)
from magma.api.tools import ToolRouter
from magma.config import Settings
from magma.errors import RoundLimitExceeded
from magma.events import ProgressSink, safe_publish

if TYPE_CHECKING:
    from magma.storage.history import HistoryStore

logger = logging.getLogger(__name__)

HistoryRecorder = Callable[[HistoryEntry], Awaitable[None]]


class LoopState(StrEnum):
    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    TERMINAL_TEXT = "terminal_text"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    LIMIT_EXCEEDED = "limit_exceeded"
    FAILED = "failed"


@dataclass
class _Run:
    """Mutable state of one run. Never shared between runs."""

    sink: ProgressSink | None
    recorder: HistoryRecorder | None
    usage: Usage
    turns: list[Turn] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    features: list[GeoFeature] = field(default_factory=list)
    rounds: int = 0
    state: LoopState = LoopState.INIT

    def transition(self, state: LoopState) -> None:
        logger.debug("Loop %s -> %s (round %d)", self.state, state, self.rounds)
        self.state = state

    async def record(self, kind: HistoryKind, payload: dict[str, Any]) -> None:
        entry = HistoryEntry(kind=kind, sequence=len(self.history) + 1, payload=payload)
        self.history.append(entry)
        if self.recorder is not None:
            await self.recorder(entry)

    def emit(self, kind: str, data: dict[str, Any]) -> None:
        safe_publish(self.sink, kind, data)


class AgentRunner:
    """Runs the tool-use loop against a ModelClient and a ToolRouter.

    run() is storage-agnostic; run_conversation() wraps it with the
    HistoryStore so prior turns are loaded and every entry is persisted.
    """

    def __init__(
        self,
        model: ModelClient,
        router: ToolRouter,
        settings: Settings,
        store: HistoryStore | None = None,
    ) -> None:
        self._model = model
        self._router = router
        self._settings = settings
        self._store = store

    @property
    def max_tool_rounds(self) -> int:
        return self._settings.max_tool_rounds

    async def run(
        self,
        user_message: str,
        prior_turns: list[Turn],
        tool_catalog: list[dict[str, Any]],
        sink: ProgressSink | None = None,
        *,
        system_prompt: str = "",
        recorder: HistoryRecorder | None = None,
    ) -> LoopResult:
        """Execute one orchestration run and return its LoopResult.

        Raises RoundLimitExceeded when the model still requests tools after
        max_tool_rounds rounds; ModelCallError and recorder errors propagate.
        Tool failures are reported to the model and never abort the run.
        """
        if not user_message or not user_message.strip():
            raise ValueError("user_message must be non-empty")
        validate_conversation(prior_turns)

        run = _Run(
            sink=sink,
            recorder=recorder,
            usage=Usage(self._settings.input_cost_per_mtok, self._settings.output_cost_per_mtok),
        )
        started = time.monotonic()

        try:
            final_text = await self._drive(run, user_message, prior_turns, tool_catalog, system_prompt)
        except RoundLimitExceeded:
            run.transition(LoopState.LIMIT_EXCEEDED)
            logger.warning("Tool loop exceeded %d rounds", self.max_tool_rounds)
            raise
        except BaseException:
            run.transition(LoopState.FAILED)
            raise

        run.transition(LoopState.DONE)
        usage = run.usage.summary()
        logger.info(
            "Loop done in %.1fs: rounds=%d api_calls=%d tokens=%d (in=%d out=%d) est_cost=$%.4f",
            time.monotonic() - started,
            run.rounds,
            usage.api_calls,
            usage.total_tokens,
            usage.input_tokens,
            usage.output_tokens,
            usage.estimated_cost_usd,
        )
        return LoopResult(
            final_text=final_text,
            history=run.history,
            features=run.features,
            usage=usage,
        )

    async def _drive(
        self,
        run: _Run,
        user_message: str,
        prior_turns: list[Turn],
        tool_catalog: list[dict[str, Any]],
        system_prompt: str,
    ) -> str:
        # INIT
        await run.record(HistoryKind.USER_PROMPT, user_prompt_payload(user_message))
        run.emit("user_prompt", {"prompt": user_message})
        run.turns = [*prior_turns, Turn(role="user", content=user_message)]

        while True:
            run.transition(LoopState.AWAITING_MODEL)
            response = await self._model.send(system_prompt, run.turns, tool_catalog or None)
            run.usage.add(response.usage)

            await run.record(
                HistoryKind.LLM_RESPONSE,
                llm_response_payload(response.content, response.stop_reason),
            )
            run.emit("llm_response", {"stop_reason": response.stop_reason, "content": response.content})

            if response.stop_reason != "tool_use":
                run.transition(LoopState.TERMINAL_TEXT)
                return extract_text(response.content)

            requests = tool_uses(response.content)
            if not requests:
                # A tool_use stop with nothing to answer cannot be continued
                logger.warning("stop_reason=tool_use without tool_use blocks; ending run")
                run.transition(LoopState.TERMINAL_TEXT)
                return extract_text(response.content)

            if run.rounds >= self.max_tool_rounds:
                raise RoundLimitExceeded(self.max_tool_rounds)

            run.rounds += 1
            run.transition(LoopState.EXECUTING_TOOLS)
            run.turns.append(Turn(role="assistant", content=response.content))

            results: dict[str, dict[str, Any]] = {}
            for request in requests:
                results[request.id] = await self._execute_tool(run, request)

            # Fed back in request order, matched by id
            run.turns.append(
                Turn(role="tool_result", content=[results[request.id] for request in requests])
            )

    async def _execute_tool(self, run: _Run, request: ToolUseRequest) -> dict[str, Any]:
        """Execute one tool_use block and return its tool_result block."""
        await run.record(HistoryKind.TOOL_CALL, tool_call_payload(request))
        run.emit("tool_call", tool_call_payload(request))

        start_time = time.monotonic()
        try:
            result = await self._router.call_tool(request.name, request.arguments)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("Tool %s (%s) failed: %s", request.name, request.id, error)
            await run.record(HistoryKind.TOOL_ERROR, tool_error_payload(request, error))
            run.emit("tool_error", tool_error_payload(request, error))
            return tool_result_block(request.id, error, is_error=True)

        logger.debug(
            "Tool %s (%s) returned in %dms",
            request.name,
            request.id,
            int((time.monotonic() - start_time) * 1000),
        )
        await run.record(HistoryKind.TOOL_RESULT, tool_result_payload(request, result))
        run.emit("tool_result", tool_result_payload(request, result))

        for feature in extract_features(request.name, result, request.arguments):
            # Each geocode is its own marker, even for an address already mapped
            feature = feature.model_copy(update={"id": str(uuid.uuid4())})
            run.features.append(feature)
            run.emit("geo_feature", feature.to_dict())

        removed = removed_feature_id(request.name, result)
        if removed:
            run.emit("remove_geo_feature", {"feature_id": removed})

        return tool_result_block(request.id, result)

    # ------------------------------------------------------------------
    # Persistence path
    # ------------------------------------------------------------------

    async def run_conversation(
        self,
        conversation_id: str,
        user_message: str,
        sink: ProgressSink | None = None,
    ) -> LoopResult:
        """Run one user message against a stored conversation.

        Steps:
        1. Ensure the conversation exists, load prior user/assistant turns
        2. Fetch the tool catalog (ToolListError aborts before any model call)
        3. Store the user message
        4. Run the loop, persisting every history entry as it is appended
        5. Store the final assistant text and attach extracted features to it
        6. Touch the conversation

        Nothing is rolled back on failure: entries already written stay.
        """
        if self._store is None:
            raise RuntimeError("No history store configured for this runner")
        store = self._store

        await store.ensure_conversation(conversation_id)
        prior_turns = await store.load_history(conversation_id)
        current_features = await store.list_features(conversation_id)
        tool_catalog = await self._router.tool_definitions()

        await store.append_message(conversation_id, "user", {"text": user_message})

        async def record(entry: HistoryEntry) -> None:
            await store.append_history_entry(conversation_id, entry)

        result = await self.run(
            user_message,
            prior_turns,
            tool_catalog,
            sink,
            system_prompt=build_system_prompt(conversation_id, current_features),
            recorder=record,
        )

        assistant_id = await store.append_message(
            conversation_id, "assistant", {"text": result.final_text}
        )
        for feature in result.features:
            await store.append_feature(assistant_id, feature)
        await store.touch(conversation_id)

        logger.info(
            "Conversation %s: stored %d history entries, %d features",
            conversation_id,
            len(result.history),
            len(result.features),
        )
        return result
