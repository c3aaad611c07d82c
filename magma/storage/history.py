"""Persistence adapter behind the orchestration loop.

Append-only writer for conversation messages, loop history entries and
geo features. Every message gets a per-conversation sequence number,
which is the sole ordering authority when reading back.

Write methods accept an optional session for transaction injection; when
none is passed they open and commit their own.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from magma.api.schemas import GeoFeature, HistoryEntry, Turn
from magma.errors import MalformedHistoryError
from magma.storage.database import Database
from magma.storage.models import Conversation, GeoFeatureRow, Message

logger = logging.getLogger(__name__)

_TURN_TYPES = ("user", "assistant")


def _uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _conversation_dict(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": str(conversation.id),
        "title": conversation.title,
        "metadata": conversation.metadata_,
        "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
        "updated_at": conversation.updated_at.isoformat() if conversation.updated_at else None,
    }


class HistoryStore:
    """Conversation persistence over a pooled async Database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.db.session() as owned:
            yield owned
            await owned.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        async with self._scope(None) as session:
            conversation = Conversation(title=title, metadata_=metadata)
            if conversation_id:
                conversation.id = _uuid(conversation_id)
            session.add(conversation)
            await session.flush()
            await session.refresh(conversation)
            return _conversation_dict(conversation)

    async def ensure_conversation(self, conversation_id: str) -> None:
        """Create the conversation row if it does not exist yet."""
        async with self._scope(None) as session:
            stmt = (
                pg_insert(Conversation)
                .values(id=_uuid(conversation_id))
            )
            result = await session.execute(stmt)
            if result.rowcount:
                logger.info("Created conversation %s", conversation_id)

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        async with self.db.session() as session:
            conversation = await session.get(Conversation, _uuid(conversation_id))
            return _conversation_dict(conversation) if conversation else None

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Conversation)
                .order_by(Conversation.updated_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_conversation_dict(c) for c in result.scalars()]

    async def touch(self, conversation_id: str, session: AsyncSession | None = None) -> None:
        async with self._scope(session) as s:
            await s.execute(
                update(Conversation)
                .where(Conversation.id == _uuid(conversation_id))
                .values(updated_at=func.now())
            )

    # ------------------------------------------------------------------
    # Messages and history
    # ------------------------------------------------------------------

    async def _next_sequence(self, session: AsyncSession, conversation_id: UUID) -> int:
        # Row lock serializes concurrent writers on one conversation
        await session.execute(
            select(Conversation.id).where(Conversation.id == conversation_id).with_for_update()
        )
        result = await session.execute(
            select(func.coalesce(func.max(Message.sequence_number), 0) + 1).where(
                Message.conversation_id == conversation_id
            )
        )
        return int(result.scalar_one())

    async def append_message(
        self,
        conversation_id: str,
        message_type: str,
        content: dict[str, Any],
        session: AsyncSession | None = None,
    ) -> str:
        """Append one message and return its id."""
        cid = _uuid(conversation_id)
        async with self._scope(session) as s:
            message = Message(
                conversation_id=cid,
                type=message_type,
                sequence_number=await self._next_sequence(s, cid),
                content=content,
            )
            s.add(message)
            await s.flush()
            return str(message.id)

    async def append_history_entry(
        self,
        conversation_id: str,
        entry: HistoryEntry,
        session: AsyncSession | None = None,
    ) -> str:
        """Persist one loop history entry under its kind, payload keys unchanged."""
        return await self.append_message(conversation_id, entry.kind.value, entry.payload, session=session)

    async def get_messages(
        self,
        conversation_id: str,
        types: tuple[str, ...] | None = None,
    ) -> list[Message]:
        async with self.db.session() as session:
            stmt = select(Message).where(Message.conversation_id == _uuid(conversation_id))
            if types:
                stmt = stmt.where(Message.type.in_(types))
            result = await session.execute(stmt.order_by(Message.sequence_number))
            return list(result.scalars())

    async def load_history(self, conversation_id: str) -> list[Turn]:
        """Rebuild prior user/assistant turns.

        Raises MalformedHistoryError if a stored turn lacks {"text": str}.
        Assistant turns with empty text carry nothing for the model and are
        left out.
        """
        turns: list[Turn] = []
        for message in await self.get_messages(conversation_id, _TURN_TYPES):
            content = message.content
            text = content.get("text") if isinstance(content, dict) else None
            if not isinstance(text, str):
                raise MalformedHistoryError(str(message.id), "expected { text: string }")
            if not text and message.type == "assistant":
                logger.debug("Skipping empty assistant message %s", message.id)
                continue
            turns.append(Turn(role=message.type, content=text))
        return turns

    async def get_conversation_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        """Every stored message in sequence order; assistant messages carry their features."""
        messages = []
        for message in await self.get_messages(conversation_id):
            features = []
            if message.type == "assistant":
                features = [f.to_dict() for f in await self.list_message_features(str(message.id))]
            messages.append({
                "id": str(message.id),
                "type": message.type,
                "sequence_number": message.sequence_number,
                "content": message.content,
                "timestamp": message.timestamp.isoformat() if message.timestamp else None,
                "geo_features": features,
            })
        return messages

    # ------------------------------------------------------------------
    # Geo features
    # ------------------------------------------------------------------

    def _feature_columns(self):
        return (
            GeoFeatureRow.id,
            GeoFeatureRow.feature_type,
            func.ST_Y(GeoFeatureRow.geometry).label("lat"),
            func.ST_X(GeoFeatureRow.geometry).label("lon"),
            GeoFeatureRow.properties,
        )

    @staticmethod
    def _row_to_feature(row: Any) -> GeoFeature:
        properties = row.properties or {}
        return GeoFeature(
            id=str(row.id),
            kind=row.feature_type,
            latitude=row.lat,
            longitude=row.lon,
            label=properties.get("label") or "Unlabeled",
        )

    async def append_feature(
        self,
        message_id: str,
        feature: GeoFeature,
        session: AsyncSession | None = None,
    ) -> None:
        """Attach a feature to a message. A duplicate id raises IntegrityError."""
        async with self._scope(session) as s:
            stmt = (
                pg_insert(GeoFeatureRow)
                .values(
                    id=_uuid(feature.id),
                    message_id=_uuid(message_id),
                    feature_type=feature.kind,
                    geometry=func.ST_SetSRID(func.ST_MakePoint(feature.longitude, feature.latitude), 4326),
                    properties={"label": feature.label},
                )
            )
            await s.execute(stmt)

    async def list_features(self, conversation_id: str) -> list[GeoFeature]:
        async with self.db.session() as session:
            result = await session.execute(
                select(*self._feature_columns())
                .join(Message, GeoFeatureRow.message_id == Message.id)
                .where(Message.conversation_id == _uuid(conversation_id))
                .order_by(GeoFeatureRow.created_at)
            )
            return [self._row_to_feature(row) for row in result]

    async def list_message_features(self, message_id: str) -> list[GeoFeature]:
        async with self.db.session() as session:
            result = await session.execute(
                select(*self._feature_columns())
                .where(GeoFeatureRow.message_id == _uuid(message_id))
                .order_by(GeoFeatureRow.created_at)
            )
            return [self._row_to_feature(row) for row in result]

    async def find_features_by_label(self, conversation_id: str, query: str) -> list[GeoFeature]:
        """Case-insensitive partial label match scoped to one conversation."""
        async with self.db.session() as session:
            result = await session.execute(
                select(*self._feature_columns())
                .join(Message, GeoFeatureRow.message_id == Message.id)
                .where(Message.conversation_id == _uuid(conversation_id))
                .where(GeoFeatureRow.properties["label"].astext.ilike(f"%{query}%"))
                .order_by(GeoFeatureRow.created_at)
            )
            return [self._row_to_feature(row) for row in result]

    async def delete_feature(self, feature_id: str) -> None:
        async with self._scope(None) as session:
            await session.execute(delete(GeoFeatureRow).where(GeoFeatureRow.id == _uuid(feature_id)))
