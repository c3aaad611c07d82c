"""SQLAlchemy ORM models for conversations, messages and geo features."""

import uuid
from datetime import datetime

from geoalchemy2 import Geometry
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MESSAGE_TYPES = (
    "user",
    "assistant",
    "user_prompt",
    "llm_response",
    "tool_call",
    "tool_result",
    "tool_error",
)


class Base(DeclarativeBase):
    pass


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    title: Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", order_by="Message.sequence_number"
    )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "type IN ('user', 'assistant', 'user_prompt', 'llm_response', "
            "'tool_call', 'tool_result', 'tool_error')",
            name="ck_messages_type",
        ),
        UniqueConstraint("conversation_id", "sequence_number", name="uq_messages_conversation_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    content: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")
    geo_features: Mapped[list["GeoFeatureRow"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )


class GeoFeatureRow(Base):
    __tablename__ = "geo_features"
    __table_args__ = (Index("ix_geo_features_message_id", "message_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    feature_type: Mapped[str] = mapped_column(String(50), nullable=False, server_default="marker")
    geometry = mapped_column(Geometry(geometry_type="POINT", srid=4326, spatial_index=True), nullable=False)
    properties: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    message: Mapped["Message"] = relationship(back_populates="geo_features")
