"""SQLAlchemy ORM models for persisted conversation state."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on Postgres, plain JSON elsewhere (sqlite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class ConversationSnapshot(Base):
    __tablename__ = "conversation_snapshots"

    session_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    branch_id: Mapped[str | None] = mapped_column(String(200))
    messages: Mapped[list] = mapped_column(JSONType, nullable=False)
    system_blocks: Mapped[list] = mapped_column(JSONType, nullable=False)
    token_usage: Mapped[dict] = mapped_column(JSONType, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
