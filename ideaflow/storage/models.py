"""SQLAlchemy ORM models for the idea workspace tables.

Column types stay portable (JSON, String, Text) so the same models run on
PostgreSQL in production and in-memory SQLite under test.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Idea(Base):
    __tablename__ = "ideas"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    synthesis: Mapped[str | None] = mapped_column(Text)
    synthesis_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entry_file: Mapped[str | None] = mapped_column(String(500))
    # Resumable agent runtime session; cleared after a non-recoverable crash
    agent_session_id: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    notes: Mapped[list["Note"]] = relationship(back_populates="idea", cascade="all, delete-orphan")
    files: Mapped[list["ProjectFile"]] = relationship(back_populates="idea", cascade="all, delete-orphan")


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    idea_id: Mapped[str] = mapped_column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    idea: Mapped["Idea"] = relationship(back_populates="notes")


class ProjectFile(Base):
    __tablename__ = "project_files"
    __table_args__ = (UniqueConstraint("idea_id", "file_path", name="uq_project_file_path"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    idea_id: Mapped[str] = mapped_column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_entry_file: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    idea: Mapped["Idea"] = relationship(back_populates="files")


class DependencyNode(Base):
    """External service the idea depends on (API, SDK, hosted model)."""

    __tablename__ = "dependency_nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    idea_id: Mapped[str] = mapped_column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    pricing: Mapped[dict | None] = mapped_column(JSON)
    position_x: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position_y: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[str | None] = mapped_column(String(20), default="#3b82f6")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class DependencyConnection(Base):
    __tablename__ = "dependency_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    idea_id: Mapped[str] = mapped_column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    from_node_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("dependency_nodes.id", ondelete="CASCADE"), nullable=False
    )
    to_node_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("dependency_nodes.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str | None] = mapped_column(String(200))
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Snapshot(Base):
    """Versioned capture of an idea after a completed exchange."""

    __tablename__ = "snapshots"
    __table_args__ = (UniqueConstraint("idea_id", "version", name="uq_snapshot_version"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    idea_id: Mapped[str] = mapped_column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    synthesis: Mapped[str | None] = mapped_column(Text)
    files: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    connections: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tools_used: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class ExchangeEvent(Base):
    """Audit trail of exchange lifecycle events published on the bus."""

    __tablename__ = "exchange_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
