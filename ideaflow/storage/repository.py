"""Idea workspace store -- ideas, notes, synthesis, files, dependency graph.

Every method opens its own session and commits before returning, so
results are detached plain ORM instances (expire_on_commit=False).
Missing records raise LookupError with a message fit to show the agent.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, or_, select, update

from ideaflow.storage.database import Database
from ideaflow.storage.models import (
    DependencyConnection,
    DependencyNode,
    ExchangeEvent,
    Idea,
    Note,
    ProjectFile,
)

logger = logging.getLogger(__name__)


class IdeaStore:
    """Record store for idea workspaces. Also persists agent session ids."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Ideas
    # ------------------------------------------------------------------

    async def create_idea(self, title: str, synthesis: str | None = None) -> Idea:
        async with self.db.session() as session:
            idea = Idea(title=title, synthesis=synthesis)
            session.add(idea)
            await session.commit()
            logger.info("Created idea %s: %s", idea.id, title)
            return idea

    async def get_idea(self, idea_id: str) -> Idea | None:
        async with self.db.session() as session:
            return await session.get(Idea, idea_id)

    async def require_idea(self, idea_id: str) -> Idea:
        idea = await self.get_idea(idea_id)
        if idea is None:
            raise LookupError(f"Idea {idea_id} not found")
        return idea

    async def update_synthesis(self, idea_id: str, content: str) -> Idea:
        """Replace the synthesis and bump its version."""
        async with self.db.session() as session:
            idea = await session.get(Idea, idea_id)
            if idea is None:
                raise LookupError(f"Idea {idea_id} not found")
            idea.synthesis = content
            idea.synthesis_version = (idea.synthesis_version or 0) + 1
            await session.commit()
            return idea

    # SessionStore

    async def get_session_id(self, conversation_id: str) -> str | None:
        idea = await self.get_idea(conversation_id)
        return idea.agent_session_id if idea else None

    async def set_session_id(self, conversation_id: str, session_id: str | None) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(Idea).where(Idea.id == conversation_id).values(agent_session_id=session_id)
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def add_note(
        self,
        idea_id: str,
        content: str,
        title: str | None = None,
        category: str | None = None,
    ) -> Note:
        async with self.db.session() as session:
            note = Note(idea_id=idea_id, content=content, title=title, category=category)
            session.add(note)
            await session.commit()
            return note

    async def list_notes(self, idea_id: str) -> list[Note]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Note).where(Note.idea_id == idea_id).order_by(Note.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Project files
    # ------------------------------------------------------------------

    async def list_files(self, idea_id: str) -> list[ProjectFile]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.idea_id == idea_id).order_by(ProjectFile.file_path)
            )
            return list(result.scalars().all())

    async def get_file(self, idea_id: str, file_path: str) -> ProjectFile | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.idea_id == idea_id, ProjectFile.file_path == file_path)
            )
            return result.scalar_one_or_none()

    async def get_entry_file(self, idea_id: str) -> ProjectFile | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.idea_id == idea_id, ProjectFile.is_entry_file.is_(True))
            )
            return result.scalars().first()

    async def create_file(
        self,
        idea_id: str,
        file_path: str,
        content: str,
        file_type: str,
        is_entry_file: bool = False,
    ) -> ProjectFile:
        async with self.db.session() as session:
            if is_entry_file:
                await self._clear_entry(session, idea_id)
            file = ProjectFile(
                idea_id=idea_id,
                file_path=file_path,
                content=content,
                file_type=file_type,
                is_entry_file=is_entry_file,
            )
            session.add(file)
            if is_entry_file:
                await session.execute(update(Idea).where(Idea.id == idea_id).values(entry_file=file_path))
            await session.commit()
            return file

    async def update_file(self, idea_id: str, file_path: str, content: str) -> ProjectFile:
        async with self.db.session() as session:
            file = await self._require_file(session, idea_id, file_path)
            file.content = content
            await session.commit()
            return file

    async def delete_file(self, idea_id: str, file_path: str) -> None:
        async with self.db.session() as session:
            file = await self._require_file(session, idea_id, file_path)
            if file.is_entry_file:
                await session.execute(update(Idea).where(Idea.id == idea_id).values(entry_file=None))
            await session.delete(file)
            await session.commit()

    async def set_entry_file(self, idea_id: str, file_path: str) -> ProjectFile:
        async with self.db.session() as session:
            file = await self._require_file(session, idea_id, file_path)
            await self._clear_entry(session, idea_id)
            file.is_entry_file = True
            await session.execute(update(Idea).where(Idea.id == idea_id).values(entry_file=file_path))
            await session.commit()
            return file

    async def _require_file(self, session: Any, idea_id: str, file_path: str) -> ProjectFile:
        result = await session.execute(
            select(ProjectFile).where(ProjectFile.idea_id == idea_id, ProjectFile.file_path == file_path)
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise LookupError(f"File not found: {file_path}")
        return file

    async def _clear_entry(self, session: Any, idea_id: str) -> None:
        await session.execute(
            update(ProjectFile).where(ProjectFile.idea_id == idea_id).values(is_entry_file=False)
        )

    # ------------------------------------------------------------------
    # Dependency graph
    # ------------------------------------------------------------------

    async def list_nodes(self, idea_id: str) -> list[DependencyNode]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DependencyNode).where(DependencyNode.idea_id == idea_id).order_by(DependencyNode.created_at)
            )
            return list(result.scalars().all())

    async def list_connections(self, idea_id: str) -> list[DependencyConnection]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DependencyConnection)
                .where(DependencyConnection.idea_id == idea_id)
                .order_by(DependencyConnection.created_at)
            )
            return list(result.scalars().all())

    async def get_node(self, node_id: str) -> DependencyNode | None:
        async with self.db.session() as session:
            return await session.get(DependencyNode, node_id)

    async def find_node_by_name(self, idea_id: str, name: str) -> DependencyNode | None:
        """Case-insensitive lookup by display name."""
        async with self.db.session() as session:
            result = await session.execute(
                select(DependencyNode).where(
                    DependencyNode.idea_id == idea_id,
                    func.lower(DependencyNode.name) == name.lower(),
                )
            )
            return result.scalars().first()

    async def create_node(self, idea_id: str, **fields: Any) -> DependencyNode:
        async with self.db.session() as session:
            node = DependencyNode(idea_id=idea_id, **fields)
            session.add(node)
            await session.commit()
            return node

    async def update_node(self, node_id: str, **fields: Any) -> DependencyNode:
        """Apply the non-None fields."""
        async with self.db.session() as session:
            node = await session.get(DependencyNode, node_id)
            if node is None:
                raise LookupError(f"Node {node_id} not found")
            for key, value in fields.items():
                if value is not None:
                    setattr(node, key, value)
            await session.commit()
            return node

    async def delete_node(self, node_id: str) -> None:
        """Delete the node and every connection touching it."""
        async with self.db.session() as session:
            await session.execute(
                delete(DependencyConnection).where(
                    or_(
                        DependencyConnection.from_node_id == node_id,
                        DependencyConnection.to_node_id == node_id,
                    )
                )
            )
            await session.execute(delete(DependencyNode).where(DependencyNode.id == node_id))
            await session.commit()

    async def create_connection(
        self,
        idea_id: str,
        from_node_id: str,
        to_node_id: str,
        label: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> DependencyConnection:
        async with self.db.session() as session:
            connection = DependencyConnection(
                idea_id=idea_id,
                from_node_id=from_node_id,
                to_node_id=to_node_id,
                label=label,
                details=details,
            )
            session.add(connection)
            await session.commit()
            return connection

    async def delete_connections_between(self, from_node_id: str, to_node_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(DependencyConnection).where(
                    DependencyConnection.from_node_id == from_node_id,
                    DependencyConnection.to_node_id == to_node_id,
                )
            )
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    async def record_event(self, conversation_id: str, event_type: str, data: dict[str, Any]) -> None:
        async with self.db.session() as session:
            session.add(ExchangeEvent(conversation_id=conversation_id, event_type=event_type, data=data))
            await session.commit()

    async def list_events(self, conversation_id: str) -> list[ExchangeEvent]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ExchangeEvent)
                .where(ExchangeEvent.conversation_id == conversation_id)
                .order_by(ExchangeEvent.created_at)
            )
            return list(result.scalars().all())
