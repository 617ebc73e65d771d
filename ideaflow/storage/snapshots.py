"""Versioned snapshots of an idea, taken after each completed exchange."""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from ideaflow.storage.database import Database
from ideaflow.storage.models import (
    DependencyConnection,
    DependencyNode,
    Idea,
    ProjectFile,
    Snapshot,
)

logger = logging.getLogger(__name__)


class SnapshotService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def latest_version(self, idea_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.max(Snapshot.version)).where(Snapshot.idea_id == idea_id)
            )
            return result.scalar() or 0

    async def create_snapshot(self, conversation_id: str, tool_names: list[str]) -> str:
        """Capture synthesis, files and graph under the next version number.

        Returns the snapshot id.
        """
        async with self.db.session() as session:
            idea = await session.get(Idea, conversation_id)
            if idea is None:
                raise LookupError(f"Idea {conversation_id} not found")

            files = (
                await session.execute(select(ProjectFile).where(ProjectFile.idea_id == conversation_id))
            ).scalars().all()
            nodes = (
                await session.execute(select(DependencyNode).where(DependencyNode.idea_id == conversation_id))
            ).scalars().all()
            connections = (
                await session.execute(
                    select(DependencyConnection).where(DependencyConnection.idea_id == conversation_id)
                )
            ).scalars().all()
            version = (
                await session.execute(
                    select(func.max(Snapshot.version)).where(Snapshot.idea_id == conversation_id)
                )
            ).scalar() or 0

            snapshot = Snapshot(
                idea_id=conversation_id,
                version=version + 1,
                synthesis=idea.synthesis,
                files=[
                    {"filePath": f.file_path, "content": f.content, "isEntryFile": f.is_entry_file}
                    for f in files
                ],
                nodes=[
                    {
                        "id": n.id,
                        "name": n.name,
                        "provider": n.provider,
                        "description": n.description,
                        "pricing": n.pricing,
                        "positionX": n.position_x,
                        "positionY": n.position_y,
                        "color": n.color,
                    }
                    for n in nodes
                ],
                connections=[
                    {
                        "id": c.id,
                        "fromNodeId": c.from_node_id,
                        "toNodeId": c.to_node_id,
                        "label": c.label,
                        "details": c.details,
                    }
                    for c in connections
                ],
                tools_used=list(tool_names),
            )
            session.add(snapshot)
            await session.commit()

            logger.info(
                "Created snapshot v%d for %s (files=%d, nodes=%d, connections=%d)",
                snapshot.version,
                conversation_id,
                len(files),
                len(nodes),
                len(connections),
            )
            return snapshot.id

    async def list_snapshots(self, idea_id: str) -> list[Snapshot]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Snapshot).where(Snapshot.idea_id == idea_id).order_by(Snapshot.version.desc())
            )
            return list(result.scalars().all())

    async def get_snapshot(self, idea_id: str, version: int) -> Snapshot | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(Snapshot).where(Snapshot.idea_id == idea_id, Snapshot.version == version)
            )
            return result.scalar_one_or_none()
