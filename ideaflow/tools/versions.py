"""Version snapshot tools: let the agent look back at earlier states of an idea."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from ideaflow.storage.snapshots import SnapshotService
from ideaflow.tools.router import ToolError, ToolRouter


class ListSnapshotsInput(BaseModel):
    """List all version snapshots for this idea, newest first."""


class ReadSnapshotInput(BaseModel):
    """Read data from a past version snapshot."""

    version_number: int = Field(ge=1, description="Snapshot version to read")
    scope: Literal["all", "synthesis", "app", "dependencies"] = Field(
        default="all",
        description='"synthesis" for the document, "app" for generated files, "dependencies" for the graph',
    )


def register_version_tools(router: ToolRouter, snapshots: SnapshotService) -> None:
    async def list_snapshots(idea_id: str, args: ListSnapshotsInput) -> dict[str, Any]:
        items = await snapshots.list_snapshots(idea_id)
        if not items:
            return {"message": "No version snapshots yet.", "snapshots": []}
        return {
            "count": len(items),
            "snapshots": [
                {
                    "versionNumber": s.version,
                    "toolsUsed": s.tools_used,
                    "fileCount": len(s.files or []),
                    "nodeCount": len(s.nodes or []),
                    "createdAt": s.created_at.isoformat() if s.created_at else None,
                }
                for s in items
            ],
        }

    async def read_snapshot(idea_id: str, args: ReadSnapshotInput) -> dict[str, Any]:
        snapshot = await snapshots.get_snapshot(idea_id, args.version_number)
        if snapshot is None:
            raise ToolError(f"Snapshot version {args.version_number} not found")

        data: dict[str, Any] = {"versionNumber": snapshot.version, "scope": args.scope}
        if args.scope in ("all", "synthesis"):
            data["synthesis"] = snapshot.synthesis or ""
        if args.scope in ("all", "app"):
            data["files"] = snapshot.files or []
        if args.scope in ("all", "dependencies"):
            data["nodes"] = snapshot.nodes or []
            data["connections"] = snapshot.connections or []
        return data

    router.register("list_version_snapshots", list_snapshots, ListSnapshotsInput)
    router.register("read_version_snapshot", read_snapshot, ReadSnapshotInput)
