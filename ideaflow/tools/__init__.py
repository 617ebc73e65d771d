"""Agent tools for idea workspaces.

Public API: ToolRouter plus build_router, which registers every tool family.
"""

import httpx

from ideaflow.config import Settings
from ideaflow.storage.repository import IdeaStore
from ideaflow.storage.snapshots import SnapshotService
from ideaflow.tools.documents import register_document_tools
from ideaflow.tools.files import register_file_tools
from ideaflow.tools.graph import register_graph_tools
from ideaflow.tools.research import register_research_tools
from ideaflow.tools.router import ToolError, ToolOutcome, ToolRouter
from ideaflow.tools.versions import register_version_tools


def build_router(
    settings: Settings,
    store: IdeaStore,
    http_client: httpx.AsyncClient,
    snapshots: SnapshotService | None = None,
) -> ToolRouter:
    """Create a router with every tool family registered."""
    router = ToolRouter()
    register_document_tools(router, store)
    register_file_tools(router, store)
    register_graph_tools(router, store)
    register_research_tools(router, settings, http_client)
    if snapshots is None and store is not None:
        snapshots = SnapshotService(store.db)
    if snapshots is not None:
        register_version_tools(router, snapshots)
    return router


__all__ = [
    "ToolError",
    "ToolOutcome",
    "ToolRouter",
    "build_router",
]
