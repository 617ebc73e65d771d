"""Dependency graph tools.

Nodes are the external pieces an idea depends on (APIs, SDKs, services).
Connections are addressed by node display name, matched case-insensitively.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from ideaflow.storage.repository import IdeaStore
from ideaflow.tools.router import ToolError, ToolRouter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class PricingInput(BaseModel):
    model: str = Field(default="unknown", description='Pricing or licensing model, e.g. "per-request", "open-source"')
    per_request: str | None = Field(default=None, description="Cost per request, if applicable")
    per_unit: str | None = Field(default=None, description="Cost per unit, if applicable")
    free_quota: str | None = Field(default=None, description="Free tier or license info")
    notes: str | None = Field(default=None, description="Additional pricing notes")

    def to_record(self) -> dict[str, Any]:
        record = {
            "model": self.model,
            "perRequest": self.per_request,
            "perUnit": self.per_unit,
            "freeQuota": self.free_quota,
            "notes": self.notes,
        }
        return {k: v for k, v in record.items() if v is not None}


class CreateNodeInput(BaseModel):
    """Create a dependency node: an API, library, service or other external component the project needs. Include pricing or licensing when known."""

    name: str = Field(description='Display name, e.g. "Stripe Payments"')
    provider: str = Field(description='Provider or source, e.g. "Stripe", "npm"')
    description: str = Field(description="What it does and how the project uses it (2-3 sentences)")
    pricing: PricingInput | None = None
    color: str | None = Field(default=None, description='Hex color, e.g. "#3b82f6"')


class UpdateNodeInput(BaseModel):
    """Update an existing dependency node's details, pricing or color."""

    node_id: str = Field(description="The ID of the node to update")
    name: str | None = None
    provider: str | None = None
    description: str | None = None
    pricing: PricingInput | None = None
    color: str | None = None


class DeleteNodeInput(BaseModel):
    """Delete a dependency node and every connection to or from it."""

    node_id: str = Field(description="The ID of the node to delete")


class ConnectNodesInput(BaseModel):
    """Connect two dependency nodes by name, with the technical details a developer needs to implement the integration."""

    from_node: str = Field(description="Name of the source node")
    to_node: str = Field(description="Name of the target node")
    label: str | None = Field(default=None, description='Short relationship label, e.g. "sends payment"')
    integration_method: str = Field(description='How they connect, e.g. "REST API call", "SDK method invocation"')
    data_flow: str = Field(description="What data travels across the connection")
    protocol: str = Field(description='Wire protocol, e.g. "HTTPS/JSON", "gRPC"')
    sdk_libraries: str | None = Field(default=None, description="Libraries needed to implement it")
    technical_notes: str = Field(description="Implementation guidance for a developer, without code")


class DisconnectNodesInput(BaseModel):
    """Remove the connection between two dependency nodes, by name."""

    from_node: str = Field(description="Name of the source node")
    to_node: str = Field(description="Name of the target node")


class ReadNodesInput(BaseModel):
    """Read all dependency nodes with pricing and their incoming and outgoing connections."""


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_graph_tools(router: ToolRouter, store: IdeaStore) -> None:
    """Register dependency graph tools bound to the store."""

    async def create_node(idea_id: str, args: CreateNodeInput) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "name": args.name,
            "provider": args.provider,
            "description": args.description,
            "pricing": args.pricing.to_record() if args.pricing else None,
        }
        if args.color:
            fields["color"] = args.color
        node = await store.create_node(idea_id, **fields)
        return {
            "message": f"Created dependency node: {node.name}",
            "nodeId": node.id,
            "name": node.name,
            "provider": node.provider,
            "position": {"x": node.position_x, "y": node.position_y},
        }

    async def update_node(idea_id: str, args: UpdateNodeInput) -> dict[str, Any]:
        node = await store.update_node(
            args.node_id,
            name=args.name,
            provider=args.provider,
            description=args.description,
            pricing=args.pricing.to_record() if args.pricing else None,
            color=args.color,
        )
        return {"message": f"Updated dependency node: {node.name}", "nodeId": node.id, "name": node.name}

    async def delete_node(idea_id: str, args: DeleteNodeInput) -> dict[str, Any]:
        node = await store.get_node(args.node_id)
        if node is None:
            raise ToolError(f"Node {args.node_id} not found")
        await store.delete_node(args.node_id)
        return {"message": f"Deleted dependency node: {node.name}"}

    async def connect_nodes(idea_id: str, args: ConnectNodesInput) -> dict[str, Any]:
        from_node = await store.find_node_by_name(idea_id, args.from_node)
        to_node = await store.find_node_by_name(idea_id, args.to_node)
        if from_node is None or to_node is None:
            available = ", ".join(n.name for n in await store.list_nodes(idea_id))
            role, name = ("Source", args.from_node) if from_node is None else ("Target", args.to_node)
            raise ToolError(f'{role} node "{name}" not found. Available nodes: {available}')

        details = {
            "integrationMethod": args.integration_method,
            "dataFlow": args.data_flow,
            "protocol": args.protocol,
            "technicalNotes": args.technical_notes,
        }
        if args.sdk_libraries:
            details["sdkLibraries"] = args.sdk_libraries

        connection = await store.create_connection(idea_id, from_node.id, to_node.id, args.label, details)
        suffix = f" ({args.label})" if args.label else ""
        return {
            "message": f"Connected {from_node.name} -> {to_node.name}{suffix} with integration details",
            "connectionId": connection.id,
            "fromNode": from_node.name,
            "toNode": to_node.name,
            "label": connection.label,
            "integrationMethod": args.integration_method,
            "protocol": args.protocol,
        }

    async def disconnect_nodes(idea_id: str, args: DisconnectNodesInput) -> dict[str, Any]:
        from_node = await store.find_node_by_name(idea_id, args.from_node)
        if from_node is None:
            raise ToolError(f'Source node "{args.from_node}" not found')
        to_node = await store.find_node_by_name(idea_id, args.to_node)
        if to_node is None:
            raise ToolError(f'Target node "{args.to_node}" not found')

        await store.delete_connections_between(from_node.id, to_node.id)
        return {"message": f"Disconnected {from_node.name} from {to_node.name}"}

    async def read_nodes(idea_id: str, args: ReadNodesInput) -> dict[str, Any]:
        nodes = await store.list_nodes(idea_id)
        connections = await store.list_connections(idea_id)
        if not nodes:
            return {
                "message": "No dependency nodes created yet.",
                "nodeCount": 0,
                "connectionCount": 0,
                "nodes": [],
                "connections": [],
            }

        names = {n.id: n.name for n in nodes}
        nodes_info = []
        summary_lines = []
        for node in nodes:
            connects_to = [
                {
                    "nodeId": c.to_node_id,
                    "nodeName": names.get(c.to_node_id, "Unknown"),
                    "connectionDescription": c.label or "connected to",
                }
                for c in connections
                if c.from_node_id == node.id
            ]
            receives_from = [
                {
                    "nodeId": c.from_node_id,
                    "nodeName": names.get(c.from_node_id, "Unknown"),
                    "connectionDescription": c.label or "connected from",
                }
                for c in connections
                if c.to_node_id == node.id
            ]
            nodes_info.append({
                "id": node.id,
                "name": node.name,
                "provider": node.provider,
                "description": node.description,
                "pricing": node.pricing,
                "position": {"x": node.position_x, "y": node.position_y},
                "color": node.color,
                "connectsTo": connects_to,
                "receivesFrom": receives_from,
            })

            parts = []
            if connects_to:
                parts.append("sends to: " + ", ".join(f"{c['connectionDescription']} {c['nodeName']}" for c in connects_to))
            if receives_from:
                parts.append(
                    "receives from: " + ", ".join(f"{c['nodeName']} {c['connectionDescription']}" for c in receives_from)
                )
            links = f" [{' | '.join(parts)}]" if parts else " [no connections]"
            summary_lines.append(f"- {node.name} ({node.provider}): {node.description}{links}")

        return {
            "message": f"Found {len(nodes)} nodes and {len(connections)} connections",
            "summary": "\n".join(summary_lines),
            "nodeCount": len(nodes),
            "connectionCount": len(connections),
            "nodes": nodes_info,
            "connections": [
                {
                    "id": c.id,
                    "from": {"id": c.from_node_id, "name": names.get(c.from_node_id)},
                    "to": {"id": c.to_node_id, "name": names.get(c.to_node_id)},
                    "label": c.label,
                    "details": c.details,
                }
                for c in connections
            ],
        }

    router.register("create_dependency_node", create_node, CreateNodeInput)
    router.register("update_dependency_node", update_node, UpdateNodeInput)
    router.register("delete_dependency_node", delete_node, DeleteNodeInput)
    router.register("connect_dependency_nodes", connect_nodes, ConnectNodesInput)
    router.register("disconnect_dependency_nodes", disconnect_nodes, DisconnectNodesInput)
    router.register("read_dependency_nodes", read_nodes, ReadNodesInput)
