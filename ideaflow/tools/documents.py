"""Note proposal and synthesis tools.

The synthesis is line addressed (1-indexed, inclusive ranges) so the agent
can make targeted edits against the numbered copy in its system prompt.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from ideaflow.storage.repository import IdeaStore
from ideaflow.tools.router import ToolError, ToolRouter

logger = logging.getLogger(__name__)

NoteCategory = Literal["research", "decision", "recommendation", "insight", "warning", "todo"]


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class ProposeNoteInput(BaseModel):
    """Capture a quick thought or insight as a note proposal. The user approves it before it is saved. Only use when the user explicitly asks to save or remember something."""

    title: str = Field(description="A quick label, just enough to know what this is about")
    content: str = Field(description="One or two sentences of plain text, no formatting")
    category: NoteCategory = Field(description="The category of the note")


class ReadNotesInput(BaseModel):
    """Fetch and read all the voice notes for the current idea."""


class UpdateSynthesisInput(BaseModel):
    """Replace the entire synthesis content. Use for major rewrites or the initial synthesis."""

    content: str = Field(description="The new synthesis content, one point per line")


class ModifySynthesisLinesInput(BaseModel):
    """Replace a range of synthesis lines. Line numbers are 1-indexed and inclusive."""

    start_line: int = Field(description="First line to replace (1-indexed)")
    end_line: int = Field(description="Last line to replace (inclusive)")
    new_content: str = Field(description="Replacement content")


class AddToSynthesisInput(BaseModel):
    """Insert content into the synthesis after a given line."""

    after_line: int = Field(description="Insert after this line. Use 0 to insert at the beginning.")
    content: str = Field(description="The content to add")


class RemoveFromSynthesisInput(BaseModel):
    """Remove a range of lines from the synthesis."""

    start_line: int = Field(description="First line to remove (1-indexed)")
    end_line: int = Field(description="Last line to remove (inclusive)")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def number_lines(content: str, width: int = 3) -> str:
    """Prefix each line with its 1-indexed number: '  1 | text'."""
    if not content:
        return ""
    return "\n".join(f"{i:>{width}} | {line}" for i, line in enumerate(content.split("\n"), 1))


def _check_range(start_line: int, end_line: int, total: int, what: str = "Synthesis") -> None:
    if start_line < 1 or end_line > total or start_line > end_line:
        raise ToolError(f"Invalid line range. {what} has {total} lines.")


async def _synthesis_lines(store: IdeaStore, idea_id: str) -> list[str]:
    idea = await store.get_idea(idea_id)
    if idea is None or not idea.synthesis:
        raise ToolError("No synthesis exists to modify.")
    return idea.synthesis.split("\n")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_document_tools(router: ToolRouter, store: IdeaStore) -> None:
    """Register note and synthesis tools bound to the store."""

    async def propose_note(idea_id: str, args: ProposeNoteInput) -> dict[str, Any]:
        proposal = {
            "id": f"proposal-{uuid.uuid4().hex[:12]}",
            "title": args.title,
            "content": args.content,
            "category": args.category,
            "ideaId": idea_id,
        }
        return {
            "type": "note_proposal",
            "proposal": proposal,
            "message": f'Proposed note: "{args.title}". Waiting for user approval.',
        }

    async def read_notes(idea_id: str, args: ReadNotesInput) -> dict[str, Any]:
        notes = await store.list_notes(idea_id)
        if not notes:
            return {"message": "No notes found for this idea.", "notes": []}
        return {
            "count": len(notes),
            "notes": [
                {
                    "index": i,
                    "title": note.title,
                    "content": note.content,
                    "category": note.category,
                    "timestamp": note.created_at.isoformat() if note.created_at else None,
                }
                for i, note in enumerate(notes, 1)
            ],
        }

    async def update_synthesis(idea_id: str, args: UpdateSynthesisInput) -> dict[str, Any]:
        await store.update_synthesis(idea_id, args.content)
        numbered = "\n".join(f"{i}: {line}" for i, line in enumerate(args.content.split("\n"), 1))
        return {
            "message": "Synthesis updated successfully.",
            "lineCount": len(args.content.split("\n")),
            "preview": numbered[:500] + ("..." if len(numbered) > 500 else ""),
        }

    async def modify_synthesis_lines(idea_id: str, args: ModifySynthesisLinesInput) -> dict[str, Any]:
        lines = await _synthesis_lines(store, idea_id)
        _check_range(args.start_line, args.end_line, len(lines))

        new_lines = args.new_content.split("\n")
        lines[args.start_line - 1 : args.end_line] = new_lines
        await store.update_synthesis(idea_id, "\n".join(lines))
        return {
            "message": f"Lines {args.start_line}-{args.end_line} modified successfully.",
            "linesRemoved": args.end_line - args.start_line + 1,
            "linesAdded": len(new_lines),
            "newLineCount": len(lines),
        }

    async def add_to_synthesis(idea_id: str, args: AddToSynthesisInput) -> dict[str, Any]:
        idea = await store.get_idea(idea_id)
        if idea is None or not idea.synthesis:
            await store.update_synthesis(idea_id, args.content)
            return {
                "message": "Created new synthesis with the provided content.",
                "lineCount": len(args.content.split("\n")),
            }

        lines = idea.synthesis.split("\n")
        if args.after_line < 0 or args.after_line > len(lines):
            raise ToolError(f"Invalid position. Synthesis has {len(lines)} lines.")

        new_lines = args.content.split("\n")
        lines[args.after_line : args.after_line] = new_lines
        await store.update_synthesis(idea_id, "\n".join(lines))
        return {
            "message": f"Added {len(new_lines)} lines after line {args.after_line}.",
            "newLineCount": len(lines),
        }

    async def remove_from_synthesis(idea_id: str, args: RemoveFromSynthesisInput) -> dict[str, Any]:
        lines = await _synthesis_lines(store, idea_id)
        _check_range(args.start_line, args.end_line, len(lines))

        removed = args.end_line - args.start_line + 1
        del lines[args.start_line - 1 : args.end_line]
        await store.update_synthesis(idea_id, "\n".join(lines))
        return {
            "message": f"Removed lines {args.start_line}-{args.end_line} ({removed} lines).",
            "newLineCount": len(lines),
        }

    router.register("propose_note", propose_note, ProposeNoteInput)
    router.register("read_notes", read_notes, ReadNotesInput)
    router.register("update_synthesis", update_synthesis, UpdateSynthesisInput)
    router.register("modify_synthesis_lines", modify_synthesis_lines, ModifySynthesisLinesInput)
    router.register("add_to_synthesis", add_to_synthesis, AddToSynthesisInput)
    router.register("remove_from_synthesis", remove_from_synthesis, RemoveFromSynthesisInput)
