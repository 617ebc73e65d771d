"""Generated application file tools (the live preview project)."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from ideaflow.storage.repository import IdeaStore
from ideaflow.tools.documents import number_lines
from ideaflow.tools.router import ToolError, ToolRouter

logger = logging.getLogger(__name__)

ALLOWED_FILE_TYPES = ("tsx", "ts", "css")
MAX_FILE_SIZE = 1024 * 1024
MAX_PATH_LENGTH = 255

_INVALID_PATH_PATTERNS = [
    re.compile(r"\.\."),  # parent traversal
    re.compile(r"^/"),  # absolute
    re.compile(r"^[A-Za-z]:\\"),  # windows absolute
    re.compile(r"[\x00-\x1f]"),  # control characters
]


def validate_file_path(file_path: str) -> str:
    """Check the path and return its file type."""
    if not file_path:
        raise ToolError("File path is required")
    if len(file_path) > MAX_PATH_LENGTH:
        raise ToolError(f"File path exceeds maximum length of {MAX_PATH_LENGTH} characters")
    for pattern in _INVALID_PATH_PATTERNS:
        if pattern.search(file_path):
            raise ToolError(f"Invalid file path: {file_path}")

    extension = file_path.rsplit(".", 1)[-1].lower() if "." in file_path else ""
    if extension not in ALLOWED_FILE_TYPES:
        raise ToolError(f"Invalid file type. Allowed types: {', '.join(ALLOWED_FILE_TYPES)}")
    return extension


def _check_size(content: str) -> None:
    if len(content.encode("utf-8")) > MAX_FILE_SIZE:
        raise ToolError(f"File content exceeds maximum size of {MAX_FILE_SIZE // (1024 * 1024)}MB")


def _line_count(content: str) -> int:
    return len(content.split("\n"))


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class CreateFileInput(BaseModel):
    """Create a new .tsx or .ts file in the project. The first .tsx file becomes the preview entry file unless told otherwise. Use Tailwind classes instead of CSS files."""

    file_path: str = Field(description='Path relative to the project root, e.g. "App.tsx"')
    content: str = Field(description="The file content. TSX files export a default React component.")
    is_entry_file: bool | None = Field(default=None, description="Render this file in the live preview")


class FilePathInput(BaseModel):
    file_path: str = Field(description="The file path")


class UpdateFileInput(BaseModel):
    """Replace the entire content of an existing file."""

    file_path: str = Field(description="The file path to update")
    content: str = Field(description="The new file content")


class ModifyFileLinesInput(BaseModel):
    """Replace a range of lines in a file. Line numbers are 1-indexed and inclusive."""

    file_path: str = Field(description="The file path to modify")
    start_line: int = Field(description="First line to replace (1-indexed)")
    end_line: int = Field(description="Last line to replace (inclusive)")
    new_content: str = Field(description="Replacement content")


class ListFilesInput(BaseModel):
    """List all files in the project with their types and the entry file."""


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_file_tools(router: ToolRouter, store: IdeaStore) -> None:
    """Register project file tools bound to the store."""

    async def create_file(idea_id: str, args: CreateFileInput) -> dict[str, Any]:
        file_type = validate_file_path(args.file_path)
        _check_size(args.content)
        if await store.get_file(idea_id, args.file_path) is not None:
            raise ToolError(f"File already exists: {args.file_path}. Use update_file to modify it.")

        if args.is_entry_file is None:
            is_entry = file_type == "tsx" and await store.get_entry_file(idea_id) is None
        else:
            is_entry = args.is_entry_file

        file = await store.create_file(idea_id, args.file_path, args.content, file_type, is_entry)
        return {
            "message": f"File created: {args.file_path}",
            "filePath": file.file_path,
            "fileType": file.file_type,
            "isEntryFile": file.is_entry_file,
            "lineCount": _line_count(args.content),
        }

    async def read_file(idea_id: str, args: FilePathInput) -> dict[str, Any]:
        file = await store.get_file(idea_id, args.file_path)
        if file is None:
            raise ToolError(f"File not found: {args.file_path}")
        return {
            "filePath": file.file_path,
            "fileType": file.file_type,
            "isEntryFile": file.is_entry_file,
            "lineCount": _line_count(file.content),
            "content": number_lines(file.content, width=4),
        }

    async def update_file(idea_id: str, args: UpdateFileInput) -> dict[str, Any]:
        _check_size(args.content)
        file = await store.update_file(idea_id, args.file_path, args.content)
        return {
            "message": f"File updated: {args.file_path}",
            "filePath": file.file_path,
            "lineCount": _line_count(args.content),
        }

    async def modify_file_lines(idea_id: str, args: ModifyFileLinesInput) -> dict[str, Any]:
        file = await store.get_file(idea_id, args.file_path)
        if file is None:
            raise ToolError(f"File not found: {args.file_path}")

        lines = file.content.split("\n")
        if args.start_line < 1 or args.end_line > len(lines) or args.start_line > args.end_line:
            raise ToolError(f"Invalid line range. File has {len(lines)} lines.")

        new_lines = args.new_content.split("\n")
        lines[args.start_line - 1 : args.end_line] = new_lines
        content = "\n".join(lines)
        _check_size(content)
        await store.update_file(idea_id, args.file_path, content)
        return {
            "message": f"Lines {args.start_line}-{args.end_line} modified in {args.file_path}",
            "filePath": args.file_path,
            "linesRemoved": args.end_line - args.start_line + 1,
            "linesAdded": len(new_lines),
            "newLineCount": len(lines),
        }

    async def delete_file(idea_id: str, args: FilePathInput) -> dict[str, Any]:
        await store.delete_file(idea_id, args.file_path)
        return {"message": f"File deleted: {args.file_path}"}

    async def list_files(idea_id: str, args: ListFilesInput) -> dict[str, Any]:
        files = await store.list_files(idea_id)
        if not files:
            return {"message": "No files in project yet.", "files": []}
        return {
            "count": len(files),
            "files": [
                {
                    "filePath": f.file_path,
                    "fileType": f.file_type,
                    "isEntryFile": f.is_entry_file,
                    "lineCount": _line_count(f.content),
                }
                for f in files
            ],
        }

    async def set_entry_file(idea_id: str, args: FilePathInput) -> dict[str, Any]:
        file = await store.set_entry_file(idea_id, args.file_path)
        return {"message": f"Entry file set to: {args.file_path}", "filePath": file.file_path}

    router.register("create_file", create_file, CreateFileInput)
    router.register(
        "read_file", read_file, FilePathInput,
        "Read a project file. Returns the content with line numbers for reference when modifying.",
    )
    router.register("update_file", update_file, UpdateFileInput)
    router.register("modify_file_lines", modify_file_lines, ModifyFileLinesInput)
    router.register("delete_file", delete_file, FilePathInput, "Delete a file from the project.")
    router.register("list_files", list_files, ListFilesInput)
    router.register(
        "set_entry_file", set_entry_file, FilePathInput,
        "Set which file is rendered as the entry point of the live preview.",
    )
