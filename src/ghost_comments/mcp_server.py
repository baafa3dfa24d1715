"""MCP server exposing annotation operations as tools.

Tools take JSON input validated by pydantic request models and return JSON
text. Line numbers are 1-indexed at this boundary. Failures are returned as
``{"error": {"code": ..., "message": ...}}`` rather than raised.
"""

import json
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from ghost_comments.anchors import capture_context, find_annotation_at_line
from ghost_comments.config import load_config
from ghost_comments.display import sanitize_input
from ghost_comments.document import TextDocument
from ghost_comments.logging import Logger
from ghost_comments.storage import AnnotationStore, AnnotationTooLongError, MalformedStoreError
from ghost_comments.workspace import WorkspaceResolver, find_project_root

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (FILE_NOT_FOUND, MALFORMED_STORE, etc.)")
    message: str = Field(..., description="Human-readable error message")


class ToolError(Exception):
    """Raised inside a handler to return a structured error."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


# ============================================================================
# Request Models
# ============================================================================


class AddRequest(BaseModel):
    """Request model for ghost_add tool."""

    file: str = Field(..., description="Path to source file (relative or absolute)")
    line: int = Field(..., gt=0, description="Line to annotate (1-indexed)")
    line_end: int | None = Field(
        default=None, gt=0, description="Last line of a multi-line anchor (1-indexed)"
    )
    text: str = Field(..., min_length=1, description="Annotation text")
    author: str = Field(default="agent", min_length=1, description="Author name")


class ListRequest(BaseModel):
    """Request model for ghost_list tool."""

    file: str | None = Field(default=None, description="Source file (omit for all files)")


class RemoveRequest(BaseModel):
    """Request model for ghost_remove tool."""

    file: str = Field(..., description="Path to source file")
    line: int = Field(..., gt=0, description="Line whose annotation to delete (1-indexed)")


class SyncRequest(BaseModel):
    """Request model for ghost_sync tool."""

    file: str = Field(..., description="Path to source file")


class RenameRequest(BaseModel):
    """Request model for ghost_rename tool."""

    old_file: str = Field(..., description="Previous path of the file")
    new_file: str = Field(..., description="New path of the file")


# ============================================================================
# Store access
# ============================================================================

# One store per workspace so its locks outlive individual tool calls
_stores: dict[Path, AnnotationStore] = {}


def get_store(workspace: Path) -> AnnotationStore:
    """Return the shared store for ``workspace``, creating it on first use."""
    workspace = workspace.resolve()
    store = _stores.get(workspace)
    if store is None:
        store = AnnotationStore(
            load_config(workspace), WorkspaceResolver([workspace]), logger=Logger()
        )
        _stores[workspace] = store
    return store


def _workspace() -> Path:
    cwd = Path.cwd()
    try:
        return find_project_root(cwd)
    except ValueError:
        return cwd


def _resolve_file(store: AnnotationStore, raw: str, must_exist: bool = True) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = Path.cwd() / path
    if store.resolver.relative_path(path) is None:
        raise ToolError("OUTSIDE_WORKSPACE", f"Path is outside the workspace: {path}")
    if must_exist and not path.is_file():
        raise ToolError("FILE_NOT_FOUND", f"Source file not found: {path}")
    return path


def _read_document(path: Path) -> TextDocument:
    try:
        return TextDocument.from_file(path)
    except ValueError as e:
        raise ToolError("INVALID_FILE", str(e))


def _ok(payload: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, ensure_ascii=False))]


def _error(code: str, message: str) -> list[TextContent]:
    error = ErrorResponse(code=code, message=message)
    return _ok({"error": error.model_dump()})


# ============================================================================
# MCP Server
# ============================================================================


mcp = Server("ghost-comments")


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        Tool(
            name="ghost_add",
            description="Add or replace the annotation on a line of a source file",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": {"type": "string", "description": "Path to source file"},
                    "line": {"type": "integer", "minimum": 1, "description": "Line (1-indexed)"},
                    "line_end": {
                        "type": "integer",
                        "minimum": 1,
                        "description": "Last line of a multi-line anchor (optional)",
                    },
                    "text": {"type": "string", "minLength": 1, "description": "Annotation text"},
                    "author": {"type": "string", "default": "agent"},
                },
                "required": ["file", "line", "text"],
            },
        ),
        Tool(
            name="ghost_list",
            description="List annotations at their current lines, flagging broken anchors",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": {"type": "string", "description": "Source file (omit for all files)"},
                },
                "required": [],
            },
        ),
        Tool(
            name="ghost_remove",
            description="Delete the annotation shown on a line",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": {"type": "string"},
                    "line": {"type": "integer", "minimum": 1},
                },
                "required": ["file", "line"],
            },
        ),
        Tool(
            name="ghost_sync",
            description="Rewrite stored line numbers of a file's annotations after edits",
            inputSchema={
                "type": "object",
                "properties": {"file": {"type": "string"}},
                "required": ["file"],
            },
        ),
        Tool(
            name="ghost_rename",
            description="Move a file's annotations to its new path after a rename",
            inputSchema={
                "type": "object",
                "properties": {
                    "old_file": {"type": "string"},
                    "new_file": {"type": "string"},
                },
                "required": ["old_file", "new_file"],
            },
        ),
    ]


@mcp.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle MCP tool calls."""
    handlers = {
        "ghost_add": handle_add,
        "ghost_list": handle_list,
        "ghost_remove": handle_remove,
        "ghost_sync": handle_sync,
        "ghost_rename": handle_rename,
    }
    handler = handlers.get(name)
    if handler is None:
        return _error("UNKNOWN_TOOL", f"Unknown tool: {name}")
    try:
        return await handler(arguments or {})
    except Exception as e:
        # Catch-all for unexpected errors
        return _error("INTERNAL_ERROR", str(e))


async def _run(request_model: type[BaseModel], arguments: Any, body) -> list[TextContent]:
    try:
        req = request_model(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        return await body(req, get_store(_workspace()))
    except ToolError as e:
        return _error(e.code, str(e))
    except MalformedStoreError as e:
        return _error("MALFORMED_STORE", str(e))
    except AnnotationTooLongError as e:
        return _error("VALIDATION_ERROR", str(e))


async def handle_add(arguments: Any) -> list[TextContent]:
    """Handle ghost_add tool call."""

    async def body(req: AddRequest, store: AnnotationStore) -> list[TextContent]:
        path = _resolve_file(store, req.file)
        document = _read_document(path)
        line_end = req.line_end or req.line
        if line_end < req.line or line_end > document.line_count:
            raise ToolError(
                "INVALID_LINE",
                f"Invalid line range {req.line}:{line_end} "
                f"(file has {document.line_count} lines)",
            )

        target = req.line - 1
        selection = document.get_text(target, line_end - 1) if req.line_end else None
        context = capture_context(document, target, selection)
        text = sanitize_input(req.text)
        if not text:
            raise ToolError("VALIDATION_ERROR", "Annotation text is empty after sanitizing")

        existing = await store.annotations_for(path)
        found = find_annotation_at_line(document, existing, target, store.config.search_range)
        await store.save(
            path,
            target,
            text,
            sanitize_input(req.author),
            context,
            previous_line=found[0] if found else None,
        )
        return _ok(
            {
                "file": store.resolver.relative_path(path),
                "line": req.line,
                "context": context,
                "replaced": found is not None,
            }
        )

    return await _run(AddRequest, arguments, body)


async def handle_list(arguments: Any) -> list[TextContent]:
    """Handle ghost_list tool call."""

    async def body(req: ListRequest, store: AnnotationStore) -> list[TextContent]:
        workspace = store.resolver.roots[0]
        data = await store.load(workspace)
        if req.file is not None:
            relative = store.resolver.relative_path(_resolve_file(store, req.file, must_exist=False))
            data = {relative: data[relative]} if relative in data else {}

        files = []
        for relative_path in sorted(data):
            source = workspace / relative_path
            entries = []
            if source.is_file():
                for item in await store.anchored_annotations(_read_document(source)):
                    entries.append((item.line, item.original_line, item.is_match, item.annotation))
            else:
                for line in sorted(data[relative_path]):
                    entries.append((line, line, True, data[relative_path][line]))

            files.append(
                {
                    "file": relative_path,
                    "missing": not source.is_file(),
                    "annotations": [
                        {
                            "line": line + 1,
                            "stored_line": original + 1,
                            "broken": not is_match,
                            **annotation.to_json(),
                        }
                        for line, original, is_match, annotation in entries
                    ],
                }
            )
        return _ok({"files": files})

    return await _run(ListRequest, arguments, body)


async def handle_remove(arguments: Any) -> list[TextContent]:
    """Handle ghost_remove tool call."""

    async def body(req: RemoveRequest, store: AnnotationStore) -> list[TextContent]:
        path = _resolve_file(store, req.file)
        document = _read_document(path)
        existing = await store.annotations_for(path)
        found = find_annotation_at_line(document, existing, req.line - 1, store.config.search_range)
        if found is None:
            raise ToolError("NOT_FOUND", f"No annotation on line {req.line} of {req.file}")
        removed = await store.delete(path, found[0])
        return _ok({"file": store.resolver.relative_path(path), "line": req.line, "removed": removed})

    return await _run(RemoveRequest, arguments, body)


async def handle_sync(arguments: Any) -> list[TextContent]:
    """Handle ghost_sync tool call."""

    async def body(req: SyncRequest, store: AnnotationStore) -> list[TextContent]:
        path = _resolve_file(store, req.file)
        report = await store.reconcile_report(_read_document(path))
        return _ok(
            {
                "file": store.resolver.relative_path(path),
                "changed": bool(report and report.changed),
                "report": report.model_dump() if report else None,
            }
        )

    return await _run(SyncRequest, arguments, body)


async def handle_rename(arguments: Any) -> list[TextContent]:
    """Handle ghost_rename tool call."""

    async def body(req: RenameRequest, store: AnnotationStore) -> list[TextContent]:
        old_path = _resolve_file(store, req.old_file, must_exist=False)
        new_path = _resolve_file(store, req.new_file, must_exist=False)
        moved = await store.rename(old_path, new_path)
        return _ok(
            {
                "old_file": store.resolver.relative_path(old_path),
                "new_file": store.resolver.relative_path(new_path),
                "moved": moved,
            }
        )

    return await _run(RenameRequest, arguments, body)


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(read_stream, write_stream, mcp.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run_server()
