"""File tools confined to the context's project directory.

Every path argument is resolved (symlinks included) and must stay under
the resolved project root; anything else is rejected before touching disk.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import fnmatch
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from switchboard.errors import ToolExecutionError
from switchboard.request import Permission
from switchboard.tools.registry import ToolCategory, ToolDefinition, ToolResult, object_schema

if TYPE_CHECKING:
    from switchboard.models import ToolCall
    from switchboard.request import ExecutionContext

logger = logging.getLogger(__name__)

_MAX_SEARCH_RESULTS = 500


def project_root(context: ExecutionContext) -> Path | None:
    if not context.project_dir:
        return None
    root = Path(context.project_dir).expanduser().resolve()
    return root if root.is_dir() else None


def _require_root(context: ExecutionContext) -> Path:
    root = project_root(context)
    if root is None:
        raise ToolExecutionError("Project directory is not set or does not exist")
    return root


def resolve_in_project(context: ExecutionContext, relative: str | None) -> Path:
    """Resolve *relative* under the project root or raise ``ToolExecutionError``."""
    root = _require_root(context)
    target = (root / (relative or ".")).resolve()
    if not target.is_relative_to(root):
        raise ToolExecutionError(
            f"Path escapes the project directory: {relative}",
            hint="Use a path relative to the project root.",
        )
    return target


class _FileTool(ABC):
    """Common base: permission set and the project-root compatibility rule."""

    permissions: frozenset[Permission] = frozenset({Permission.FILE_READ})

    @property
    def required_permissions(self) -> frozenset[Permission]:
        return self.permissions

    def is_compatible_with(self, context: ExecutionContext) -> bool:
        return project_root(context) is not None

    def execute(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        args = call.parsed_arguments()
        return ToolResult.ok(call.id, self.run(args, context))

    @abstractmethod
    def run(self, args: dict, context: ExecutionContext) -> str:
        """Perform the operation and return the text handed back to the model."""


def _required(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionError(f"Missing required argument: {key}")
    return value


class CreateFile(_FileTool):
    permissions = frozenset({Permission.FILE_WRITE})

    def run(self, args: dict, context: ExecutionContext) -> str:
        path = resolve_in_project(context, _required(args, "path"))
        if path.exists():
            raise ToolExecutionError(f"File already exists: {args['path']}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(args.get("content", "")), encoding="utf-8")
        return f"Created {args['path']}"


class ReadFile(_FileTool):
    def run(self, args: dict, context: ExecutionContext) -> str:
        path = resolve_in_project(context, _required(args, "path"))
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {args['path']}")
        return path.read_text(encoding="utf-8", errors="replace")


class UpdateFile(_FileTool):
    permissions = frozenset({Permission.FILE_WRITE})

    def run(self, args: dict, context: ExecutionContext) -> str:
        path = resolve_in_project(context, _required(args, "path"))
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {args['path']}")
        path.write_text(str(args.get("content", "")), encoding="utf-8")
        return f"Updated {args['path']}"


class DeleteFile(_FileTool):
    permissions = frozenset({Permission.FILE_DELETE})

    def run(self, args: dict, context: ExecutionContext) -> str:
        path = resolve_in_project(context, _required(args, "path"))
        if path == project_root(context):
            raise ToolExecutionError("Refusing to delete the project directory")
        if path.is_dir():
            # Only empty directories; recursive deletes are never issued by a model.
            path.rmdir()
        elif path.exists():
            path.unlink()
        else:
            raise ToolExecutionError(f"File not found: {args['path']}")
        logger.info("Deleted %s", path)
        return f"Deleted {args['path']}"


class ListFiles(_FileTool):
    def run(self, args: dict, context: ExecutionContext) -> str:
        directory = resolve_in_project(context, args.get("path") or ".")
        if not directory.is_dir():
            raise ToolExecutionError(f"Not a directory: {args.get('path')}")
        entries = sorted(
            f"{p.name}/" if p.is_dir() else p.name for p in directory.iterdir()
        )
        return json.dumps(entries)


class SearchFiles(_FileTool):
    def run(self, args: dict, context: ExecutionContext) -> str:
        root = _require_root(context)
        directory = resolve_in_project(context, args.get("path") or ".")
        pattern = args.get("pattern") or "*"
        query = args.get("query")
        matches: list[str] = []
        for path in sorted(directory.rglob("*")):
            if not path.is_file() or not fnmatch.fnmatch(path.name, pattern):
                continue
            # Symlinked files may point outside the project.
            if not path.resolve().is_relative_to(root):
                continue
            if query:
                try:
                    if query not in path.read_text(encoding="utf-8", errors="ignore"):
                        continue
                except OSError:
                    continue
            matches.append(path.relative_to(root).as_posix())
            if len(matches) >= _MAX_SEARCH_RESULTS:
                break
        return json.dumps(matches)


_PATH = ("string", "Path relative to the project root")

FILE_TOOLS: tuple[tuple[ToolDefinition, _FileTool], ...] = (
    (
        ToolDefinition(
            "createFile",
            "Create a new UTF-8 file in the project workspace.",
            object_schema(
                {"path": _PATH, "content": ("string", "Content to write to the file")},
                required=("path", "content"),
            ),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_WRITE}),
        ),
        CreateFile(),
    ),
    (
        ToolDefinition(
            "readFile",
            "Read a file from the project workspace.",
            object_schema({"path": _PATH}, required=("path",)),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_READ}),
        ),
        ReadFile(),
    ),
    (
        ToolDefinition(
            "updateFile",
            "Overwrite an existing file with new content.",
            object_schema(
                {"path": _PATH, "content": ("string", "New content for the file")},
                required=("path", "content"),
            ),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_WRITE}),
        ),
        UpdateFile(),
    ),
    (
        ToolDefinition(
            "deleteFile",
            "Delete a file or an empty directory from the project workspace.",
            object_schema({"path": _PATH}, required=("path",)),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_DELETE}),
        ),
        DeleteFile(),
    ),
    (
        ToolDefinition(
            "listFiles",
            "List the entries of a directory in the project workspace.",
            object_schema({"path": ("string", "Directory to list ('.' for the root)")}),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_READ}),
        ),
        ListFiles(),
    ),
    (
        ToolDefinition(
            "searchFiles",
            "Find files by glob pattern, optionally containing a text query.",
            object_schema(
                {
                    "path": ("string", "Directory to search ('.' for the root)"),
                    "pattern": ("string", "Glob matched against file names"),
                    "query": ("string", "Text the file must contain"),
                }
            ),
            ToolCategory.FILE_SYSTEM,
            frozenset({Permission.FILE_READ}),
        ),
        SearchFiles(),
    ),
)
