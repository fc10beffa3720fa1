"""Read-only repository tools exposed to reviewer models.

Models may read files, list directories and search the repository while
reviewing. Every path is confined to the repository root; tool errors are
returned to the model as JSON rather than raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_MAX_RESULT_CHARS = 20_000
_MAX_SEARCH_MATCHES = 200
_SKIP_DIRS = {".git", "node_modules", ".venv", "venv", "__pycache__", "dist", "build"}


class ToolError(Exception):
    """A tool call could not be completed."""


def _function_schema(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


class RepositoryTools:
    """Tool bindings over a repository checkout."""

    def __init__(self, root: Path, max_result_chars: int = _MAX_RESULT_CHARS) -> None:
        self._root = root.resolve()
        self._max_result_chars = max_result_chars

    @property
    def root(self) -> Path:
        return self._root

    def schemas(self) -> list[dict[str, Any]]:
        """OpenAI-format function schemas for every tool."""
        return [
            _function_schema(
                "read_file",
                "Read a text file from the repository, optionally a line range.",
                {
                    "path": {"type": "string", "description": "Path relative to the repo root"},
                    "start_line": {"type": "integer", "minimum": 1},
                    "end_line": {"type": "integer", "minimum": 1},
                },
                ["path"],
            ),
            _function_schema(
                "list_directory",
                "List entries of a repository directory.",
                {"path": {"type": "string", "description": "Directory relative to the repo root"}},
                [],
            ),
            _function_schema(
                "search",
                "Search repository files for a regular expression.",
                {
                    "pattern": {"type": "string", "description": "Regular expression"},
                    "path": {"type": "string", "description": "Directory to search (default: root)"},
                },
                ["pattern"],
            ),
        ]

    async def call(self, name: str, arguments: str | dict[str, Any]) -> str:
        """Run a tool by name and return its textual result.

        Malformed arguments, unknown tools and tool failures are reported
        back as a JSON error object so the model can recover.
        """
        try:
            args = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
            if not isinstance(args, dict):
                raise ToolError("arguments must be a JSON object")
            if name == "read_file":
                result = self.read_file(
                    args.get("path", ""), args.get("start_line"), args.get("end_line")
                )
            elif name == "list_directory":
                result = self.list_directory(args.get("path", "."))
            elif name == "search":
                result = await self.search(args.get("pattern", ""), args.get("path", "."))
            else:
                raise ToolError(f"unknown tool: {name}")
        except (ToolError, json.JSONDecodeError, OSError, re.error) as e:
            logger.debug("Tool %s failed: %s", name, e)
            return json.dumps({"error": str(e)})
        return self._truncate(result)

    # ── Tools ─────────────────────────────────────────────────

    def read_file(self, path: str, start_line: int | None = None, end_line: int | None = None) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise ToolError(f"not a file: {path}")
        lines = target.read_text(encoding="utf-8", errors="replace").splitlines()
        start = max((start_line or 1) - 1, 0)
        end = end_line if end_line else len(lines)
        return "\n".join(f"{i + 1}: {line}" for i, line in enumerate(lines[start:end], start))

    def list_directory(self, path: str = ".") -> str:
        target = self._resolve(path)
        if not target.is_dir():
            raise ToolError(f"not a directory: {path}")
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        return "\n".join(f"{p.name}/" if p.is_dir() else p.name for p in entries)

    async def search(self, pattern: str, path: str = ".") -> str:
        if not pattern:
            raise ToolError("pattern is required")
        target = self._resolve(path)
        if shutil.which("rg"):
            return await self._search_ripgrep(pattern, target)
        return self._search_python(pattern, target)

    # ── Helpers ───────────────────────────────────────────────

    def _resolve(self, path: str) -> Path:
        target = (self._root / (path or ".")).resolve()
        if target != self._root and self._root not in target.parents:
            raise ToolError(f"path escapes repository root: {path}")
        return target

    async def _search_ripgrep(self, pattern: str, target: Path) -> str:
        proc = await asyncio.create_subprocess_exec(
            "rg", "--line-number", "--no-heading", "--color", "never",
            "--max-count", "20", "-e", pattern, str(target),
            cwd=str(self._root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        # rg exits 1 when nothing matched
        if proc.returncode not in (0, 1):
            raise ToolError(stderr.decode(errors="replace").strip() or "search failed")
        lines = stdout.decode(errors="replace").splitlines()[:_MAX_SEARCH_MATCHES]
        root_prefix = f"{self._root}/"
        return "\n".join(line.removeprefix(root_prefix) for line in lines) or "No matches."

    def _search_python(self, pattern: str, target: Path) -> str:
        regex = re.compile(pattern)
        matches: list[str] = []
        files = [target] if target.is_file() else sorted(target.rglob("*"))
        for file in files:
            rel_path = file.relative_to(self._root)
            if not file.is_file() or any(part in _SKIP_DIRS for part in rel_path.parts):
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = rel_path.as_posix()
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    matches.append(f"{rel}:{lineno}:{line}")
                    if len(matches) >= _MAX_SEARCH_MATCHES:
                        return "\n".join(matches)
        return "\n".join(matches) or "No matches."

    def _truncate(self, text: str) -> str:
        if len(text) <= self._max_result_chars:
            return text
        return text[: self._max_result_chars] + "\n... (truncated)"
