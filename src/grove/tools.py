"""Local tools for the in-process conversation runtime.

Each tool has a pydantic parameter model (its JSON schema is what the
model sees) and a handler on LocalToolExecutor. Handlers never touch
anything outside the workspace root: paths are resolved through
symlinks and rejected if they escape.

Tools:
- read_file: read a file relative to the workspace
- search_code: regex search (ripgrep, grep when rg is unavailable)
- list_directory: list entries, directories suffixed with "/"
- git_log: recent commits, optionally for one path
- git_blame: line-by-line authorship of a file
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT = 30


# ── Tool Parameter Models ────────────────────────────────────────────────────


class ReadFileParams(BaseModel):
    path: str = Field(description="File path relative to the workspace root")


class SearchCodeParams(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    glob: str | None = Field(default=None, description="Optional file glob, e.g. '*.py'")


class ListDirectoryParams(BaseModel):
    path: str = Field(default=".", description="Directory relative to the workspace root")


class GitLogParams(BaseModel):
    count: int = Field(default=20, ge=1, le=200, description="Number of commits")
    path: str | None = Field(default=None, description="Limit history to this path")


class GitBlameParams(BaseModel):
    path: str = Field(description="File path relative to the workspace root")


_TOOLS: dict[str, tuple[type[BaseModel], str]] = {
    "read_file": (ReadFileParams, "Read the full contents of a file in the workspace."),
    "search_code": (
        SearchCodeParams,
        "Search the workspace for a regex. Returns file:line:text matches.",
    ),
    "list_directory": (
        ListDirectoryParams,
        "List a directory. Subdirectories end with '/'.",
    ),
    "git_log": (GitLogParams, "Show recent commits (oneline, decorated)."),
    "git_blame": (GitBlameParams, "Show git blame for a file."),
}


def tool_schemas() -> list[dict[str, Any]]:
    """Tool definitions in the Messages API format."""
    schemas = []
    for name, (params, description) in _TOOLS.items():
        schema = params.model_json_schema()
        schema.pop("title", None)
        schemas.append({"name": name, "description": description, "input_schema": schema})
    return schemas


@dataclass
class ToolResult:
    content: str
    is_error: bool = False
    truncated: bool = False


class ToolError(Exception):
    """A tool call that should be reported back to the model as an error."""


class LocalToolExecutor:
    """Runs tool calls against one workspace directory."""

    def __init__(self, root: Path, max_output: int = 50_000):
        self.root = Path(os.path.realpath(root))
        self.max_output = max_output

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one tool. Never raises for tool-level problems."""
        entry = _TOOLS.get(name)
        if entry is None:
            return ToolResult(f"Unknown tool: {name}", is_error=True)
        params_model, _ = entry
        try:
            params = params_model(**(arguments or {}))
            handler = getattr(self, f"_tool_{name}")
            output = await handler(params)
            if isinstance(output, ToolResult):
                return output
        except ValidationError as e:
            return ToolResult(f"Invalid arguments for {name}: {e}", is_error=True)
        except ToolError as e:
            return ToolResult(str(e), is_error=True)
        except asyncio.TimeoutError:
            return ToolResult(f"{name} timed out after {_COMMAND_TIMEOUT}s", is_error=True)
        except OSError as e:
            logger.debug("Tool %s failed: %s", name, e)
            return ToolResult(f"{name} failed: {e}", is_error=True)
        return self._cap(output)

    def _cap(self, output: str) -> ToolResult:
        if len(output) <= self.max_output:
            return ToolResult(output)
        dropped = len(output) - self.max_output
        return ToolResult(
            output[: self.max_output] + f"\n[...truncated {dropped} chars]",
            truncated=True,
        )

    def resolve(self, relative: str) -> Path:
        """Resolve a workspace-relative path, refusing anything outside the root."""
        candidate = Path(os.path.realpath(self.root / relative))
        if candidate != self.root and self.root not in candidate.parents:
            raise ToolError(f"Path escapes workspace: {relative}")
        return candidate

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _tool_read_file(self, params: ReadFileParams) -> str | ToolResult:
        path = self.resolve(params.path)
        if not path.is_file():
            raise ToolError(f"Not a file: {params.path}")
        with path.open(encoding="utf-8", errors="replace") as f:
            text = f.read(self.max_output + 1)
        if len(text) <= self.max_output:
            return text
        size = path.stat().st_size
        return ToolResult(
            text[: self.max_output] + f"\n[...truncated, file is {size} bytes]",
            truncated=True,
        )

    async def _tool_list_directory(self, params: ListDirectoryParams) -> str:
        path = self.resolve(params.path)
        if not path.is_dir():
            raise ToolError(f"Not a directory: {params.path}")
        entries = sorted(path.iterdir(), key=lambda p: p.name)
        return "\n".join(f"{p.name}/" if p.is_dir() else p.name for p in entries) or "(empty)"

    async def _tool_search_code(self, params: SearchCodeParams) -> str:
        if shutil.which("rg"):
            args = ["rg", "--line-number", "--max-count", "50", "--no-heading"]
            if params.glob:
                args += ["--glob", params.glob]
            args += ["-e", params.pattern, "."]
        else:
            args = ["grep", "-rnE", "--max-count=50", "--exclude-dir=.git"]
            if params.glob:
                args.append(f"--include={params.glob}")
            args += ["-e", params.pattern, "."]
        code, out, err = await self._run(*args)
        # Both tools exit 1 for "no matches".
        if code == 1 and not err:
            return "No matches."
        if code not in (0, 1):
            raise ToolError(f"search failed: {err.strip()}")
        return out

    async def _tool_git_log(self, params: GitLogParams) -> str:
        args = ["git", "log", "--oneline", "--decorate", f"-n{params.count}"]
        if params.path:
            self.resolve(params.path)
            args += ["--", params.path]
        code, out, err = await self._run(*args)
        if code != 0:
            raise ToolError(f"git log failed: {err.strip()}")
        return out or "(no commits)"

    async def _tool_git_blame(self, params: GitBlameParams) -> str:
        self.resolve(params.path)
        code, out, err = await self._run("git", "blame", "--", params.path)
        if code != 0:
            raise ToolError(f"git blame failed: {err.strip()}")
        return out

    async def _run(self, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=_COMMAND_TIMEOUT
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout_bytes or b"").decode(errors="replace"),
            (stderr_bytes or b"").decode(errors="replace"),
        )
