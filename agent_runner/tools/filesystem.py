"""工作目录内的文件工具：list_directory / read_file / create_file / write_file / search_files。

所有路径都相对工作目录解析，并被限制在工作目录之内；
未配置工作目录时这些工具不满足可用性前置条件，不会暴露给模型。
"""

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from agent_runner.config.settings import settings
from agent_runner.domain.exceptions import ExecutionFailed, InvalidArguments
from .base import Tool

MAX_LIST_RESULTS = 500
MAX_SEARCH_RESULTS = 200
# 读取前检查的字节数，用于识别二进制文件
BINARY_SNIFF_BYTES = 8000


class Workspace:
    """工具共享的工作目录，可在运行期切换。"""

    def __init__(self, root: Optional[Union[str, Path]] = None, allow_absolute: bool = False):
        self._root: Optional[Path] = None
        self.allow_absolute = allow_absolute
        if root:
            self.set_root(root)

    @property
    def root(self) -> Optional[Path]:
        return self._root

    def set_root(self, root: Optional[Union[str, Path]]) -> None:
        self._root = Path(root).expanduser().resolve() if root else None

    def is_configured(self) -> bool:
        return self._root is not None and self._root.is_dir()

    def resolve(self, raw: str) -> Path:
        """把工具参数中的路径解析为工作目录内的绝对路径。"""

        root = self._require_root()
        text = (raw or "").strip() or "."
        candidate = Path(text).expanduser()
        if candidate.is_absolute():
            if not self.allow_absolute:
                raise ExecutionFailed(f"Absolute paths are not allowed: '{text}'")
            resolved = candidate.resolve()
            if _is_within_root(resolved, root):
                return resolved
            raise ExecutionFailed(f"Path '{text}' is outside the working directory")
        resolved = (root / candidate).resolve()
        if not _is_within_root(resolved, root):
            raise ExecutionFailed(f"Path '{text}' is outside the working directory")
        return resolved

    def relative(self, path: Path) -> str:
        if self._root is not None:
            try:
                rel = path.resolve().relative_to(self._root)
                return str(rel) or "."
            except ValueError:
                pass
        return str(path)

    def _require_root(self) -> Path:
        if not self.is_configured():
            raise ExecutionFailed("No working directory is configured")
        return self._root  # type: ignore[return-value]


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _looks_binary(path: Path) -> bool:
    with path.open("rb") as fh:
        chunk = fh.read(BINARY_SNIFF_BYTES)
    return b"\x00" in chunk


def _read_text(path: Path) -> str:
    data = path.read_bytes()
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


class _WorkspaceTool(Tool):
    def __init__(self, workspace: Workspace, enabled: bool = True):
        super().__init__(enabled=enabled)
        self.workspace = workspace

    def is_available(self) -> bool:
        return self.workspace.is_configured()


class ListDirectoryArgs(BaseModel):
    path: str = Field(".", description="Directory to list, relative to the working directory")


class ListDirectoryTool(_WorkspaceTool):
    name = "list_directory"
    description = "List files and folders in a directory inside the working directory."
    args_model = ListDirectoryArgs

    async def run(self, args: ListDirectoryArgs) -> str:
        base = self.workspace.resolve(args.path)
        return await asyncio.to_thread(self._list, base, args.path)

    def _list(self, base: Path, display: str) -> str:
        if not base.exists():
            raise ExecutionFailed(f"Directory not found: '{display}'")
        if not base.is_dir():
            raise ExecutionFailed(f"Not a directory: '{display}'")
        entries = sorted(base.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        if not entries:
            return f"Directory '{display}' is empty."
        lines: List[str] = [f"Contents of '{self.workspace.relative(base)}':"]
        for entry in entries:
            if len(lines) > MAX_LIST_RESULTS:
                lines.append("... truncated ...")
                break
            if entry.is_dir():
                lines.append(f"[dir]  {entry.name}/")
            else:
                lines.append(f"[file] {entry.name} ({entry.stat().st_size} bytes)")
        return "\n".join(lines)


class ReadFileArgs(BaseModel):
    path: str = Field(..., description="File to read, relative to the working directory")


class ReadFileTool(_WorkspaceTool):
    name = "read_file"
    description = "Read the text content of a file inside the working directory."
    args_model = ReadFileArgs

    async def run(self, args: ReadFileArgs) -> str:
        path = self.workspace.resolve(args.path)
        return await asyncio.to_thread(self._read, path, args.path)

    @staticmethod
    def _read(path: Path, display: str) -> str:
        if not path.exists():
            raise ExecutionFailed(f"File not found: '{display}'")
        if not path.is_file():
            raise ExecutionFailed(f"Not a file: '{display}'")
        if _looks_binary(path):
            raise ExecutionFailed(f"Cannot read binary file: '{display}'")
        return _read_text(path)


class CreateFileArgs(BaseModel):
    path: str = Field(..., description="File to create, relative to the working directory")
    content: str = Field(..., description="Initial file content")


class CreateFileTool(_WorkspaceTool):
    name = "create_file"
    description = "Create a new file with the given content. Fails if the file already exists."
    args_model = CreateFileArgs

    async def run(self, args: CreateFileArgs) -> str:
        path = self.workspace.resolve(args.path)
        return await asyncio.to_thread(self._create, path, args)

    def _create(self, path: Path, args: CreateFileArgs) -> str:
        if path.exists():
            raise ExecutionFailed(f"File already exists: '{args.path}'")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("x", encoding="utf-8") as fh:
            fh.write(args.content)
        return f"Created file '{self.workspace.relative(path)}' ({len(args.content)} characters)."


class WriteFileArgs(BaseModel):
    path: str = Field(..., description="File to write, relative to the working directory")
    content: str = Field(..., description="New file content; replaces the existing content")


class WriteFileTool(_WorkspaceTool):
    name = "write_file"
    description = "Write content to a file, replacing its content or creating it if missing."
    args_model = WriteFileArgs

    async def run(self, args: WriteFileArgs) -> str:
        path = self.workspace.resolve(args.path)
        return await asyncio.to_thread(self._write, path, args)

    def _write(self, path: Path, args: WriteFileArgs) -> str:
        if path.exists() and not path.is_file():
            raise ExecutionFailed(f"Not a file: '{args.path}'")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(args.content, encoding="utf-8")
        os.replace(tmp, path)
        return f"Wrote {len(args.content)} characters to '{self.workspace.relative(path)}'."


class SearchFilesArgs(BaseModel):
    path: str = Field(".", description="Directory to search, relative to the working directory")
    regex: str = Field(..., description="Regular expression to search for")
    file_pattern: Optional[str] = Field(None, description="Optional glob filter for file names, e.g. '*.py'")


class SearchFilesTool(_WorkspaceTool):
    name = "search_files"
    description = "Search text files under a directory for lines matching a regular expression."
    args_model = SearchFilesArgs

    async def run(self, args: SearchFilesArgs) -> str:
        try:
            pattern = re.compile(args.regex)
        except re.error as exc:
            raise InvalidArguments(self.name, f"invalid regex ({exc})") from exc
        base = self.workspace.resolve(args.path)
        return await asyncio.to_thread(self._search, base, pattern, args)

    def _search(self, base: Path, pattern: "re.Pattern[str]", args: SearchFilesArgs) -> str:
        if not base.is_dir():
            raise ExecutionFailed(f"Directory not found: '{args.path}'")
        file_glob = (args.file_pattern or "*").strip() or "*"
        results: List[str] = []
        for path in sorted(base.rglob("*")):
            if not path.is_file() or not fnmatch.fnmatch(path.name, file_glob):
                continue
            if _looks_binary(path):
                continue
            for line_no, line in enumerate(_read_text(path).splitlines(), start=1):
                if pattern.search(line):
                    results.append(f"{self.workspace.relative(path)}:{line_no}: {line.strip()}")
                    if len(results) >= MAX_SEARCH_RESULTS:
                        results.append("... truncated ...")
                        return "\n".join(results)
        if not results:
            return f"No matches for '{args.regex}'."
        return "\n".join(results)


def filesystem_tools(workspace: Optional[Workspace] = None) -> List[Tool]:
    if workspace is None:
        workspace = Workspace(settings.workspace_root, settings.allow_tool_absolute_path)
    return [
        ListDirectoryTool(workspace),
        ReadFileTool(workspace),
        CreateFileTool(workspace),
        WriteFileTool(workspace),
        SearchFilesTool(workspace),
    ]
