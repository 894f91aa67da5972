"""
File discovery and reading for the Local LLM MCP Server

MultiFileDiscovery walks a directory tree under an allowed root and returns a
bounded, deterministic list of candidate files. FileCollector reads validated
files for prompt construction.

Walk rules:
- The root directory is depth 0; a file's depth is the depth of its directory
- Directories deeper than max_depth are not entered
- Entries are visited in lexicographic order, depth-first
- Deny-listed directories (.git, node_modules, ...) are skipped
- Symlink loops are detected by (st_dev, st_ino) of visited directories
- Every candidate passes through PathSecurityGuard; escapes are skipped
- Unreadable entries are recorded and skipped, never fatal

Performance Optimizations:
- Async file I/O with aiofiles (non-blocking)
- Directory walk runs in a worker thread
- Semaphore-based concurrency control (prevent fd exhaustion)
- Timeout for file reads (network mount safety)
"""

import asyncio
import fnmatch
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

import aiofiles

from .chunking import SECTION_SEPARATOR
from .config import LLMConfig
from .exceptions import (
    FileAccessError,
    FileTooLargeError,
    PathSecurityError,
    SourceFileNotFoundError,
    UnsupportedFileTypeError,
)
from .path_security import PathSecurityGuard, ValidatedPath

logger = logging.getLogger(__name__)


# Constants for performance tuning
MAX_CONCURRENT_FILE_READS = 50  # Prevent fd exhaustion
FILE_READ_TIMEOUT_SECONDS = 30  # Timeout for slow/network files
READ_ENCODINGS = ("utf-8", "latin-1")


@dataclass
class DiscoveredFileSet:
    """Result of a bounded directory walk."""

    root: ValidatedPath
    files: list[ValidatedPath] = field(default_factory=list)
    truncated: bool = False
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    max_depth: int = 3
    max_files: int = 500

    @property
    def file_count(self) -> int:
        return len(self.files)

    def get_file_list(self) -> list[str]:
        return [f.path for f in self.files]

    def to_dict(self) -> dict:
        return {
            "root": self.root.path,
            "files": [f.relative_path for f in self.files],
            "fileCount": self.file_count,
            "truncated": self.truncated,
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


@dataclass
class SourceFile:
    """A validated file with its decoded content."""

    path: ValidatedPath
    content: str
    size_bytes: int
    encoding: str = "utf-8"

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path.path)[1].lower()

    @property
    def relative_path(self) -> str:
        return self.path.relative_path


def build_data_payload(files: Iterable[SourceFile]) -> str:
    """Combine file contents into one payload, one separator-headed section per file."""
    parts = []
    for f in files:
        parts.append(f"{SECTION_SEPARATOR}\nFile: {f.path.path}\n\n{f.content}\n")
    return "".join(parts)


class MultiFileDiscovery:
    """Bounded, deterministic project file discovery."""

    def __init__(self, guard: PathSecurityGuard, config: LLMConfig | None = None):
        self.guard = guard
        self.config = config or LLMConfig()

    def should_skip_directory(self, dir_name: str) -> bool:
        """Check if a directory should be skipped."""
        for pattern in self.config.skipped_directories:
            if fnmatch.fnmatch(dir_name, pattern):
                return True
        return False

    @staticmethod
    def _normalize_extensions(extensions: Iterable[str] | None) -> set[str] | None:
        if extensions is None:
            return None
        normalized = set()
        for ext in extensions:
            ext = ext.strip().lower()
            if ext:
                normalized.add(ext if ext.startswith(".") else f".{ext}")
        return normalized or None

    def discover_files(
        self,
        root: ValidatedPath,
        extensions: Iterable[str] | None = None,
        max_depth: int | None = None,
        max_files: int | None = None,
    ) -> DiscoveredFileSet:
        """
        Walk root and collect matching files.

        Args:
            root: Directory to walk, already validated
            extensions: Extensions to include (default: configured supported extensions)
            max_depth: Deepest directory level entered (root is 0)
            max_files: Maximum number of files returned

        Returns:
            DiscoveredFileSet with files in walk order
        """
        max_depth = self.config.max_depth if max_depth is None else max_depth
        max_files = self.config.max_files if max_files is None else max_files
        wanted = self._normalize_extensions(extensions) or {
            e.lower() for e in self.config.supported_extensions
        }

        result = DiscoveredFileSet(root=root, max_depth=max_depth, max_files=max_files)

        if not os.path.isdir(root.path):
            result.errors.append(f"Not a directory: {root.path}")
            return result

        visited: set[tuple[int, int]] = set()
        self._walk(root.path, 0, max_depth, max_files, wanted, visited, result)

        logger.info(
            f"[DISCOVERY] {root.path}: {result.file_count} files"
            f"{' (truncated)' if result.truncated else ''}, "
            f"{len(result.skipped)} skipped, {len(result.errors)} errors"
        )
        return result

    def _walk(
        self,
        directory: str,
        depth: int,
        max_depth: int,
        max_files: int,
        wanted: set[str],
        visited: set[tuple[int, int]],
        result: DiscoveredFileSet,
    ) -> bool:
        """Depth-first walk. Returns False once the walk must stop."""
        try:
            st = os.stat(directory)
        except OSError as e:
            result.errors.append(f"Cannot stat {directory}: {e}")
            return True

        identity = (st.st_dev, st.st_ino)
        if identity in visited:
            result.skipped.append(f"{directory} (symlink loop)")
            return True
        visited.add(identity)

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            result.errors.append(f"Cannot read directory {directory}: {e}")
            return True

        for entry in entries:
            try:
                is_dir = entry.is_dir()
                is_file = not is_dir and entry.is_file()
            except OSError as e:
                result.errors.append(f"Cannot stat {entry.path}: {e}")
                continue

            if is_dir:
                if depth + 1 > max_depth or self.should_skip_directory(entry.name):
                    continue
                try:
                    validated = self.guard.validate(entry.path)
                except PathSecurityError as e:
                    result.skipped.append(f"{entry.path} ({e.reason})")
                    continue
                if not self._walk(validated.path, depth + 1, max_depth, max_files, wanted, visited, result):
                    return False

            elif is_file:
                if os.path.splitext(entry.name)[1].lower() not in wanted:
                    continue
                if len(result.files) >= max_files:
                    result.truncated = True
                    return False
                try:
                    result.files.append(self.guard.validate(entry.path))
                except PathSecurityError as e:
                    result.skipped.append(f"{entry.path} ({e.reason})")

        return True

    async def discover_files_async(
        self,
        root: ValidatedPath,
        extensions: Iterable[str] | None = None,
        max_depth: int | None = None,
        max_files: int | None = None,
    ) -> DiscoveredFileSet:
        """Run discover_files in a worker thread."""
        return await asyncio.to_thread(
            self.discover_files, root, extensions, max_depth, max_files
        )


class FileCollector:
    """
    Reads validated files for prompt construction.

    Features:
    - Async file I/O for non-blocking operations
    - Extension allow-list and size limit
    - utf-8 with latin-1 fallback
    - Timeout protection for slow reads
    """

    def __init__(self, config: LLMConfig | None = None):
        self.config = config or LLMConfig()
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_FILE_READS)

    def is_supported(self, path: ValidatedPath) -> bool:
        return os.path.splitext(path.path)[1].lower() in self.config.supported_extensions

    async def read_file(self, path: ValidatedPath, check_extension: bool = True) -> SourceFile:
        """
        Read a validated file.

        Raises:
            SourceFileNotFoundError: path does not exist
            FileAccessError: path is not a regular file, unreadable, or the read timed out
            FileTooLargeError: file exceeds max_file_size_bytes
            UnsupportedFileTypeError: extension not in supported_extensions
        """
        if check_extension and not self.is_supported(path):
            raise UnsupportedFileTypeError(
                f"Unsupported file type: {path.path}",
                {"path": path.path, "extension": os.path.splitext(path.path)[1]},
            )

        try:
            st = os.stat(path.path)
        except FileNotFoundError:
            raise SourceFileNotFoundError(f"File not found: {path.path}", {"path": path.path})
        except PermissionError as e:
            raise FileAccessError(f"Permission denied: {path.path}", {"path": path.path}) from e

        if not os.path.isfile(path.path):
            raise FileAccessError(f"Not a regular file: {path.path}", {"path": path.path})

        if st.st_size > self.config.max_file_size_bytes:
            raise FileTooLargeError(
                f"File too large: {path.path} ({st.st_size:,} bytes)",
                {
                    "path": path.path,
                    "size_bytes": st.st_size,
                    "max_bytes": self.config.max_file_size_bytes,
                },
            )

        async with self._semaphore:
            try:
                content, encoding = await asyncio.wait_for(
                    self._read_content(path.path), timeout=FILE_READ_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                raise FileAccessError(f"Read timed out: {path.path}", {"path": path.path})
            except PermissionError as e:
                raise FileAccessError(f"Permission denied: {path.path}", {"path": path.path}) from e
            except FileNotFoundError:
                raise SourceFileNotFoundError(f"File not found: {path.path}", {"path": path.path})

        return SourceFile(path=path, content=content, size_bytes=st.st_size, encoding=encoding)

    async def _read_content(self, file_path: str) -> tuple[str, str]:
        """Read file content, trying each encoding in turn."""
        for encoding in READ_ENCODINGS[:-1]:
            try:
                async with aiofiles.open(file_path, mode="r", encoding=encoding) as f:
                    return await f.read(), encoding
            except UnicodeDecodeError:
                continue  # Expected - try next encoding

        # latin-1 decodes any byte sequence
        encoding = READ_ENCODINGS[-1]
        async with aiofiles.open(file_path, mode="r", encoding=encoding) as f:
            return await f.read(), encoding

    async def read_files(self, paths: Iterable[ValidatedPath], check_extension: bool = True) -> list[SourceFile]:
        """Read several files concurrently, preserving order. The first failure propagates."""
        return list(await asyncio.gather(
            *(self.read_file(p, check_extension) for p in paths)
        ))
