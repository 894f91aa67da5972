"""
Path Security for the Local LLM MCP Server

Confines every file access to an allow-listed set of directories.

Checks run in a fixed order:
1. Control characters (including NUL) are rejected
2. Relative paths are rejected
3. The path is normalized (".", "..") and symlinks are resolved
4. The resolved path must equal, or sit under, one allowed root

When the raw string would pass a naive prefix check but the resolved path
does not, the rejection reason is TRAVERSAL_DETECTED rather than
OUTSIDE_ALLOWED_ROOTS.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

from .config import LLMConfig
from .exceptions import ConfigurationError, PathSecurityError

logger = logging.getLogger(__name__)

# Only PathSecurityGuard holds this token, so ValidatedPath can't be forged
_GUARD_TOKEN = object()


def _has_control_characters(path: str) -> bool:
    return any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in path)


@dataclass(frozen=True)
class AllowedRootSet:
    """Immutable set of absolute, resolved directory prefixes."""

    roots: tuple[str, ...]

    @classmethod
    def from_paths(cls, paths: Iterable[str]) -> "AllowedRootSet":
        roots = []
        for raw in paths:
            if not raw or not os.path.isabs(raw):
                raise ConfigurationError(
                    f"Allowed directory must be an absolute path: {raw!r}",
                    {"path": raw},
                )
            resolved = os.path.realpath(os.path.normpath(raw))
            if resolved not in roots:
                roots.append(resolved)
        if not roots:
            raise ConfigurationError("At least one allowed directory is required")
        return cls(tuple(roots))

    @classmethod
    def from_config(cls, config: LLMConfig) -> "AllowedRootSet":
        return cls.from_paths(config.allowed_directories)

    def __iter__(self):
        return iter(self.roots)

    def __len__(self) -> int:
        return len(self.roots)


@dataclass(frozen=True)
class ValidatedPath:
    """An absolute, resolved path proven to lie under one allowed root."""

    path: str
    root: str
    _token: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._token is not _GUARD_TOKEN:
            raise TypeError("ValidatedPath can only be created by PathSecurityGuard")

    def __fspath__(self) -> str:
        return self.path

    def __str__(self) -> str:
        return self.path

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def relative_path(self) -> str:
        """Path relative to the allowed root it was validated against."""
        return os.path.relpath(self.path, self.root)


class PathSecurityGuard:
    """
    Validates and normalizes paths against an AllowedRootSet.

    Pure apart from reading symlink targets during resolution.
    """

    def __init__(self, roots: AllowedRootSet, case_insensitive: bool = False):
        self.roots = roots
        self.case_insensitive = case_insensitive
        self._rejections = 0

    @classmethod
    def from_config(cls, config: LLMConfig) -> "PathSecurityGuard":
        return cls(AllowedRootSet.from_config(config), config.case_insensitive_paths)

    def _fold(self, path: str) -> str:
        return path.lower() if self.case_insensitive else path

    def _match_root(self, path: str) -> str | None:
        folded = self._fold(path)
        for root in self.roots:
            folded_root = self._fold(root)
            if folded == folded_root:
                return root
            prefix = folded_root if folded_root.endswith(os.sep) else folded_root + os.sep
            if folded.startswith(prefix):
                return root
        return None

    def _reject(self, reason: str, path: str) -> PathSecurityError:
        self._rejections += 1
        logger.warning(f"[SECURITY] Rejected path ({reason}): {path!r}")
        return PathSecurityError(reason, path)

    def validate(self, path: str) -> ValidatedPath:
        """
        Validate a path and return it as a ValidatedPath.

        Raises:
            PathSecurityError: with reason NOT_ABSOLUTE, INVALID_CHARACTERS,
                TRAVERSAL_DETECTED or OUTSIDE_ALLOWED_ROOTS
        """
        if isinstance(path, os.PathLike):
            path = os.fspath(path)

        if not isinstance(path, str) or not path:
            raise self._reject(PathSecurityError.NOT_ABSOLUTE, str(path))

        if _has_control_characters(path):
            raise self._reject(PathSecurityError.INVALID_CHARACTERS, path)

        if not os.path.isabs(path):
            raise self._reject(PathSecurityError.NOT_ABSOLUTE, path)

        resolved = os.path.realpath(os.path.normpath(path))
        root = self._match_root(resolved)
        if root is not None:
            return ValidatedPath(resolved, root, _GUARD_TOKEN)

        # The raw string looked contained, so ".." or a symlink caused the escape
        if self._match_root(path) is not None:
            raise self._reject(PathSecurityError.TRAVERSAL_DETECTED, path)
        raise self._reject(PathSecurityError.OUTSIDE_ALLOWED_ROOTS, path)

    def is_allowed(self, path: str) -> bool:
        try:
            self.validate(path)
        except PathSecurityError:
            return False
        return True

    def validate_many(self, paths: Iterable[str]) -> list[ValidatedPath]:
        """Validate every path, failing on the first rejection."""
        return [self.validate(p) for p in paths]

    def get_stats(self) -> dict[str, object]:
        return {
            "allowed_roots": list(self.roots),
            "case_insensitive": self.case_insensitive,
            "rejections": self._rejections,
        }
