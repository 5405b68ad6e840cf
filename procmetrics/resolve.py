"""Resolution of paths against an optional alternate host filesystem root."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(*elements: str) -> str:
    """Join path elements, skipping empty ones, and clean the result."""
    parts = [element for element in elements if element]
    if not parts:
        return ""
    return _clean("/".join(parts))


@runtime_checkable
class Resolver(Protocol):
    """Resolves paths against a user-supplied root filesystem."""

    def resolve_hostfs(self, path: str) -> str:
        """Return ``path`` placed under the configured root."""
        ...

    def is_set(self) -> bool:
        """Return True if an alternate root has been configured."""
        ...

    def join(self, *args: str) -> str:
        """Join path elements under the configured root."""
        ...


@dataclass(frozen=True)
class TestingResolver:
    """A plain resolver rooted at a fixed path."""

    __test__ = False

    path: str = "/"
    explicit: bool = False

    def resolve_hostfs(self, path: str) -> str:
        return _join(self.path, path)

    def join(self, *args: str) -> str:
        return _join(self.path, *args)

    def is_set(self) -> bool:
        return self.explicit


def new_test_resolver(path: str) -> TestingResolver:
    """Create a resolver; an empty path or "/" means no alternate root."""
    if path in ("", "/"):
        return TestingResolver(path="/", explicit=False)
    return TestingResolver(path=path, explicit=True)