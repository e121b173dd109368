"""Abstract base for Everest sources and the module image container.

WHY: The installer can pull Everest's files either from a local checkout
or from the latest stable release archive. Everything downstream (library
reconciliation, the import hook, the orchestrator) must work with either
one without branching on which kind it holds.

HOW: BaseSource is an ABC with the full capability set — resolve a module
by logical name, copy one file, mirror a directory, locate the apphost
templates, release owned resources. It doubles as a context manager so
release() runs on every exit path. ModuleImage is a plain dataclass that
pairs a module's source bytes with its optional precompiled bytecode.

RULES:
- Logical paths are forward-slash separated and relative to the source root
- resolve_module() returns None for absent modules; it never raises for that
- A name with no <name>.py but a <name>/ folder resolves as a package
- copy_file() raises SourceNotFoundError when the logical path is absent
- release() must be idempotent (double release is a no-op)
- The import hook lives exactly as long as the source (install_hook/release)
- Subclasses MUST implement every abstract method
"""

from __future__ import annotations

import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from vanilla_coreifier.config import BYTECODE_SUFFIX, MODULE_SUFFIX
from vanilla_coreifier.sources.hook import ModuleResolverHook

logger = logging.getLogger(__name__)


class SourceNotFoundError(FileNotFoundError):
    """Raised when a logical file is absent from the active source.

    WHY: A missing file inside the Everest distribution is fatal for the
    install (nothing else can supply it), and callers need a typed error
    to report which logical path was missing.

    RULES:
    - Only resolve_module() treats absence as a non-error (returns None)
    - logical_path holds the path that was asked for
    """

    def __init__(self, logical_path: str) -> None:
        self.logical_path = logical_path
        super().__init__("Could not find {} in the Everest source".format(logical_path))


@dataclass
class ModuleImage:
    """A loadable module fetched from a source.

    Attributes:
        name: Dotted module name as requested by the import system.
        source: Full module source bytes.
        origin: Human-readable location (file path or archive entry).
        bytecode: Companion ``.pyc`` bytes when the source ships one.
        is_package: True when the name maps to a folder; source is then
            the folder's ``__init__.py`` (empty when it has none).
    """

    name: str
    source: bytes
    origin: str
    bytecode: Optional[bytes] = None
    is_package: bool = False


def module_logical_path(name: str, suffix: str = MODULE_SUFFIX) -> str:
    """Map a dotted module name to its logical path (``a.b`` → ``a/b.py``)."""
    return name.replace(".", "/") + suffix


def bytecode_logical_path(name: str) -> str:
    """Logical path of the companion bytecode for a module name."""
    return module_logical_path(name, BYTECODE_SUFFIX)


def package_logical_dir(name: str) -> str:
    """Map a dotted package name to its folder (``a.b`` → ``a/b/``)."""
    return name.replace(".", "/") + "/"


def logical_basename(logical_path: str) -> str:
    """Last component of a logical path, ignoring a trailing slash."""
    return posixpath.basename(logical_path.rstrip("/"))


class BaseSource(ABC):
    """Abstract base for the local and remote Everest sources.

    WHY: One capability set, two implementations, chosen once at startup
    and used uniformly afterwards.

    HOW: Use as a context manager — ``with open_source(...) as source:`` —
    so release() runs even when the install fails.

    To add a new kind of source:
    1. Subclass BaseSource
    2. Implement the abstract methods (name, resolve_module, copy_file,
       copy_directory, apphosts_path, _release_resources)
    3. Wire it into open_source() in sources/__init__.py
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable description, e.g. 'local: /games/Everest'."""

    @abstractmethod
    def resolve_module(self, name: str) -> Optional[ModuleImage]:
        """Return the module image for a dotted name, or None if absent."""

    @abstractmethod
    def copy_file(self, logical_path: str, dest_dir: Path) -> Path:
        """Copy one file to ``dest_dir/<basename>``, overwriting.

        Returns:
            The destination path.

        Raises:
            SourceNotFoundError: If the logical path does not exist.
        """

    @abstractmethod
    def copy_directory(self, logical_dir: str, dest_dir: Path) -> Path:
        """Mirror a subtree into ``dest_dir/<basename(logical_dir)>``.

        Returns:
            The mirrored directory's path.
        """

    @abstractmethod
    def apphosts_path(self) -> Path:
        """Return a real directory containing the apphost templates."""

    @abstractmethod
    def _release_resources(self) -> None:
        """Free variant-specific resources. Must tolerate repeat calls."""

    def install_hook(self) -> ModuleResolverHook:
        """Register this source with the import system (at most once)."""
        hook = getattr(self, "_hook", None)
        if hook is None:
            hook = ModuleResolverHook(self)
            hook.install()
            self._hook = hook
        return hook

    def release(self) -> None:
        """Unregister the import hook, then free owned resources.

        RULES:
        - Safe to call more than once
        - The hook is removed even if resource cleanup fails
        """
        hook = getattr(self, "_hook", None)
        self._hook = None
        try:
            if hook is not None:
                hook.uninstall()
        finally:
            self._release_resources()

    def __enter__(self) -> BaseSource:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.release()
