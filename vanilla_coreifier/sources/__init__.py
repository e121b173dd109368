"""Everest sources — where installer files and collaborator modules come from.

WHY: The installer needs Everest's library folder, apphost templates,
runtime descriptor and the collaborator modules. They can come from a
local directory or from the latest stable release archive, and the rest
of the installer must not care which.

HOW: open_source() picks the variant once, registers its import hook,
and returns it. Use the result as a context manager so the hook is
removed and temporary files are deleted on every exit path.

RULES:
- remote=True ignores local_root and downloads the latest stable release
- The returned source already has its import hook installed
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Optional

from vanilla_coreifier.config import DEFAULT_LOCAL_SOURCE
from vanilla_coreifier.sources.base import BaseSource, ModuleImage, SourceNotFoundError
from vanilla_coreifier.sources.local import LocalSource
from vanilla_coreifier.sources.remote import (
    CorruptArchiveError,
    DownloadFailedError,
    MalformedListingError,
    NoStableReleaseError,
    RemoteSource,
    RemoteSourceError,
)


def open_source(
    remote: bool = False,
    local_root: str | Path | None = None,
    on_status: Optional[Callable[[str], None]] = None,
) -> BaseSource:
    """Create the Everest source for this run and install its import hook."""
    if remote:
        source: BaseSource = RemoteSource(on_status=on_status)
    else:
        source = LocalSource(local_root or DEFAULT_LOCAL_SOURCE)
    source.install_hook()
    return source


__all__ = [
    "BaseSource",
    "CorruptArchiveError",
    "DownloadFailedError",
    "LocalSource",
    "MalformedListingError",
    "ModuleImage",
    "NoStableReleaseError",
    "RemoteSource",
    "RemoteSourceError",
    "SourceNotFoundError",
    "open_source",
]
