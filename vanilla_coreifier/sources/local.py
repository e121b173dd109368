"""Everest source backed by a directory on disk.

WHY: Developers (and offline installs) already have an Everest build
unpacked somewhere; reading straight from it needs no download and no
temporary files.

HOW: Every logical path is joined onto the root directory. Files are
copied with shutil.copyfile so existing destinations are overwritten.

RULES:
- The root is resolved to an absolute path at construction
- No temporary resources; releasing is a no-op
- apphosts_path() is <root>/piton-apphosts, used in place
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from vanilla_coreifier.config import APPHOSTS_DIR
from vanilla_coreifier.sources.base import (
    BaseSource,
    ModuleImage,
    SourceNotFoundError,
    bytecode_logical_path,
    logical_basename,
    module_logical_path,
    package_logical_dir,
)

logger = logging.getLogger(__name__)


class LocalSource(BaseSource):
    """Serve Everest files from a local directory tree."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def name(self) -> str:
        return "local: {}".format(self._root)

    def _path(self, logical_path: str) -> Path:
        return self._root.joinpath(*[p for p in logical_path.split("/") if p])

    def _image(self, name: str, module_name: str, is_package: bool = False) -> Optional[ModuleImage]:
        module_path = self._path(module_logical_path(module_name))
        if not module_path.is_file():
            return None

        bytecode_path = self._path(bytecode_logical_path(module_name))
        bytecode = bytecode_path.read_bytes() if bytecode_path.is_file() else None
        return ModuleImage(
            name=name,
            source=module_path.read_bytes(),
            origin=str(module_path),
            bytecode=bytecode,
            is_package=is_package,
        )

    def resolve_module(self, name: str) -> Optional[ModuleImage]:
        image = self._image(name, name)
        if image is not None:
            return image

        package_dir = self._path(package_logical_dir(name))
        if not package_dir.is_dir():
            return None
        image = self._image(name, name + ".__init__", is_package=True)
        if image is None:
            image = ModuleImage(name=name, source=b"", origin=str(package_dir), is_package=True)
        return image

    def copy_file(self, logical_path: str, dest_dir: Path) -> Path:
        src = self._path(logical_path)
        if not src.is_file():
            raise SourceNotFoundError(logical_path)

        dest = Path(dest_dir) / logical_basename(logical_path)
        shutil.copyfile(src, dest)
        logger.debug("Copied %s -> %s", src, dest)
        return dest

    def copy_directory(self, logical_dir: str, dest_dir: Path) -> Path:
        src = self._path(logical_dir)
        if not src.is_dir():
            raise SourceNotFoundError(logical_dir)

        target = Path(dest_dir) / logical_basename(logical_dir)
        target.mkdir(parents=True, exist_ok=True)
        for path in sorted(src.rglob("*")):
            rel = path.relative_to(src)
            out = target / rel
            if path.is_dir():
                out.mkdir(parents=True, exist_ok=True)
            else:
                out.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(path, out)
        logger.debug("Mirrored %s -> %s", src, target)
        return target

    def apphosts_path(self) -> Path:
        return self._root / APPHOSTS_DIR

    def _release_resources(self) -> None:
        pass
