"""Lazy module resolver hook for the Python import system.

WHY: The conversion, runtime-config and apphost-binding collaborators
ship inside the Everest source, together with the modules they depend
on. Nothing is extracted up front — when an import cannot be satisfied
by the regular finders, the active source is asked for the module.

HOW: ModuleResolverHook is both a MetaPathFinder and a Loader. It is
appended to the END of sys.meta_path, so it only sees imports every
other finder declined. find_spec() asks the source for a ModuleImage;
exec_module() runs the paired bytecode when it matches the running
interpreter, otherwise compiles the source.

RULES:
- Absent modules return None from find_spec ("no opinion")
- A folder in the source imports as a package (its __init__.py, if any)
- Submodules are served only for packages this hook loaded itself
- The hook holds no cache and no mutable state besides its source;
  the import system de-duplicates through sys.modules
- Bytecode is used only when its magic number matches this interpreter
- install()/uninstall() are idempotent
"""

from __future__ import annotations

import importlib.abc
import importlib.util
import logging
import marshal
import sys
from types import CodeType, ModuleType
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from importlib.machinery import ModuleSpec

    from vanilla_coreifier.sources.base import BaseSource, ModuleImage

logger = logging.getLogger(__name__)

# PEP 552 header: magic (4), flags (4), mtime/hash (8)
_PYC_HEADER_SIZE = 16


class ModuleResolverHook(importlib.abc.MetaPathFinder, importlib.abc.Loader):
    """Resolve otherwise-missing imports from an Everest source."""

    def __init__(self, source: BaseSource) -> None:
        self._source = source

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def install(self) -> None:
        if self not in sys.meta_path:
            sys.meta_path.append(self)
            logger.debug("Installed module resolver for %s", self._source.name)

    def uninstall(self) -> None:
        if self in sys.meta_path:
            sys.meta_path.remove(self)
            logger.debug("Removed module resolver for %s", self._source.name)

    # ------------------------------------------------------------------
    # Finder
    # ------------------------------------------------------------------

    def find_spec(self, fullname, path, target=None) -> Optional[ModuleSpec]:  # noqa: ANN001
        parent = fullname.rpartition(".")[0]
        if parent and not self._loaded(parent):
            # Submodules of packages found elsewhere are not ours to serve
            return None
        logger.debug("Checking %s for %s", self._source.name, fullname)
        image = self._source.resolve_module(fullname)
        if image is None:
            return None
        spec = importlib.util.spec_from_loader(
            fullname, self, origin=image.origin, is_package=image.is_package
        )
        if spec is not None:
            spec.loader_state = image
        return spec

    def _loaded(self, name: str) -> bool:
        spec = getattr(sys.modules.get(name), "__spec__", None)
        return spec is not None and spec.loader is self

    # ------------------------------------------------------------------
    # Loader
    # ------------------------------------------------------------------

    def create_module(self, spec) -> None:  # noqa: ANN001
        return None

    def exec_module(self, module: ModuleType) -> None:
        image: ModuleImage = module.__spec__.loader_state
        code = compile_image(image)
        module.__file__ = image.origin
        exec(code, module.__dict__)

    def get_source(self, fullname: str) -> Optional[str]:
        """Serve source text for tracebacks and inspect."""
        image = self._source.resolve_module(fullname)
        if image is None:
            return None
        return importlib.util.decode_source(image.source)


def compile_image(image: ModuleImage) -> CodeType:
    """Turn a ModuleImage into a code object.

    HOW: Uses the companion bytecode when its header carries this
    interpreter's magic number; anything else (missing, truncated, or
    built by another Python) falls back to compiling the source.
    """
    bytecode = image.bytecode
    if (
        bytecode is not None
        and len(bytecode) > _PYC_HEADER_SIZE
        and bytecode[:4] == importlib.util.MAGIC_NUMBER
    ):
        return marshal.loads(bytecode[_PYC_HEADER_SIZE:])
    if bytecode is not None:
        logger.debug("Ignoring stale bytecode for %s", image.name)
    return compile(image.source, image.origin, "exec", dont_inherit=True)
