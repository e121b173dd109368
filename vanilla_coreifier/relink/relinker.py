"""Rewrite a compiled module's references from XNA to FNA.

WHY: The converted game module still names the Microsoft.Xna.Framework*
assemblies, which do not exist on the new runtime. FNA provides the
same API under one assembly, so every XNA reference has to become a
single FNA reference before the module can load.

HOW: relink_references() reads the module's assembly-reference table,
collects the references whose name starts with the legacy prefix, and
returns early (without writing anything) when there are none. Otherwise
it reads the replacement module's own identity, swaps the references in
the metadata, writes the result to a sibling temporary file, and renames
it over the original.

RULES:
- Zero matching references: the file on disk is left untouched
- At most one new reference replaces all removed ones
- Removal happens in descending index order
- Either the original stays as it was or it is fully replaced; a failed
  write deletes the temporary file
- Debug symbols are not rewritten; callers hide them with hidden_symbols()
"""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Tuple

from vanilla_coreifier.config import LEGACY_FRAMEWORK_PREFIX
from vanilla_coreifier.relink.metadata import AssemblyIdentity, CliModule

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".relink.tmp"
HIDDEN_SYMBOLS_SUFFIX = ".pdb1"


class RelinkWriteFailed(OSError):
    """Raised when the relinked module cannot be written or renamed into place.

    RULES:
    - The original module is unchanged when this is raised
    """


@dataclass
class RelinkResult:
    """What a relink pass changed.

    Attributes:
        removed: Names of the references that were removed, in table order.
        added: Name of the reference that replaced them, or None when
            nothing was rewritten.
    """

    removed: List[str] = field(default_factory=list)
    added: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.removed)


def read_reference_table(module: CliModule) -> List[Tuple[int, str]]:
    """Return the module's assembly references as (index, name) pairs."""
    return [(i, ref.name) for i, ref in enumerate(module.assembly_references())]


def find_legacy_references(
    references: List[Tuple[int, str]],
    prefix: str = LEGACY_FRAMEWORK_PREFIX,
) -> List[Tuple[int, str]]:
    return [(i, name) for i, name in references if name.startswith(prefix)]


def relink_references(
    module_path: Path,
    replacement_path: Path,
    prefix: str = LEGACY_FRAMEWORK_PREFIX,
) -> RelinkResult:
    """Replace every ``prefix``* assembly reference with one to the replacement module.

    Args:
        module_path: The module to rewrite in place.
        replacement_path: The module whose identity becomes the new reference.
        prefix: Reference-name prefix marking the references to remove.

    Returns:
        RelinkResult describing the change.

    Raises:
        MetadataFormatError: If either module cannot be read.
        RelinkWriteFailed: If the rewritten module cannot be stored.
    """
    module_path = Path(module_path)
    module = CliModule.load(module_path)
    legacy = find_legacy_references(read_reference_table(module), prefix)
    if not legacy:
        logger.info("No %s references in %s, leaving it as is", prefix, module_path.name)
        return RelinkResult()

    replacement: AssemblyIdentity = CliModule.load(Path(replacement_path)).assembly_identity()
    for _, name in legacy:
        logger.debug("Removing reference %s", name)
    appended = module.replace_assembly_references([i for i, _ in legacy], replacement)
    logger.info(
        "Relinking %s: %d reference(s) -> %s %s%s",
        module_path.name, len(legacy), replacement.name, replacement.version_string,
        "" if appended else " (existing reference)",
    )

    _write_atomically(module_path, module.to_bytes())
    return RelinkResult(removed=[name for _, name in legacy], added=replacement.name)


def _write_atomically(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + TEMP_SUFFIX)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise RelinkWriteFailed(
            "Could not write relinked module {}: {}".format(path, e)
        ) from e


@contextlib.contextmanager
def hidden_symbols(module_path: Path) -> Iterator[Path]:
    """Temporarily move a module's ``.pdb`` out of the way.

    The file is renamed to ``<stem>.pdb1`` for the duration of the block
    and renamed back afterwards, even when the block raises. Nothing
    happens when the module has no symbol file.
    """
    symbols = Path(module_path).with_suffix(".pdb")
    hidden = symbols.with_suffix(HIDDEN_SYMBOLS_SUFFIX)
    moved = False
    if symbols.exists():
        os.replace(symbols, hidden)
        moved = True
        logger.debug("Hid symbols %s", symbols)
    try:
        yield symbols
    finally:
        if moved and hidden.exists():
            os.replace(hidden, symbols)
            logger.debug("Restored symbols %s", symbols)
