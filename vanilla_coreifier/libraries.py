"""Native library reconciliation.

WHY: The game ships native libraries (SDL2, FNA3D, FAudio, FMOD) built
for the old runtime, in platform-specific places and often under
ABI-versioned names. Everest ships an override set for each platform.
The final install directory needs exactly one copy of each library —
Everest's where it has one, the game's otherwise — under the names the
new runtime loads.

HOW: Three steps, kept separate so each can be tested on its own:
  merge_library_sets — overlay the override set onto the shipped set,
                       matching by filename only
  copy_libraries     — apply the rename table, copy into the install
                       directory, and on Linux add compatibility symlinks
  reconcile_libraries — discovery + merge + copy for one platform

RULES:
- Override entries win on a filename collision and keep the shipped
  entry's position; overrides without a collision are appended in order
- Renames are applied at copy time only; collisions use pre-rename names
- A copy whose source and destination are the same path is skipped
- Existing destination files are overwritten
- Linux only: after a renamed copy, the original name becomes a symlink
  to the renamed file unless something already exists under that name
- Any copy failure propagates; there is no rollback
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Iterable, List

from vanilla_coreifier.platforms import PlatformLayout

logger = logging.getLogger(__name__)


def discover_override_libraries(override_dir: Path) -> List[Path]:
    """List the files directly inside a platform's override folder.

    Raises:
        FileNotFoundError: If the override folder does not exist.
    """
    if not override_dir.is_dir():
        raise FileNotFoundError("Override library folder not found: {}".format(override_dir))
    return sorted((p for p in override_dir.iterdir() if p.is_file()), key=lambda p: p.name)


def merge_library_sets(
    source_libs: Iterable[Path],
    override_libs: Iterable[Path],
) -> Dict[str, Path]:
    """Overlay the override set onto the source set.

    Args:
        source_libs: Libraries shipped with the game, in discovery order.
        override_libs: Everest's libraries for the same platform.

    Returns:
        Ordered mapping of filename → path to copy from.
    """
    merged: Dict[str, Path] = {}
    for path in source_libs:
        merged[path.name] = path
    for path in override_libs:
        # Assigning an existing key keeps its position
        merged[path.name] = path
    return merged


def copy_libraries(
    merged: Dict[str, Path],
    dest_dir: Path,
    layout: PlatformLayout,
) -> List[Path]:
    """Copy the merged set into the install directory.

    Returns:
        Destination paths, in merge order (skipped self-copies included).
    """
    installed: List[Path] = []
    for name, src in merged.items():
        final_name = layout.renames.get(name, name)
        dest = dest_dir / final_name

        if os.path.abspath(src) == os.path.abspath(dest):
            logger.debug("Skipping %s, already in place", dest)
            installed.append(dest)
            continue

        if dest.is_symlink():
            dest.unlink()
        shutil.copy(src, dest)
        logger.debug("Copied %s -> %s", src, dest)
        installed.append(dest)

        if layout.symlink_originals:
            legacy = dest_dir / name
            if not os.path.lexists(legacy):
                os.symlink(final_name, legacy)
                logger.debug("Linked %s -> %s", legacy, final_name)

    return installed


def reconcile_libraries(
    layout: PlatformLayout,
    install_dir: Path,
    override_root: Path,
) -> List[Path]:
    """Discover, merge and copy the native libraries for one platform.

    Args:
        layout: The target platform's layout.
        install_dir: Directory holding the game executable.
        override_root: Folder containing the per-platform override folders
            (normally ``<install_dir>/everest-lib``).

    Returns:
        The installed library paths.
    """
    source_libs = layout.discover_source_libraries(install_dir)
    override_libs = discover_override_libraries(override_root / layout.override_dir)
    merged = merge_library_sets(source_libs, override_libs)
    logger.info(
        "Reconciling %d native libraries for %s (%d shipped, %d overrides)",
        len(merged), layout.platform.value, len(source_libs), len(override_libs),
    )
    return copy_libraries(merged, install_dir, layout)
