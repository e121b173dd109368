"""Install orchestrator: turn a vanilla game install into a new-runtime one.

WHY: Each step (library reconciliation, conversion, relinking, runtime
config, apphost binding) is useful on its own, but an install is only
correct when they run in the right order against the same directory.
This module is the single place that order lives.

HOW: install() runs the steps sequentially:
  1. Mirror everest-lib/ next to the game executable
  2. Reconcile native libraries for the target platform
  3. Copy the replacement framework module and its symbols
  4. Convert the game module (input symbols hidden meanwhile)
  5. Relink the converted module from XNA to FNA
  6. Write runtime config files
  7. Bind the platform's apphost (plus wrapper script on Linux/macOS)
  8. Copy the runtime descriptor
Progress goes through the on_status callback; detail goes to logging.

RULES:
- The install directory is the directory of the input executable
- Steps stop at the first failure; there is no rollback
- The input's symbol file is restored even when conversion fails
- Windows resources are copied into the apphost only when this process
  runs on Windows, whatever the target platform is
- The source is NOT released here; the caller owns its lifetime
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from vanilla_coreifier.collaborators import Collaborators
from vanilla_coreifier.config import (
    DEFAULT_OUTPUT,
    LEGACY_FRAMEWORK_PREFIX,
    LIBRARY_DIR,
    REPLACEMENT_MODULE,
    REPLACEMENT_SYMBOLS,
    RUNTIME_DESCRIPTOR,
)
from vanilla_coreifier.libraries import reconcile_libraries
from vanilla_coreifier.platforms import InstallPlatform, PlatformLayout, layout_for
from vanilla_coreifier.relink import RelinkResult, hidden_symbols, relink_references
from vanilla_coreifier.sources.base import BaseSource

logger = logging.getLogger(__name__)

HOST_SUFFIX = "_host"

_WRAPPER_TEMPLATE = """#!/bin/bash
cd "`dirname "$0"`"
if [ "$UNAME" == "Darwin" ]; then
    export DYLD_LIBRARY_PATH="$DYLD_LIBRARY_PATH:."
else
    export LD_LIBRARY_PATH="$LD_LIBRARY_PATH:."
fi
./{name}_host
"""


@dataclass
class InstallOptions:
    """What to install and for which platform.

    Attributes:
        input_path: The vanilla game executable (e.g. ``Celeste.exe``).
        platform: Target platform.
        output_name: Filename of the converted module, created next to
            the input.
        is_64bit: Process bitness for the Windows override set; None
            means the running process's.
        os_is_64bit: OS bitness for the Windows apphost template; None
            means the running OS's.
    """

    input_path: Path
    platform: InstallPlatform
    output_name: str = DEFAULT_OUTPUT
    is_64bit: Optional[bool] = None
    os_is_64bit: Optional[bool] = None

    @property
    def install_dir(self) -> Path:
        return Path(self.input_path).resolve().parent

    @property
    def output_path(self) -> Path:
        return self.install_dir / self.output_name


@dataclass
class InstallResult:
    """Summary of a completed install."""

    output_path: Path
    host_path: Path
    libraries: List[Path] = field(default_factory=list)
    relink: RelinkResult = field(default_factory=RelinkResult)


def _host_is_windows() -> bool:
    return sys.platform.startswith("win")


def host_path_for(input_path: Path, target: InstallPlatform) -> Path:
    """Where the apphost is written for a target platform.

    Windows replaces the executable itself; Linux and macOS write
    ``<input without extension>_host`` beside it.
    """
    if target is InstallPlatform.WINDOWS:
        return input_path
    return input_path.with_name(input_path.stem + HOST_SUFFIX)


def write_library_path_wrapper(dest: Path) -> Path:
    """Write the launcher script that adds ``.`` to the library path.

    The script changes to its own directory, extends LD_LIBRARY_PATH (or
    DYLD_LIBRARY_PATH on macOS) and runs ``./<name>_host``.
    """
    dest.write_text(_WRAPPER_TEMPLATE.format(name=dest.name), encoding="utf-8")
    mode = dest.stat().st_mode
    dest.chmod(mode | 0o111)
    logger.debug("Wrote launcher %s", dest)
    return dest


def bind_apphost(
    options: InstallOptions,
    layout: PlatformLayout,
    apphosts_dir: Path,
    collaborators: Collaborators,
    on_status: Optional[Callable[[str], None]] = None,
) -> Path:
    """Bind the platform's apphost to the converted module.

    Returns:
        Path of the bound host executable.
    """
    input_path = Path(options.input_path).resolve()
    output_path = options.output_path
    template = apphosts_dir / layout.apphost_template
    host_path = host_path_for(input_path, layout.platform)
    entry = os.path.relpath(output_path, output_path.parent)

    if layout.platform is InstallPlatform.WINDOWS:
        resources_from = str(output_path) if _host_is_windows() else None
        if on_status:
            on_status("Binding Windows apphost {}...".format(host_path.name))
        collaborators.create_app_host(
            str(template), str(host_path), entry,
            resources_from=resources_from, windows_gui=True,
        )
        return host_path

    if on_status:
        on_status("Binding {} apphost {}...".format(layout.platform.value, host_path.name))
    collaborators.create_app_host(str(template), str(host_path), entry)

    if layout.platform is InstallPlatform.LINUX:
        write_library_path_wrapper(input_path.with_name(input_path.stem))
    else:
        exec_dir = input_path.parent.parent / "MacOS"
        exec_dir.mkdir(parents=True, exist_ok=True)
        link = exec_dir / (input_path.stem + HOST_SUFFIX)
        if os.path.lexists(link):
            link.unlink()
        os.symlink(os.path.relpath(host_path, exec_dir), link)
        logger.debug("Linked %s -> %s", link, host_path)
        write_library_path_wrapper(exec_dir / input_path.stem)

    return host_path


def install(
    options: InstallOptions,
    source: BaseSource,
    collaborators: Optional[Collaborators] = None,
    on_status: Optional[Callable[[str], None]] = None,
) -> InstallResult:
    """Run the full install against one game directory.

    Args:
        options: Input executable, target platform and output name.
        source: An open Everest source with its import hook installed.
        collaborators: External tools; looked up through the source's
            hook when omitted.
        on_status: Optional callback for progress messages.

    Returns:
        InstallResult with the converted module, host and libraries.

    Raises:
        FileNotFoundError: If the input executable does not exist.
        SourceNotFoundError: If the source lacks a required file.
        CollaboratorError: If an external tool cannot be loaded.
        MetadataFormatError / RelinkWriteFailed: If relinking fails.
    """
    def status(msg: str) -> None:
        logger.info(msg)
        if on_status:
            on_status(msg)

    input_path = Path(options.input_path).resolve()
    if not input_path.is_file():
        raise FileNotFoundError("Input executable not found: {}".format(input_path))

    install_dir = options.install_dir
    output_path = options.output_path
    layout = layout_for(options.platform, options.is_64bit, options.os_is_64bit)
    logger.info("Installing from %s into %s (%s)", source.name, install_dir, layout.platform.value)

    status("Copying {}...".format(LIBRARY_DIR))
    library_root = source.copy_directory(LIBRARY_DIR, install_dir)

    status("Reconciling native libraries ({})...".format(layout.override_dir))
    libraries = reconcile_libraries(layout, install_dir, library_root)

    source.copy_file("{}/{}".format(LIBRARY_DIR, REPLACEMENT_MODULE), install_dir)
    source.copy_file("{}/{}".format(LIBRARY_DIR, REPLACEMENT_SYMBOLS), install_dir)

    if collaborators is None:
        collaborators = Collaborators.from_modules()

    status("Converting {} -> {}...".format(input_path.name, output_path.name))
    with hidden_symbols(input_path):
        collaborators.convert(str(input_path), str(output_path))

    status("Relinking {}...".format(output_path.name))
    with hidden_symbols(output_path):
        relink = relink_references(
            output_path, install_dir / REPLACEMENT_MODULE, LEGACY_FRAMEWORK_PREFIX
        )

    status("Creating runtime config files...")
    collaborators.create_runtime_config(str(output_path), None)

    host_path = bind_apphost(options, layout, source.apphosts_path(), collaborators, on_status)

    source.copy_file("{}/{}".format(LIBRARY_DIR, RUNTIME_DESCRIPTOR), install_dir)
    status("Done: {}".format(output_path))

    return InstallResult(
        output_path=output_path,
        host_path=host_path,
        libraries=libraries,
        relink=relink,
    )
