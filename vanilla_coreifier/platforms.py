"""Target platforms and their native-library layouts.

WHY: Windows, Linux and macOS builds of the game ship their native
libraries in different places, under different (ABI-versioned) names,
and the Everest override set lives in a different folder per platform.
The reconciler and the orchestrator need all of that as data, selected
once at startup and passed around explicitly.

HOW: InstallPlatform is a str enum. PlatformLayout bundles the override
folder, the rename table, and how to discover the libraries already
shipped next to the executable. layout_for() builds the layout for a
platform; detect_platform() resolves a forced name or the host OS.

RULES:
- Platform names parse case-insensitively ("linux", "Linux", "LINUX")
- Unknown names and unknown host systems raise UnsupportedPlatformError
- Rename tables are applied at copy time only, never during merging
- Windows picks the x64 or x86 override set from the process bitness,
  and the x64 or x86 apphost template from the operating system's
"""

from __future__ import annotations

import enum
import platform as host_platform
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


class UnsupportedPlatformError(ValueError):
    """Raised when no known install platform can be selected.

    WHY: Every later step (library layout, apphost template) depends on
    the platform, so an unknown one is fatal right at startup.

    RULES:
    - Message names the offending value and the known platforms
    """


class InstallPlatform(str, enum.Enum):
    """The three platforms the installer can target.

    HOW: Inherits from str so values print and compare cleanly.
    """

    WINDOWS = "windows"
    LINUX = "linux"
    MACOS = "macos"

    @classmethod
    def parse(cls, name: str) -> InstallPlatform:
        """Parse a platform name case-insensitively."""
        key = name.strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise UnsupportedPlatformError(
            "Could not parse '{}' as a platform (known: {})".format(
                name, ", ".join(m.value for m in cls)
            )
        )


# ---------------------------------------------------------------------------
# Static rename tables: shipped (ABI-versioned) name → canonical name
# ---------------------------------------------------------------------------

WINDOWS_RENAMES: Dict[str, str] = {
    "fmodstudio64.dll": "fmodstudio.dll",
}

LINUX_RENAMES: Dict[str, str] = {
    "libfmod.so.10": "libfmod.so",
    "libfmodstudio.so.10": "libfmodstudio.so",
    "libSDL2-2.0.so.0": "libSDL2.so",
    "libFNA3D.so.0": "libFNA3D.so",
    "libFAudio.so.0": "libFAudio.so",
}

MACOS_RENAMES: Dict[str, str] = {
    "libSDL2-2.0.0.dylib": "libSDL2.dylib",
    "libFNA3D.0.dylib": "libFNA3D.dylib",
    "libFAudio.0.dylib": "libFAudio.dylib",
}


@dataclass
class PlatformLayout:
    """Everything platform-specific the reconciler and orchestrator need.

    RULES:
    - override_dir is relative to the source's library folder
    - renames maps a shipped filename to its final filename
    - symlink_originals is True only for Linux targets
    - apphost_template is the template filename inside the apphosts folder
    """

    platform: InstallPlatform
    override_dir: str
    apphost_template: str
    renames: Dict[str, str] = field(default_factory=dict)
    symlink_originals: bool = False

    def discover_source_libraries(self, install_dir: Path) -> List[Path]:
        """List the native libraries shipped next to the game executable.

        HOW: Windows takes every ``*.dll`` in the install directory,
        Linux every file directly under ``lib64``, macOS every file under
        the sibling ``MacOS/osx`` folder. Missing folders yield nothing.
        The result is sorted by name so discovery order is stable.
        """
        if self.platform is InstallPlatform.WINDOWS:
            candidates = [p for p in install_dir.iterdir() if p.name.endswith(".dll")]
        elif self.platform is InstallPlatform.LINUX:
            candidates = _files_in(install_dir / "lib64")
        else:
            candidates = _files_in(install_dir.parent / "MacOS" / "osx")
        return sorted((p for p in candidates if p.is_file()), key=lambda p: p.name)


def _files_in(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return [p for p in directory.iterdir() if p.is_file()]


def host_is_64bit() -> bool:
    """Return True when the running interpreter is a 64-bit process."""
    return struct.calcsize("P") == 8


def host_os_is_64bit() -> bool:
    """Return True when the operating system is 64-bit.

    A 32-bit interpreter on 64-bit Windows still reports the OS machine
    (AMD64, ARM64), so this can differ from host_is_64bit().
    """
    return host_platform.machine().endswith("64")


def layout_for(
    target: InstallPlatform,
    is_64bit: Optional[bool] = None,
    os_is_64bit: Optional[bool] = None,
) -> PlatformLayout:
    """Build the PlatformLayout for a target platform.

    Args:
        target: The platform being installed for.
        is_64bit: Process bitness, selecting the Windows override set;
            defaults to the running process.
        os_is_64bit: OS bitness, selecting the Windows apphost template;
            defaults to the running OS.

    Returns:
        The layout with override folder, rename table and apphost name.
    """
    if is_64bit is None:
        is_64bit = host_is_64bit()
    if os_is_64bit is None:
        os_is_64bit = host_os_is_64bit()

    if target is InstallPlatform.WINDOWS:
        return PlatformLayout(
            platform=target,
            override_dir="lib64-win-{}".format("x64" if is_64bit else "x86"),
            apphost_template="win.{}.exe".format("x64" if os_is_64bit else "x86"),
            renames=dict(WINDOWS_RENAMES),
        )
    if target is InstallPlatform.LINUX:
        return PlatformLayout(
            platform=target,
            override_dir="lib64-linux",
            apphost_template="linux",
            renames=dict(LINUX_RENAMES),
            symlink_originals=True,
        )
    if target is InstallPlatform.MACOS:
        return PlatformLayout(
            platform=target,
            override_dir="lib64-osx",
            apphost_template="osx",
            renames=dict(MACOS_RENAMES),
        )
    raise UnsupportedPlatformError("Unsupported platform: {}".format(target))


def detect_platform(forced: Optional[str] = None) -> InstallPlatform:
    """Resolve the install platform from a forced name or the host OS.

    RULES:
    - A non-empty forced name always wins
    - Otherwise win32 → Windows, linux → Linux, darwin → macOS
    - Anything else raises UnsupportedPlatformError
    """
    if forced:
        return InstallPlatform.parse(forced)

    if sys.platform.startswith("win"):
        return InstallPlatform.WINDOWS
    if sys.platform.startswith("linux"):
        return InstallPlatform.LINUX
    if sys.platform == "darwin":
        return InstallPlatform.MACOS
    raise UnsupportedPlatformError(
        "Could not detect a supported platform for host '{}' ({})".format(
            sys.platform, host_platform.system()
        )
    )
