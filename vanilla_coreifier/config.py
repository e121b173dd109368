"""Configuration constants, file-layout names, and .env loading.

WHY: The installer touches a lot of fixed names — the Everest archive
layout, the library folder, apphost templates, the legacy framework
prefix. Keeping them as plain data here (not buried in logic) means
the layout can be checked and changed in one place.

HOW: python-dotenv loads the .env file on import. Network defaults are
read from the environment with fallbacks; file-layout names are plain
module-level constants.

RULES:
- Everything network-related can be overridden via environment variables
- File-layout names mirror the Everest distribution and are not overridable
- HTTP timeout of 0 means "no timeout" (blocking fetch, no retries)
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# Load .env from the directory the installer is run from
load_dotenv()

# ---------------------------------------------------------------------------
# Remote source (Everest version listing)
# ---------------------------------------------------------------------------

VERSIONS_URL = os.getenv(
    "COREIFIER_VERSIONS_URL",
    "https://maddie480.ovh/celeste/everest-versions?supportsNativeBuilds=true",
)
STABLE_BRANCH = os.getenv("COREIFIER_STABLE_BRANCH", "stable")
HTTP_TIMEOUT_S = float(os.getenv("COREIFIER_HTTP_TIMEOUT", "0"))
LOG_LEVEL = os.getenv("COREIFIER_LOG_LEVEL", "WARNING").upper()

ARCHIVE_ROOT = "main/"
"""Every entry of the Everest archive lives under this top-level folder."""

# ---------------------------------------------------------------------------
# Source layout
# ---------------------------------------------------------------------------

MODULE_SUFFIX = ".py"
BYTECODE_SUFFIX = ".pyc"

LIBRARY_DIR = "everest-lib"
APPHOSTS_DIR = "piton-apphosts"
RUNTIME_DESCRIPTOR = "piton-runtime.yaml"

DEFAULT_LOCAL_SOURCE = ".."

# ---------------------------------------------------------------------------
# Install defaults
# ---------------------------------------------------------------------------

DEFAULT_INPUT = "./Celeste.exe"
DEFAULT_OUTPUT = "CelesteVCore.dll"

LEGACY_FRAMEWORK_PREFIX = "Microsoft.Xna.Framework"
REPLACEMENT_MODULE = "FNA.dll"
REPLACEMENT_SYMBOLS = "FNA.pdb"


def http_timeout() -> float | None:
    """Return the httpx timeout in seconds, or None when disabled.

    RULES:
    - 0 (the default) or any negative value means no timeout
    """
    if HTTP_TIMEOUT_S <= 0:
        return None
    return HTTP_TIMEOUT_S
