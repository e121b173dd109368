"""Call boundary for the external conversion, runtime-config and apphost tools.

WHY: The heavy lifting (converting the game module to the new runtime,
writing runtime config files, binding an apphost) is done by modules
that ship with Everest, not with this installer. They only become
importable once a source's import hook is installed, so they have to be
looked up lazily, and tests need to swap them for plain callables.

HOW: Collaborators is a dataclass of three callables. from_modules()
imports the Everest-side modules by name (resolved through the active
source's hook) and picks out the entry points. Tests construct the
dataclass directly with fakes.

RULES:
- Nothing is imported until from_modules() is called
- A missing module or entry point raises CollaboratorError
- Errors raised by the collaborators themselves propagate unchanged
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

CONVERTER_MODULE = "netcoreifier"
CONVERTER_FUNCTION = "convert_to_net_core"
RUNTIME_CONFIG_MODULE = "miniinstaller"
RUNTIME_CONFIG_FUNCTION = "create_runtime_config_files"
HOST_WRITER_MODULE = "hostwriter"
HOST_WRITER_FUNCTION = "create_app_host"


class CollaboratorError(RuntimeError):
    """Raised when an Everest-side tool cannot be found.

    WHY: A source without the converter or host writer cannot produce a
    working install; this is reported before any conversion starts.

    RULES:
    - Message names the module and attribute that were looked up
    """


def _lookup(module_name: str, attribute: str) -> Callable[..., Any]:
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CollaboratorError(
            "Could not load {} from the Everest source: {}".format(module_name, e)
        ) from e

    func = getattr(module, attribute, None)
    if not callable(func):
        raise CollaboratorError("{} has no callable {}".format(module_name, attribute))
    logger.debug("Loaded %s.%s from %s", module_name, attribute, getattr(module, "__file__", "?"))
    return func


@dataclass
class Collaborators:
    """The three external tools the install drives.

    Attributes:
        convert: ``convert(input_path, output_path)`` converts the game
            module for the new runtime.
        create_runtime_config: ``create_runtime_config(module_path, extra)``
            writes the runtime config files next to the module.
        create_app_host: ``create_app_host(template, host_path, entry,
            resources_from=None, windows_gui=False)`` binds an apphost.
    """

    convert: Callable[[str, str], None]
    create_runtime_config: Callable[..., None]
    create_app_host: Callable[..., None]

    @classmethod
    def from_modules(cls) -> Collaborators:
        """Import the collaborators through the active source's import hook."""
        return cls(
            convert=_lookup(CONVERTER_MODULE, CONVERTER_FUNCTION),
            create_runtime_config=_lookup(RUNTIME_CONFIG_MODULE, RUNTIME_CONFIG_FUNCTION),
            create_app_host=_lookup(HOST_WRITER_MODULE, HOST_WRITER_FUNCTION),
        )
