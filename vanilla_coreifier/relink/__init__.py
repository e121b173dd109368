"""Binary relinking of compiled game modules.

relink_references() swaps the legacy framework references for one
reference to the replacement module; hidden_symbols() keeps a module's
debug symbols out of the way while it is rewritten.
"""

from vanilla_coreifier.relink.metadata import AssemblyIdentity, CliModule
from vanilla_coreifier.relink.pe import MetadataFormatError
from vanilla_coreifier.relink.relinker import (
    RelinkResult,
    RelinkWriteFailed,
    hidden_symbols,
    relink_references,
)

__all__ = [
    "AssemblyIdentity",
    "CliModule",
    "MetadataFormatError",
    "RelinkResult",
    "RelinkWriteFailed",
    "hidden_symbols",
    "relink_references",
]
