"""Vanilla coreifier: move a vanilla Celeste install onto the new runtime.

WHY: The vanilla game targets the legacy framework and the XNA API.
Everest ships everything needed to run it on the new runtime (FNA, the
native libraries, apphost templates, the module converter), but putting
those pieces together in an existing game folder takes a fixed sequence
of file operations and one binary rewrite.

HOW: Four parts, each independently testable:
  sources    — where Everest's files and tools come from (local/remote)
  libraries  — native library reconciliation per platform
  relink     — rewrite XNA assembly references to FNA
  install    — the orchestrator that runs everything in order

RULES:
- The source is chosen once and used uniformly afterwards
- External tools are reached only through the source's import hook
"""

__version__ = "0.1.0"
