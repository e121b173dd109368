"""Command-line interface for the vanilla coreifier.

WHY: Players run this once, from the terminal, against their game
folder. The CLI wires together source selection, platform detection and
the install orchestrator behind a single command, and turns every known
failure into a one-line error instead of a traceback.

HOW: Uses argparse to accept the input executable, output module name,
target platform and the Everest source (a local folder, or --remote for
the latest stable release). Opens the source as a context manager so its
import hook and temporary files are released on every exit path, then
runs install(). Status messages go to stderr.

RULES:
- --remote and --everest-path are mutually exclusive
- Without --remote the local source defaults to ".."
- --platform parses case-insensitively; without it the host OS decides
- Known errors print "Error: ..." to stderr and exit 1
- Ctrl-C exits 130
- Status output goes to stderr (not stdout)
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from vanilla_coreifier import __version__
from vanilla_coreifier.collaborators import CollaboratorError
from vanilla_coreifier.config import (
    DEFAULT_INPUT,
    DEFAULT_LOCAL_SOURCE,
    DEFAULT_OUTPUT,
    LOG_LEVEL,
)
from vanilla_coreifier.install import InstallOptions, install
from vanilla_coreifier.platforms import UnsupportedPlatformError, detect_platform
from vanilla_coreifier.relink import MetadataFormatError, RelinkWriteFailed
from vanilla_coreifier.sources import RemoteSourceError, SourceNotFoundError, open_source


def _status(msg: str) -> None:
    """Print a status message to stderr.

    RULES:
    - All status messages go to stderr
    - Always flush after writing
    """
    print(msg, file=sys.stderr, flush=True)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, LOG_LEVEL, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _run(args: argparse.Namespace) -> None:
    platform = detect_platform(args.platform)
    options = InstallOptions(
        input_path=Path(args.input),
        platform=platform,
        output_name=args.output,
    )
    _status("Installing for {} into {}".format(platform.value, options.install_dir))

    with open_source(
        remote=args.remote,
        local_root=args.everest_path,
        on_status=_status,
    ) as source:
        _status("Using Everest source {}".format(source.name))
        result = install(options, source, on_status=_status)

    _status("")
    _status("Done! Converted module: {}".format(result.output_path))
    if result.relink.changed:
        _status("  Relinked {} reference(s) to {}".format(
            len(result.relink.removed), result.relink.added
        ))
    _status("  Host: {}".format(result.host_path))


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable; tests can inspect the parser without running an install.
    """
    parser = argparse.ArgumentParser(
        prog="vanilla_coreifier",
        description="Convert a vanilla Celeste install to run on the new "
                    "runtime using files from an Everest build.",
    )

    parser.add_argument(
        "--input",
        default=DEFAULT_INPUT,
        help="Path to the game executable (default: %(default)s).",
    )

    parser.add_argument(
        "--output",
        default=DEFAULT_OUTPUT,
        help="Filename of the converted module, written next to the input "
             "(default: %(default)s).",
    )

    parser.add_argument(
        "--platform",
        default=None,
        help="Target platform: windows, linux or macos (default: the host OS).",
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--remote",
        action="store_true",
        help="Download the latest stable Everest release instead of using a local folder.",
    )
    source.add_argument(
        "--everest-path",
        default=DEFAULT_LOCAL_SOURCE,
        help="Local Everest folder to install from (default: %(default)s).",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging.",
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s {}".format(__version__),
    )

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        _run(args)
    except KeyboardInterrupt:
        _status("\nCancelled by user.")
        sys.exit(130)
    except (
        UnsupportedPlatformError,
        SourceNotFoundError,
        RemoteSourceError,
        CollaboratorError,
        MetadataFormatError,
        RelinkWriteFailed,
        OSError,
    ) as e:
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
