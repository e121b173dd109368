"""Package entry point for ``python -m vanilla_coreifier``.

RULES:
- This file must exist for ``python -m vanilla_coreifier`` to work
- All arguments are handled by the CLI's main()
"""

if __name__ == "__main__":
    from vanilla_coreifier.cli import main
    main()
