"""
Notecard DFU - firmware sideload and request tooling for Blues Notecards
"""

__version__ = "0.1.0"


# This function is a direct entry point for CLI use
def cli_main():
    """
    Entry point for the CLI command.
    This function is referenced in pyproject.toml
    """
    import sys
    from notecard_dfu.main import main
    sys.exit(main())
