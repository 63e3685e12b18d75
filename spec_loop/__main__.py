"""
Entry point for running spec_loop as a module.

Allows running as: python -m spec_loop
"""

from spec_loop.cli import cli_main

if __name__ == "__main__":
    cli_main()
