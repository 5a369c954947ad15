"""
CLI layer for shipwright.

Provides a Typer application whose sub-commands delegate to
``shipwright.deploy`` and ``shipwright.startup``. This package handles only
terminal transport: argument parsing, coloured output and exit codes.

Entry point::

    shipwright --help
"""

from shipwright.cli.app import app

__all__ = ["app"]
