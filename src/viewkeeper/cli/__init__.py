"""Viewkeeper command line interface."""

from viewkeeper.cli.main import main

__all__ = ["main"]
