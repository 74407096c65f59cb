"""Command-line interface."""

from teamsync.cli.app import app, main

__all__ = ["app", "main"]
