"""Reconcile Grafana teams and org roles from Microsoft Entra ID group membership."""

from teamsync.version import __version__

__all__ = ["__version__"]
