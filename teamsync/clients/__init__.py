"""API clients for Microsoft Entra ID and Grafana."""

from teamsync.clients.entra import EntraClient
from teamsync.clients.grafana import GrafanaClient

__all__ = ["EntraClient", "GrafanaClient"]
