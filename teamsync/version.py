"""Version information for entra-grafana-sync."""

__version__ = "0.1.0"
