"""Durable storage for orgs, mappings, the current plan and the action ledger."""

from teamsync.store.models import Mapping, Org, SyncAction
from teamsync.store.sqlite import MappingStore

__all__ = ["Mapping", "MappingStore", "Org", "SyncAction"]
