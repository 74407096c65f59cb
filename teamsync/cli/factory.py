"""Builds clients and sync components from configuration."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

import structlog

from teamsync.clients.entra import EntraClient
from teamsync.clients.exceptions import ConfigurationError
from teamsync.clients.grafana import GrafanaClient
from teamsync.config.models import EntraConfig, GrafanaConfig, SyncConfig
from teamsync.core.cache import ExternalStateCache
from teamsync.core.engine import SyncEngine
from teamsync.core.executor import ExecutionResult
from teamsync.core.scheduler import SyncScheduler
from teamsync.security.validation import sanitize_log_input
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)


class ClientFactory:
    """Factory for creating API clients from configuration."""

    @staticmethod
    def create_grafana_client(config: GrafanaConfig) -> GrafanaClient:
        """Create Grafana client from configuration.

        Raises:
            ConfigurationError: If the client cannot be constructed
        """
        try:
            return GrafanaClient(
                url=config.url,
                admin_user=config.admin_user,
                admin_password=config.admin_password,
                admin_token=config.admin_token,
                insecure_tls=config.insecure_tls,
                timeout_seconds=config.timeout_seconds,
                rate_limit_per_minute=config.rate_limit_per_minute,
                max_retries=config.max_retries,
                retry_delay_seconds=config.retry_delay_seconds,
            )
        except Exception as e:
            logger.error(
                "Failed to create Grafana client",
                url=sanitize_log_input(config.url),
                error=sanitize_log_input(str(e)),
            )
            raise ConfigurationError(f"Failed to create Grafana client: {e}") from e

    @staticmethod
    def create_entra_client(config: EntraConfig) -> EntraClient:
        """Create Entra client from configuration.

        Raises:
            ConfigurationError: If the client cannot be constructed
        """
        try:
            return EntraClient(
                tenant_id=config.tenant_id,
                client_id=config.client_id,
                client_secret=config.client_secret,
                authority_base_url=config.authority_base_url,
                graph_api_base_url=config.graph_api_base_url,
                timeout_seconds=config.timeout_seconds,
                rate_limit_per_minute=config.rate_limit_per_minute,
                max_retries=config.max_retries,
                retry_delay_seconds=config.retry_delay_seconds,
            )
        except Exception as e:
            logger.error(
                "Failed to create Entra client",
                tenant_id=sanitize_log_input(config.tenant_id),
                error=sanitize_log_input(str(e)),
            )
            raise ConfigurationError(f"Failed to create Entra client: {e}") from e

    @staticmethod
    async def check_health(grafana_client: GrafanaClient, entra_client: EntraClient) -> Dict[str, bool]:
        """Return reachability of each API; failures are logged, never raised."""
        results = {}
        for name, client in (("grafana", grafana_client), ("entra", entra_client)):
            try:
                results[name] = await client.health_check()
            except Exception as e:
                results[name] = False
                logger.error(
                    "Health check failed",
                    client=name,
                    error=sanitize_log_input(str(e)),
                )
        return results


class ComponentFactory:
    """Factory for creating sync components."""

    @staticmethod
    def create_store(config: SyncConfig) -> MappingStore:
        return MappingStore(config.store.database_path)

    @staticmethod
    def create_engine(
        config: SyncConfig,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
        progress_callback: Optional[Callable[[ExecutionResult], None]] = None,
    ) -> SyncEngine:
        """Create the sync engine with policy and schedule settings applied."""
        return SyncEngine(
            store=store,
            grafana_client=grafana_client,
            entra_client=entra_client,
            default_user_role=config.sync.default_user_role.value,
            allow_create_users=config.sync.allow_create_users,
            allow_remove_team_members=config.sync.allow_remove_team_members,
            cycle_timeout_seconds=config.schedule.cycle_timeout_seconds,
            lock_ttl_seconds=config.schedule.lock_ttl_seconds,
            progress_callback=progress_callback,
        )

    @staticmethod
    def create_cache(
        config: SyncConfig,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
    ) -> ExternalStateCache:
        return ExternalStateCache(
            store=store,
            grafana_client=grafana_client,
            entra_client=entra_client,
            ttl_seconds=config.schedule.cache_ttl_seconds,
        )

    @staticmethod
    def create_scheduler(config: SyncConfig, engine: SyncEngine) -> SyncScheduler:
        return SyncScheduler(engine, interval_seconds=config.schedule.interval_seconds)


@dataclass
class Components:
    """Everything a CLI command needs, opened together and closed together."""

    config: SyncConfig
    store: MappingStore
    grafana_client: GrafanaClient
    entra_client: EntraClient
    engine: SyncEngine


@asynccontextmanager
async def open_components(
    config: SyncConfig,
    progress_callback: Optional[Callable[[ExecutionResult], None]] = None,
) -> AsyncIterator[Components]:
    """Open the store and both clients; close them on exit."""
    store = ComponentFactory.create_store(config)
    grafana_client = ClientFactory.create_grafana_client(config.grafana)
    entra_client = ClientFactory.create_entra_client(config.entra)
    try:
        engine = ComponentFactory.create_engine(config, store, grafana_client, entra_client, progress_callback)
        yield Components(
            config=config,
            store=store,
            grafana_client=grafana_client,
            entra_client=entra_client,
            engine=engine,
        )
    finally:
        await grafana_client.close()
        await entra_client.close()
        store.close()
