"""
Assembly of the dashboard core.

Builds the vault, session store, API client, entity registry, real-time
channel and orchestrator from one ``Settings`` object and wires them
together. Nothing here is a process-wide singleton; each call returns an
independent core.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from .config import Settings, get_settings
from .core.stores import EntityRegistry
from .integrations.api_client import ResilientClient
from .integrations.session import SessionStore
from .integrations.vault import CredentialVault, EncryptedVault, MemoryVault
from .monitoring.logging import setup_logging
from .realtime.channel import UpdateIngestionChannel
from .realtime.transport import PushTransport
from .workflows.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger(__name__)


@dataclass
class DashboardCore:
    """The wired components of one dashboard session."""

    settings: Settings
    session: SessionStore
    client: ResilientClient
    registry: EntityRegistry
    orchestrator: WorkflowOrchestrator
    channel: Optional[UpdateIngestionChannel] = None

    async def start(self) -> bool:
        """
        Restore a persisted session and start the real-time channel.

        Returns:
            bool: True if a session was restored
        """
        restored = self.client.restore() is not None
        logger.info("dashboard_core_starting", session_restored=restored)
        if self.channel is not None:
            await self.channel.start()
        return restored

    async def stop(self) -> None:
        logger.info("dashboard_core_stopping")
        await self.orchestrator.shutdown()


def build_vault(settings: Settings, inner: Optional[CredentialVault] = None) -> CredentialVault:
    """Wrap the vault with encryption when a vault secret is configured."""
    vault = inner or MemoryVault()
    if settings.vault_secret:
        return EncryptedVault(vault, settings.vault_secret)
    if settings.is_production:
        logger.warning("credential_vault_unencrypted")
    return vault


def create_dashboard_core(
    settings: Optional[Settings] = None,
    transport: Optional[PushTransport] = None,
    vault: Optional[CredentialVault] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    configure_logging: bool = False,
) -> DashboardCore:
    """
    Build a fully wired dashboard core.

    Args:
        settings: Settings, defaults to ``get_settings()``
        transport: Push transport; no real-time channel when omitted
        vault: Backing credential store, encrypted when ``vault_secret`` is set
        http_client: Preconfigured HTTP client
        configure_logging: Configure structlog JSON logging first

    Returns:
        DashboardCore: The assembled components
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    session = SessionStore(build_vault(settings, vault))
    client = ResilientClient(settings=settings, session_store=session, http_client=http_client)
    registry = EntityRegistry(settings)
    channel = (
        UpdateIngestionChannel(transport, registry, settings=settings)
        if transport is not None
        else None
    )
    orchestrator = WorkflowOrchestrator(client, registry, settings=settings, channel=channel)

    logger.info(
        "dashboard_core_created",
        api_base_url=settings.api_base_url,
        realtime=channel is not None,
        vault_encrypted=bool(settings.vault_secret),
    )
    return DashboardCore(
        settings=settings,
        session=session,
        client=client,
        registry=registry,
        orchestrator=orchestrator,
        channel=channel,
    )
