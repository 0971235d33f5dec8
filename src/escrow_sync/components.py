"""Wiring of ledger, registry, gateway and store into engines."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass

import httpx

from .db import has_db_dsn
from .engine import ReconciliationEngine
from .gateway import ExecutionGateway, HttpExecutionGateway
from .ledger import LedgerReader, LedgerRpc
from .metadata import InMemoryMetadataStore, MetadataStore, PostgresMetadataStore
from .registry import FallbackRegistry, RegistryAggregator
from .utils.config_loader import EscrowSyncConfig
from .utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

DEFAULT_SESSION = "default"


@dataclass
class Components:
    config: EscrowSyncConfig
    rpc: LedgerRpc
    reader: LedgerReader
    registry: RegistryAggregator
    gateway: ExecutionGateway
    metadata: MetadataStore
    fallback: FallbackRegistry
    http_client: httpx.AsyncClient | None = None

    def new_engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            reader=self.reader,
            registry=self.registry,
            gateway=self.gateway,
            metadata=self.metadata,
            fallback=self.fallback,
            factory_address=self.config.factory_address,
            sync=self.config.sync,
            limit=self.config.registry.default_limit,
        )

    async def aclose(self) -> None:
        gateway_close = getattr(self.gateway, "aclose", None)
        if gateway_close is not None:
            await gateway_close()
        if self.http_client is not None and not self.http_client.is_closed:
            await self.http_client.aclose()


def build_components(config: EscrowSyncConfig, *, http_client: httpx.AsyncClient | None = None) -> Components:
    client = http_client or httpx.AsyncClient(
        timeout=config.gateway.timeout_seconds,
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=50),
    )
    rpc = LedgerRpc(config.rpc_url, client=client)
    reader = LedgerReader(rpc)
    metadata: MetadataStore = PostgresMetadataStore() if has_db_dsn() else InMemoryMetadataStore()
    if not has_db_dsn():
        logger.warning("ESCROW_SYNC_PG_DSN not set; metadata kept in memory only")
    fallback = FallbackRegistry(config.registry.fallback_path)
    registry = RegistryAggregator(
        reader,
        metadata,
        fallback,
        factory_address=config.factory_address,
        event_window_blocks=config.sync.event_window_blocks,
    )
    gateway = HttpExecutionGateway(
        config.gateway,
        rpc,
        role_addresses=config.roles,
    )
    return Components(
        config=config,
        rpc=rpc,
        reader=reader,
        registry=registry,
        gateway=gateway,
        metadata=metadata,
        fallback=fallback,
        http_client=client,
    )


class SessionManager:
    """One engine per client session; idle sessions are evicted oldest-first."""

    def __init__(self, components: Components, max_sessions: int = 256):
        self.components = components
        self.max_sessions = max_sessions
        self._engines: "OrderedDict[str, ReconciliationEngine]" = OrderedDict()

    def get(self, session_id: str | None) -> ReconciliationEngine:
        key = (session_id or "").strip() or DEFAULT_SESSION
        engine = self._engines.get(key)
        if engine is None:
            engine = self.components.new_engine()
            self._engines[key] = engine
            self._evict()
        else:
            self._engines.move_to_end(key)
        return engine

    def _evict(self) -> None:
        if len(self._engines) <= self.max_sessions:
            return
        for key in list(self._engines.keys()):
            if len(self._engines) <= self.max_sessions:
                break
            if self._engines[key].pending_action is None:
                del self._engines[key]
                logger.info("Evicted idle session", session=key)

    def __len__(self) -> int:
        return len(self._engines)
