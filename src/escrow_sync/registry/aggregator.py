"""Merge escrow addresses from the metadata store, the ledger event feed and the
local fallback list into one de-duplicated, newest-first listing."""

from __future__ import annotations

import asyncio

from ..errors import TransportError
from ..ledger.reader import LedgerReader
from ..metadata import MetadataStore
from ..models import EscrowMetadata, Provenance, RegistryEntry, RegistryListing, canonical_address
from ..utils.logging_config import StructuredLogger
from .fallback import FallbackRegistry

logger = StructuredLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 200


def clamp_limit(limit: int) -> int:
    return max(MIN_LIMIT, min(MAX_LIMIT, int(limit)))


class RegistryAggregator:
    def __init__(
        self,
        reader: LedgerReader,
        metadata: MetadataStore,
        fallback: FallbackRegistry,
        *,
        factory_address: str,
        event_window_blocks: int = 10,
    ):
        self.reader = reader
        self.metadata = metadata
        self.fallback = fallback
        self.factory_address = canonical_address(factory_address)
        self.event_window_blocks = event_window_blocks

    async def _metadata_records(self, limit: int) -> list[EscrowMetadata]:
        try:
            records = await self.metadata.list_recent(limit)
        except Exception as exc:
            logger.warning("Metadata store unavailable; continuing without it", error=str(exc))
            return []
        return sorted(
            records,
            key=lambda r: r.created_at.timestamp() if r.created_at else 0.0,
            reverse=True,
        )

    async def _event_feed(self) -> list[str] | None:
        try:
            return await self.reader.recent_creations(self.factory_address, self.event_window_blocks)
        except TransportError as exc:
            # Providers commonly cap eth_getLogs ranges; the feed is best-effort
            logger.warning("Event feed unavailable; using stored registries", error=exc.message)
            return None

    async def list_escrows(self, limit: int = 20) -> RegistryListing:
        limit = clamp_limit(limit)
        records, created = await asyncio.gather(self._metadata_records(limit), self._event_feed())

        listing = RegistryListing(event_feed_ok=created is not None)
        seen: set[str] = set()

        def add(address: str, provenance: Provenance) -> None:
            key = canonical_address(address)
            if key in seen:
                return
            seen.add(key)
            listing.entries.append(RegistryEntry(address=key, provenance=provenance))

        for record in records:
            add(record.address, Provenance.METADATA_STORE)
        for address in created or []:
            add(address, Provenance.EVENT_FEED)
        if created is None:
            for address in reversed(self.fallback.load()):
                add(address, Provenance.LOCAL_FALLBACK)

        listing.entries = listing.entries[:limit]
        kept = set(listing.addresses)
        listing.metadata = [r for r in records if canonical_address(r.address) in kept]

        logger.info(
            "Registry aggregated",
            total=len(listing.entries),
            from_metadata=len(records),
            from_events=len(created or []),
            event_feed_ok=listing.event_feed_ok,
        )
        return listing
