"""Off-ledger escrow metadata store client.

Records are written once when an escrow is created and never updated by this
layer. They describe escrows (title, parties, creation time) but are never
consulted for escrow state.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, UTC
from decimal import Decimal

from .db import get_db_connection
from .models import DEFAULT_TITLE, EscrowMetadata, canonical_address
from .utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


class MetadataStore(ABC):
    @abstractmethod
    async def list_recent(self, limit: int) -> list[EscrowMetadata]:
        """Records ordered by creation time, newest first."""

    @abstractmethod
    async def get(self, address: str) -> EscrowMetadata | None:
        ...

    @abstractmethod
    async def save(self, record: EscrowMetadata) -> bool:
        """Insert once; returns False when a record for the address already exists."""


def _row_to_record(row: dict) -> EscrowMetadata:
    return EscrowMetadata(
        address=canonical_address(row["address"]),
        title=row["title"] or DEFAULT_TITLE,
        client_address=row["client_address"],
        provider_address=row["provider_address"],
        total_amount=Decimal(str(row["total_amount"])),
        created_at=row["created_at"],
    )


class PostgresMetadataStore(MetadataStore):
    """psycopg-backed store; blocking calls run in a worker thread."""

    def _list_recent(self, limit: int) -> list[EscrowMetadata]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT address, title, client_address, provider_address, total_amount, created_at
                FROM escrows
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (limit,),
            ).fetchall()
        records = []
        for row in rows:
            try:
                records.append(_row_to_record(row))
            except Exception as exc:
                logger.warning("Skipping malformed metadata row", address=row.get("address"), error=str(exc))
        return records

    def _get(self, address: str) -> EscrowMetadata | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT address, title, client_address, provider_address, total_amount, created_at
                FROM escrows WHERE address = %s
                """,
                (canonical_address(address),),
            ).fetchone()
        return _row_to_record(row) if row else None

    def _save(self, record: EscrowMetadata) -> bool:
        with get_db_connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO escrows (address, title, client_address, provider_address, total_amount)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (address) DO NOTHING
                """,
                (
                    canonical_address(record.address),
                    record.title or DEFAULT_TITLE,
                    canonical_address(record.client_address),
                    canonical_address(record.provider_address),
                    str(record.total_amount),
                ),
            )
            conn.commit()
            inserted = cur.rowcount > 0
        if inserted:
            logger.info("Escrow metadata saved", address=record.address, title=record.title)
        else:
            logger.info("Escrow metadata already present", address=record.address)
        return inserted

    async def list_recent(self, limit: int) -> list[EscrowMetadata]:
        return await asyncio.to_thread(self._list_recent, limit)

    async def get(self, address: str) -> EscrowMetadata | None:
        return await asyncio.to_thread(self._get, address)

    async def save(self, record: EscrowMetadata) -> bool:
        return await asyncio.to_thread(self._save, record)


class InMemoryMetadataStore(MetadataStore):
    """Process-local store used when no database is configured."""

    def __init__(self, records: list[EscrowMetadata] | None = None):
        self._records: dict[str, EscrowMetadata] = {}
        for record in records or []:
            self._records[canonical_address(record.address)] = record

    async def list_recent(self, limit: int) -> list[EscrowMetadata]:
        ordered = sorted(
            self._records.values(),
            key=lambda r: r.created_at.timestamp() if r.created_at else 0.0,
            reverse=True,
        )
        return ordered[:limit]

    async def get(self, address: str) -> EscrowMetadata | None:
        return self._records.get(canonical_address(address))

    async def save(self, record: EscrowMetadata) -> bool:
        key = canonical_address(record.address)
        if key in self._records:
            return False
        if record.created_at is None:
            record = replace(record, created_at=datetime.now(UTC))
        self._records[key] = record
        return True
