import asyncio
import os
import unittest
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

from escrow_sync.db import has_db_dsn, redacted_dsn
from escrow_sync.metadata import InMemoryMetadataStore, PostgresMetadataStore
from escrow_sync.models import EscrowMetadata

from escrow_fakes import CLIENT, ESCROW_A, ESCROW_B, PROVIDER


def record(address=ESCROW_A, title="Kitchen remodel", created_at=None):
    return EscrowMetadata(
        address=address,
        title=title,
        client_address=CLIENT,
        provider_address=PROVIDER,
        total_amount=Decimal("1.5"),
        created_at=created_at,
    )


class InMemoryStoreTests(unittest.TestCase):
    def test_insert_once(self):
        store = InMemoryMetadataStore()

        async def scenario():
            first = await store.save(record(ESCROW_A.lower()))
            second = await store.save(record(ESCROW_A, title="Other"))
            return first, second, await store.get(ESCROW_A)

        first, second, saved = asyncio.run(scenario())
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(saved.title, "Kitchen remodel")
        self.assertIsNotNone(saved.created_at)

    def test_list_recent_newest_first(self):
        store = InMemoryMetadataStore(
            [
                record(ESCROW_A, created_at=datetime(2026, 1, 1, tzinfo=UTC)),
                record(ESCROW_B, created_at=datetime(2026, 2, 1, tzinfo=UTC)),
            ]
        )
        recent = asyncio.run(store.list_recent(1))
        self.assertEqual([r.address for r in recent], [ESCROW_B])


class PostgresStoreTests(unittest.TestCase):
    def _patched(self, conn):
        @contextmanager
        def fake_connection():
            yield conn

        return patch("escrow_sync.metadata.get_db_connection", fake_connection)

    def test_save_uses_on_conflict_and_reports_insert(self):
        conn = MagicMock()
        conn.execute.return_value.rowcount = 1
        with self._patched(conn):
            inserted = asyncio.run(PostgresMetadataStore().save(record(ESCROW_A.lower(), title="")))

        self.assertTrue(inserted)
        sql, params = conn.execute.call_args.args
        self.assertIn("ON CONFLICT (address) DO NOTHING", sql)
        self.assertEqual(params[0], ESCROW_A)
        self.assertEqual(params[1], "Untitled Project")
        self.assertEqual(params[4], "1.5")
        conn.commit.assert_called_once()

    def test_duplicate_save_returns_false(self):
        conn = MagicMock()
        conn.execute.return_value.rowcount = 0
        with self._patched(conn):
            self.assertFalse(asyncio.run(PostgresMetadataStore().save(record())))

    def test_list_recent_skips_malformed_rows(self):
        conn = MagicMock()
        conn.execute.return_value.fetchall.return_value = [
            {
                "address": ESCROW_A.lower(),
                "title": None,
                "client_address": CLIENT,
                "provider_address": PROVIDER,
                "total_amount": "2",
                "created_at": datetime(2026, 3, 1, tzinfo=UTC),
            },
            {"address": "garbage", "title": "x", "client_address": "", "provider_address": "", "total_amount": "0", "created_at": None},
        ]
        with self._patched(conn):
            records = asyncio.run(PostgresMetadataStore().list_recent(5))

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].address, ESCROW_A)
        self.assertEqual(records[0].title, "Untitled Project")
        self.assertEqual(records[0].total_amount, Decimal("2"))
        self.assertEqual(conn.execute.call_args.args[1], (5,))


class DsnTests(unittest.TestCase):
    def test_redacted_dsn_hides_credentials(self):
        with patch.dict(os.environ, {"ESCROW_SYNC_PG_DSN": "postgresql://escrow:secret@db:5432/escrow"}):
            self.assertTrue(has_db_dsn())
            self.assertEqual(redacted_dsn(), "postgresql://***@db:5432/escrow")

    def test_missing_dsn(self):
        with patch.dict(os.environ, {"ESCROW_SYNC_PG_DSN": ""}):
            self.assertFalse(has_db_dsn())


if __name__ == "__main__":
    unittest.main()
