import asyncio
import json
import tempfile
import unittest
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

from escrow_sync.metadata import InMemoryMetadataStore
from escrow_sync.models import EscrowMetadata, Provenance
from escrow_sync.registry import FallbackRegistry, RegistryAggregator, clamp_limit

from escrow_fakes import CLIENT, ESCROW_A, ESCROW_B, ESCROW_C, FACTORY, PROVIDER, FakeReader


def record(address, title, day):
    return EscrowMetadata(
        address=address,
        title=title,
        client_address=CLIENT,
        provider_address=PROVIDER,
        total_amount=Decimal("1"),
        created_at=datetime(2026, 1, day, tzinfo=UTC),
    )


class FailingMetadataStore(InMemoryMetadataStore):
    async def list_recent(self, limit):
        raise RuntimeError("database is down")


class FallbackRegistryTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "data" / "escrows.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_is_empty(self):
        self.assertEqual(FallbackRegistry(self.path).load(), [])

    def test_add_is_idempotent_and_case_insensitive(self):
        registry = FallbackRegistry(self.path)
        self.assertTrue(registry.add(ESCROW_A.lower()))
        self.assertFalse(registry.add(ESCROW_A))
        self.assertTrue(registry.add(ESCROW_B))
        self.assertEqual(registry.load(), [ESCROW_A, ESCROW_B])
        self.assertEqual(json.loads(self.path.read_text()), [ESCROW_A, ESCROW_B])

    def test_load_skips_garbage_and_duplicates(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps([ESCROW_A.lower(), "nope", 7, ESCROW_A, ESCROW_C]))
        self.assertEqual(FallbackRegistry(self.path).load(), [ESCROW_A, ESCROW_C])

    def test_corrupt_file_reads_as_empty(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")
        self.assertEqual(FallbackRegistry(self.path).load(), [])


class AggregatorTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.fallback = FallbackRegistry(Path(self._tmp.name) / "escrows.json")

    def tearDown(self):
        self._tmp.cleanup()

    def aggregate(self, reader, metadata, limit=20):
        aggregator = RegistryAggregator(reader, metadata, self.fallback, factory_address=FACTORY)
        return asyncio.run(aggregator.list_escrows(limit))

    def test_metadata_first_then_events_deduplicated(self):
        metadata = InMemoryMetadataStore([record(ESCROW_A, "old", 1), record(ESCROW_B, "new", 2)])
        reader = FakeReader(created=[ESCROW_C, ESCROW_A.lower()])

        listing = self.aggregate(reader, metadata)
        self.assertEqual(listing.addresses, [ESCROW_B, ESCROW_A, ESCROW_C])
        self.assertEqual(
            [e.provenance for e in listing.entries],
            [Provenance.METADATA_STORE, Provenance.METADATA_STORE, Provenance.EVENT_FEED],
        )
        self.assertTrue(listing.event_feed_ok)
        self.assertEqual([m.title for m in listing.metadata], ["new", "old"])

    def test_fallback_only_used_when_event_feed_fails(self):
        self.fallback.add(ESCROW_A)
        self.fallback.add(ESCROW_C)
        reader = FakeReader(created=[ESCROW_B])

        listing = self.aggregate(reader, InMemoryMetadataStore())
        self.assertEqual(listing.addresses, [ESCROW_B])

        reader.feed_fails = True
        listing = self.aggregate(reader, InMemoryMetadataStore())
        self.assertFalse(listing.event_feed_ok)
        self.assertEqual(listing.addresses, [ESCROW_C, ESCROW_A])
        self.assertTrue(all(e.provenance is Provenance.LOCAL_FALLBACK for e in listing.entries))

    def test_metadata_outage_is_not_fatal(self):
        listing = self.aggregate(FakeReader(created=[ESCROW_A]), FailingMetadataStore())
        self.assertEqual(listing.addresses, [ESCROW_A])
        self.assertEqual(listing.metadata, [])

    def test_limit_applies_after_merge(self):
        metadata = InMemoryMetadataStore([record(ESCROW_A, "a", 1)])
        listing = self.aggregate(FakeReader(created=[ESCROW_B, ESCROW_C]), metadata, limit=2)
        self.assertEqual(listing.addresses, [ESCROW_A, ESCROW_B])

    def test_limit_is_clamped(self):
        self.assertEqual(clamp_limit(0), 1)
        self.assertEqual(clamp_limit(-5), 1)
        self.assertEqual(clamp_limit(500), 200)
        self.assertEqual(clamp_limit(20), 20)


if __name__ == "__main__":
    unittest.main()
