"""Metadata store schema initialization."""

from ..utils.logging_config import StructuredLogger
from .connection import get_db_connection, redacted_dsn

logger = StructuredLogger(__name__)


def init_db():
    """Create the escrow metadata table if it does not exist."""
    logger.info("Initializing database", dsn=redacted_dsn())
    with get_db_connection() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                address TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                client_address TEXT NOT NULL,
                provider_address TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_escrows_created_at ON escrows (created_at DESC)")
        conn.commit()
