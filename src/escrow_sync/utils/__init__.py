"""escrow_sync utilities: structured logging and configuration.

Individual modules are imported directly by consumers, e.g.:
    from ..utils.logging_config import StructuredLogger
    from ..utils.config_loader import config_loader
"""

from .logging_config import setup_logging, StructuredLogger, JSONFormatter
from .config_loader import config_loader, ConfigLoader, EscrowSyncConfig, GatewayConfig, SyncConfig

__all__ = [
    "setup_logging", "StructuredLogger", "JSONFormatter",
    "config_loader", "ConfigLoader", "EscrowSyncConfig", "GatewayConfig", "SyncConfig",
]
