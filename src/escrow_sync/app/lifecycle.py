"""escrow-sync daemon lifecycle: startup, shutdown, session registry."""

import os
import asyncio

from ..components import Components, SessionManager, build_components
from ..db import has_db_dsn, init_db
from ..errors import LedgerUnavailable
from ..utils.config_loader import config_loader
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

_components: Components | None = None
_sessions: SessionManager | None = None


def get_components() -> Components | None:
    return _components


def get_sessions() -> SessionManager:
    if _sessions is None:
        raise LedgerUnavailable("ledger not configured; run `escrow-sync init` and restart the daemon")
    return _sessions


def install_components(components: Components | None, *, max_sessions: int | None = None) -> None:
    """Swap the active components; passing None tears the session registry down."""
    global _components, _sessions
    _components = components
    if components is None:
        _sessions = None
        return
    if max_sessions is None:
        max_sessions = max(1, int(os.getenv("ESCROW_SYNC_MAX_SESSIONS", "256")))
    _sessions = SessionManager(components, max_sessions=max_sessions)


async def startup_event(app):
    """Called on FastAPI startup."""
    strict_startup = (os.getenv("ESCROW_SYNC_STARTUP_STRICT", "0").strip() == "1")
    init_timeout_sec = max(5, int(os.getenv("ESCROW_SYNC_STARTUP_INIT_TIMEOUT_SECONDS", "30")))

    if _sessions is not None:
        logger.info("Components already installed; skipping startup wiring")
        return

    if has_db_dsn():
        try:
            await asyncio.wait_for(asyncio.to_thread(init_db), timeout=init_timeout_sec)
        except Exception as exc:
            logger.error("Startup database init failed", error=str(exc), strict=strict_startup)
            if strict_startup:
                os._exit(1)

    try:
        config = config_loader.load_config()
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Config load failed on startup", error=str(exc), strict=strict_startup)
        if strict_startup:
            os._exit(1)
        return

    install_components(build_components(config))
    logger.info(
        "escrow-sync ready",
        factory=config.factory_address,
        chain_id=config.chain_id,
        gateway=config.gateway.base_url,
    )


async def shutdown_event():
    """Called on FastAPI shutdown."""
    components = _components
    install_components(None)
    if components is not None:
        await components.aclose()
