"""Liveness and readiness probes for the daemon.

Readiness runs three independent checks (config, ledger, metadata database)
and is ready only if all of them pass. Each check returns its own detail dict
so operators can see which dependency is down.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from .. import __version__
from ..db import get_db_connection, has_db_dsn
from ..errors import LedgerUnavailable
from ..ledger.rpc import LedgerRpc
from ..utils.config_loader import config_loader

_STARTED = time.monotonic()


def _stamp() -> dict[str, Any]:
    return {"version": __version__, "uptime_seconds": round(time.monotonic() - _STARTED, 1)}


def liveness_report() -> dict:
    return {"status": "ok", **_stamp()}


def _config_check() -> dict[str, Any]:
    try:
        cfg = config_loader.get_config()
    except (FileNotFoundError, ValueError) as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "factory": cfg.factory_address, "roles": sorted(cfg.roles)}


async def _ledger_check(rpc: LedgerRpc | None) -> dict[str, Any]:
    if rpc is None:
        return {"ok": False, "error": "ledger client not initialized"}
    try:
        block = await rpc.block_number()
    except LedgerUnavailable as exc:
        return {"ok": False, "error": exc.message}
    return {"ok": True, "block": block}


def _ping_db() -> None:
    with get_db_connection() as conn:
        conn.execute("SELECT 1")


async def _database_check() -> dict[str, Any]:
    if not has_db_dsn():
        return {"ok": True, "backend": "in-memory"}
    try:
        await asyncio.to_thread(_ping_db)
    except Exception as exc:  # any driver error means not ready
        return {"ok": False, "backend": "postgres", "error": str(exc)}
    return {"ok": True, "backend": "postgres"}


async def readiness_report(rpc: LedgerRpc | None) -> tuple[bool, dict]:
    checks = {
        "config": _config_check(),
        "ledger": await _ledger_check(rpc),
        "database": await _database_check(),
    }
    ready = all(check["ok"] for check in checks.values())
    return ready, {"ready": ready, "checks": checks, **_stamp()}
