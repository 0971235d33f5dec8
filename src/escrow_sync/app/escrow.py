"""Escrow read/write endpoints: ``GET`` and ``POST /api/escrow``."""

from typing import Any

from fastapi import APIRouter, Header
from pydantic import BaseModel, ConfigDict, Field

from ..control.transitions import Action
from ..engine import CREATE_ESCROW, ReconciliationEngine
from ..errors import ActionInProgress, GuardViolation, ValidationError
from ..models import canonical_address
from ..registry.aggregator import clamp_limit
from ..utils.logging_config import StructuredLogger
from .lifecycle import get_components, get_sessions

logger = StructuredLogger(__name__)
router = APIRouter()

SESSION_HEADER = "x-escrow-session"
SAVE_ESCROW = "saveEscrow"


class EscrowActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(..., min_length=1, max_length=32)
    escrow: str | None = None
    index: int | None = Field(default=None, alias="i")
    proof_uri: str | None = Field(default=None, alias="proofURI", max_length=2048)
    reason_uri: str | None = Field(default=None, alias="reasonURI", max_length=2048)
    client: str | None = None
    provider: str | None = None
    amounts: list[str | int | float] | str | None = Field(default=None, alias="amountsEth")
    deadlines: list[int | str] | str | None = Field(default=None, alias="deadlinesSec")
    title: str | None = Field(default=None, max_length=200)
    escrow_address: str | None = Field(default=None, alias="escrowAddress")


def _parse_limit(raw: str | None, default: int) -> int:
    try:
        return clamp_limit(int(raw))
    except (TypeError, ValueError):
        return default


def _session_engine(session_id: str | None) -> ReconciliationEngine:
    return get_sessions().get(session_id)


def _role_default(role: str, given: str | None) -> str | None:
    if given:
        return given
    components = get_components()
    if components is None:
        return None
    return components.config.roles.get(role)


@router.get("/api/escrow")
async def read_escrow(
    escrow: str | None = None,
    limit: str | None = None,
    x_escrow_session: str | None = Header(default=None, alias=SESSION_HEADER),
):
    engine = _session_engine(x_escrow_session)
    effective_limit = _parse_limit(limit, engine.limit)

    if escrow:
        result = await engine.select(canonical_address(escrow), limit=effective_limit)
    else:
        result = await engine.refresh(limit=effective_limit, auto_pick=True)

    body = engine.view()
    body["ok"] = True
    body["limit"] = engine.limit
    body["attempts"] = result.attempts
    return body


async def _ensure_loaded(engine: ReconciliationEngine, escrow: str | None, action: str) -> None:
    if not escrow:
        raise ValidationError("escrow address required")
    if engine.pending_action is not None:
        raise ActionInProgress(f"'{engine.pending_action}' is still in flight; wait for it to finish")
    address = canonical_address(escrow)
    snapshot = engine.snapshot
    if snapshot is not None and snapshot.address == address:
        return
    result = await engine.select(address, auto_pick=False)
    if engine.snapshot is None or engine.snapshot.address != address:
        raise GuardViolation(action, f"escrow {address} could not be loaded", cause=result.warning)


@router.post("/api/escrow")
async def write_escrow(
    body: EscrowActionRequest,
    x_escrow_session: str | None = Header(default=None, alias=SESSION_HEADER),
):
    engine = _session_engine(x_escrow_session)
    action = body.action.strip()
    logger.info("Escrow action requested", action=action, escrow=body.escrow, session=x_escrow_session)

    if action == CREATE_ESCROW:
        outcome = await engine.create_escrow(
            _role_default("client", body.client),
            _role_default("provider", body.provider),
            body.amounts if body.amounts is not None else [],
            body.deadlines if body.deadlines is not None else [],
            title=body.title,
        )
        return {"ok": True, "action": action, "hash": outcome.tx_id, "escrow": outcome.escrow}

    if action == SAVE_ESCROW:
        saved = await engine.save_metadata(
            body.escrow_address or body.escrow,
            body.client,
            body.provider,
            body.amounts if body.amounts is not None else [],
            title=body.title,
        )
        return {"ok": True, "action": action, "saved": saved}

    if action not in {a.value for a in Action}:
        raise ValidationError(f"unknown action '{action}'")

    await _ensure_loaded(engine, body.escrow, action)
    outcome = await engine.dispatch(
        action,
        body.index,
        escrow=body.escrow,
        proof_uri=body.proof_uri,
        reason_uri=body.reason_uri,
    )
    response: dict[str, Any] = {
        "ok": True,
        "action": action,
        "hash": outcome.tx_id,
        "escrow": outcome.escrow,
    }
    if outcome.snapshot is not None:
        response["snapshot"] = outcome.snapshot.to_dict()
    return response
