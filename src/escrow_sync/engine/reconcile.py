"""Reconciliation engine: the session's single writer to its escrow cache.

Reads go through ``refresh``. It retries transport failures on a fixed
backoff, and when the budget runs out it keeps the last good snapshot and
returns a StaleDataWarning. Every completion carries a sequence number and
only the newest completion may land.

Writes go through ``dispatch`` / ``create_escrow``. At most one write is in
flight. Guards run before the gateway is contacted. A confirmed action is
projected onto the cache immediately. After the settle delay a background
refresh replaces that projection with what the ledger actually says.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..control.transitions import (
    Action,
    ROLE_FOR_ACTION,
    check_guard,
    claim_ready_in,
    is_allowed,
    parse_action,
    project,
)
from ..control.validation import validate_create_escrow, validate_milestone_index
from ..errors import (
    ActionInProgress,
    DispatchFailed,
    EscrowSyncError,
    GatewayUnavailable,
    GuardViolation,
    InsufficientAuthorization,
    InvalidAddress,
    SimulationFailed,
    StaleDataWarning,
    TransactionReverted,
    TransportError,
)
from ..gateway.base import ExecutionGateway
from ..ledger.abi import FACTORY_CREATE_ESCROW, parse_escrow_created
from ..ledger.reader import LedgerReader
from ..metadata import MetadataStore
from ..models import (
    DEFAULT_TITLE,
    EscrowMetadata,
    EscrowSnapshot,
    MilestoneStatus,
    RegistryListing,
    canonical_address,
    ether_to_wei,
    wei_to_ether,
)
from ..observability import traced
from ..registry.aggregator import RegistryAggregator, clamp_limit
from ..registry.fallback import FallbackRegistry
from ..utils.config_loader import SyncConfig
from ..utils.logging_config import StructuredLogger
from .session import SessionState

logger = StructuredLogger(__name__)

CREATE_ESCROW = "createEscrow"
_GATEWAY_ERRORS = (GatewayUnavailable, InsufficientAuthorization, InvalidAddress)


@dataclass(frozen=True)
class RefreshResult:
    snapshot: EscrowSnapshot | None
    listing: RegistryListing | None
    applied: bool
    attempts: int
    warning: StaleDataWarning | None = None


@dataclass(frozen=True)
class ActionOutcome:
    action: str
    tx_id: str
    escrow: str
    snapshot: EscrowSnapshot | None


class ReconciliationEngine:
    def __init__(
        self,
        *,
        reader: LedgerReader,
        registry: RegistryAggregator,
        gateway: ExecutionGateway,
        metadata: MetadataStore,
        fallback: FallbackRegistry,
        factory_address: str,
        sync: SyncConfig | None = None,
        limit: int = 20,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.reader = reader
        self.registry = registry
        self.gateway = gateway
        self.metadata = metadata
        self.fallback = fallback
        self.factory_address = canonical_address(factory_address)
        self.sync = sync or SyncConfig()
        self.limit = clamp_limit(limit)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        self._state = SessionState()
        self._seq = itertools.count(1)
        self._issued_seq = 0
        self._applied_seq = 0
        self._pending_action: str | None = None
        self._reconcile_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Read-only accessors

    @property
    def snapshot(self) -> EscrowSnapshot | None:
        return self._state.snapshot

    @property
    def selected(self) -> str | None:
        return self._state.selected

    @property
    def listing(self) -> RegistryListing:
        return self._state.listing

    @property
    def selected_milestone(self) -> int:
        return self._state.selected_milestone

    @property
    def pending_action(self) -> str | None:
        return self._pending_action

    @property
    def last_warning(self) -> StaleDataWarning | None:
        return self._state.last_warning

    @property
    def is_optimistic(self) -> bool:
        return self._state.optimistic

    def estimated_ledger_time(self) -> int | None:
        """Ledger clock extrapolated from the last authoritative read."""
        snap = self._state.snapshot
        if snap is None:
            return None
        elapsed = max(0.0, self._clock() - self._state.fetched_at)
        return snap.ledger_timestamp + int(elapsed)

    # ------------------------------------------------------------------
    # Read path

    def _next_seq(self) -> int:
        self._issued_seq = next(self._seq)
        return self._issued_seq

    async def _fetch(self, address: str | None, with_registry: bool, limit: int):
        listing = None
        if with_registry:
            listing = await self.registry.list_escrows(limit)
        target = address or self._state.selected
        if target is None and listing is not None and listing.entries:
            target = listing.entries[0].address
        snapshot = await self.reader.read_snapshot(target) if target else None
        return listing, snapshot

    async def refresh(
        self,
        address: str | None = None,
        *,
        limit: int | None = None,
        with_registry: bool = True,
        auto_pick: bool = False,
        force: bool = False,
        keep_selection: bool = False,
    ) -> RefreshResult:
        """Fetch registry and snapshot, retrying transport failures.

        ``force`` skips the ledger-timestamp monotonicity check; post-action
        reconciliation uses it so the projection is always replaced.
        ``keep_selection`` drops the result if the session has since selected
        a different escrow.
        """
        if address is not None:
            address = canonical_address(address)
        if limit is not None:
            self.limit = clamp_limit(limit)
        seq = self._next_seq()

        attempts = 0
        last_error: TransportError | None = None
        for attempt in range(self.sync.refresh_retries + 1):
            attempts = attempt + 1
            try:
                listing, snapshot = await self._fetch(address, with_registry, self.limit)
                break
            except TransportError as exc:
                last_error = exc
                if attempt < self.sync.refresh_retries:
                    logger.warning(
                        "Refresh failed; retrying",
                        address=address,
                        attempt=attempts,
                        retries=self.sync.refresh_retries,
                        backoff_s=self.sync.refresh_backoff_seconds,
                        error=exc.message,
                    )
                    await self._sleep(self.sync.refresh_backoff_seconds)
        else:
            warning = StaleDataWarning(address or self._state.selected, attempts, last_error.message)
            self._state.last_warning = warning
            logger.warning(
                "Refresh retry budget exhausted; keeping last good snapshot",
                address=address or self._state.selected,
                attempts=attempts,
                error=last_error.message,
            )
            return RefreshResult(
                snapshot=self._state.snapshot,
                listing=self._state.listing,
                applied=False,
                attempts=attempts,
                warning=warning,
            )

        applied = self._apply_refresh(
            seq, listing, snapshot, auto_pick=auto_pick, force=force, keep_selection=keep_selection
        )
        return RefreshResult(
            snapshot=self._state.snapshot if applied else snapshot,
            listing=listing,
            applied=applied,
            attempts=attempts,
        )

    def _apply_refresh(
        self,
        seq: int,
        listing: RegistryListing | None,
        snapshot: EscrowSnapshot | None,
        *,
        auto_pick: bool,
        force: bool,
        keep_selection: bool = False,
    ) -> bool:
        if seq <= self._applied_seq:
            logger.info("Discarding out-of-order refresh", seq=seq, applied_seq=self._applied_seq)
            return False
        if keep_selection and snapshot is not None and snapshot.address != self._state.selected:
            logger.info(
                "Discarding refresh for deselected escrow", address=snapshot.address, selected=self._state.selected
            )
            return False

        cached = self._state.snapshot
        if (
            not force
            and snapshot is not None
            and cached is not None
            and cached.address == snapshot.address
            and snapshot.ledger_timestamp < cached.ledger_timestamp
        ):
            logger.warning(
                "Discarding refresh older than cached ledger time",
                address=snapshot.address,
                cached_ts=cached.ledger_timestamp,
                fetched_ts=snapshot.ledger_timestamp,
            )
            return False

        self._applied_seq = seq
        if listing is not None:
            self._state.listing = listing
        if snapshot is not None:
            self._state.snapshot = snapshot
            self._state.selected = snapshot.address
            self._state.fetched_at = self._clock()
            self._state.optimistic = False
        self._state.last_warning = None

        milestones = snapshot.milestones if snapshot is not None else ()
        if auto_pick and milestones:
            nxt = next(
                (m.index for m in milestones if m.status in (MilestoneStatus.PENDING, MilestoneStatus.REJECTED)),
                0,
            )
            self._state.selected_milestone = nxt
        if milestones and self._state.selected_milestone >= len(milestones):
            self._state.selected_milestone = 0
        return True

    async def select(self, address: str, *, auto_pick: bool = True, limit: int | None = None) -> RefreshResult:
        """Select an escrow and read it directly, whether or not the registry lists it."""
        address = canonical_address(address)
        self._state.selected = address
        return await self.refresh(address, limit=limit, auto_pick=auto_pick)

    def select_milestone(self, index: int) -> None:
        index = validate_milestone_index(index)
        if self._state.snapshot is not None:
            self._state.snapshot.milestone(index)
        self._state.selected_milestone = index

    # ------------------------------------------------------------------
    # Write path

    def _ensure_idle(self) -> None:
        if self._pending_action is not None:
            raise ActionInProgress(f"'{self._pending_action}' is still in flight; wait for it to finish")

    @asynccontextmanager
    async def _pending(self, action: str):
        self._ensure_idle()
        self._pending_action = action
        try:
            yield
        finally:
            self._pending_action = None

    async def _gateway_dispatch(self, action: str, role: str, contract: str, function: str, args, value: int = 0) -> str:
        try:
            return await self.gateway.dispatch(role, contract, function, args, value)
        except _GATEWAY_ERRORS as exc:
            logger.error("Dispatch failed", action=action, role=role, error=exc.message, kind=type(exc).__name__)
            raise DispatchFailed(f"{action} could not be dispatched: {exc.message}", cause=exc) from exc

    async def _confirm(self, action: str, tx_id: str):
        confirmation = await self.gateway.wait_for_confirmation(tx_id)
        if confirmation.reverted:
            logger.warning("Transaction reverted", action=action, tx=tx_id, reason=confirmation.reason)
            raise TransactionReverted(action, tx_id, confirmation.reason)
        logger.info("Transaction confirmed", action=action, tx=tx_id, block=confirmation.block_number)
        return confirmation

    def _apply_optimistic(self, projected: EscrowSnapshot) -> None:
        # Anything issued before now is older than the confirmed action
        self._applied_seq = max(self._applied_seq, self._issued_seq)
        self._state.snapshot = projected
        self._state.optimistic = True

    def _schedule_reconcile(self, address: str) -> None:
        self._reconcile_task = asyncio.create_task(self._reconcile_after_settle(address))

    async def _reconcile_after_settle(self, address: str) -> None:
        await self._sleep(self.sync.settle_delay_seconds)
        if self._state.selected != address:
            logger.info("Skipping post-action reconcile; selection moved", address=address, selected=self._state.selected)
            return
        try:
            result = await self.refresh(address, force=True, keep_selection=True)
        except EscrowSyncError as exc:
            logger.error("Post-action reconcile failed", address=address, error=exc.message)
            return
        logger.info(
            "Post-action reconcile finished",
            address=address,
            applied=result.applied,
            stale=result.warning is not None,
        )

    async def wait_settled(self) -> None:
        """Join the outstanding post-action refresh, if any."""
        task = self._reconcile_task
        if task is not None:
            await task

    async def _call_args(self, action: Action, snapshot: EscrowSnapshot, index, proof_uri, reason_uri):
        if action is Action.FUND:
            try:
                value = await self.reader.read_total_amount_wei(snapshot.address)
            except TransportError as exc:
                raise DispatchFailed("fund could not read totalAmount", cause=exc) from exc
            return (), value
        if action is Action.SUBMIT:
            return (index, proof_uri), 0
        if action is Action.REJECT:
            return (index, reason_uri or ""), 0
        return (index,), 0

    async def dispatch(
        self,
        action: str | Action,
        index: int | None = None,
        *,
        escrow: str | None = None,
        proof_uri: str | None = None,
        reason_uri: str | None = None,
    ) -> ActionOutcome:
        action = parse_action(action)
        self._ensure_idle()

        snapshot = self._state.snapshot
        if escrow is not None and (snapshot is None or snapshot.address != canonical_address(escrow)):
            raise GuardViolation(action.value, f"escrow {escrow} is not loaded; select it first")
        if snapshot is None:
            raise GuardViolation(action.value, "no escrow loaded; select one first")
        if index is not None:
            index = validate_milestone_index(index)
        if proof_uri is not None:
            proof_uri = proof_uri.strip()
        if reason_uri is not None:
            reason_uri = reason_uri.strip()

        try:
            check_guard(action, snapshot, index, proof_uri=proof_uri, ledger_time=self.estimated_ledger_time())
        except GuardViolation as exc:
            logger.warning("Guard violation", action=action.value, escrow=snapshot.address, index=index, reason=exc.message)
            raise

        role = ROLE_FOR_ACTION[action]
        async with self._pending(action.value):
            with traced(snapshot.address, f"dispatch.{action.value}", index=index) as span:
                args, value = await self._call_args(action, snapshot, index, proof_uri, reason_uri)
                tx_id = await self._gateway_dispatch(action.value, role, snapshot.address, action.value, args, value)
                span.set(tx=tx_id)
                await self._confirm(action.value, tx_id)

                base = self._state.snapshot
                if base is None or base.address != snapshot.address or (
                    index is not None and base.milestone(index).status != snapshot.milestone(index).status
                ):
                    base = snapshot
                projected = project(
                    action,
                    base,
                    index,
                    proof_uri=proof_uri,
                    reason_uri=reason_uri,
                    now=int(self._wall_clock()),
                )
                self._apply_optimistic(projected)
                self._state.notice = f"Success: {action.value}"
            logger.info("Optimistic update applied", action=action.value, escrow=snapshot.address, index=index)

        self._schedule_reconcile(snapshot.address)
        return ActionOutcome(action=action.value, tx_id=tx_id, escrow=snapshot.address, snapshot=projected)

    async def create_escrow(
        self,
        client: Any,
        provider: Any,
        amounts: Any,
        deadlines: Any,
        *,
        title: str | None = None,
    ) -> ActionOutcome:
        request = validate_create_escrow(client, provider, amounts, deadlines)
        self._ensure_idle()

        async with self._pending(CREATE_ESCROW):
            args = request.call_args()
            simulation = await self.gateway.simulate("client", self.factory_address, FACTORY_CREATE_ESCROW.name, args)
            if not simulation.ok:
                logger.warning("createEscrow simulation predicted revert", reason=simulation.reason)
                raise SimulationFailed(
                    f"createEscrow would revert: {simulation.reason or 'unknown reason'}",
                    cause=simulation.reason,
                )

            tx_id = await self._gateway_dispatch(
                CREATE_ESCROW, "client", self.factory_address, FACTORY_CREATE_ESCROW.name, args
            )
            confirmation = await self._confirm(CREATE_ESCROW, tx_id)

            created = parse_escrow_created(confirmation.logs, self.factory_address)
            if not created:
                raise DispatchFailed("Could not parse EscrowCreated event from receipt", cause=tx_id)
            escrow = created[0]
            self.fallback.add(escrow)

            record = EscrowMetadata(
                address=escrow,
                title=(title or "").strip() or DEFAULT_TITLE,
                client_address=request.client,
                provider_address=request.provider,
                total_amount=request.total_ether,
            )
            try:
                await self.metadata.save(record)
            except Exception as exc:
                # The escrow exists on-ledger and in the fallback list regardless
                logger.warning("Metadata save failed after createEscrow", escrow=escrow, error=str(exc))

            self._state.selected = escrow
            self._state.notice = "Escrow created"
            logger.info("Escrow created", escrow=escrow, tx=tx_id, milestones=len(request.amounts_wei))

        self._schedule_reconcile(escrow)
        return ActionOutcome(action=CREATE_ESCROW, tx_id=tx_id, escrow=escrow, snapshot=None)

    async def save_metadata(
        self,
        escrow: Any,
        client: Any,
        provider: Any,
        amounts: Any,
        title: str | None = None,
    ) -> bool:
        if isinstance(amounts, str):
            amounts = [a.strip() for a in amounts.split(",") if a.strip()]
        total_wei = sum(ether_to_wei(a) for a in (amounts or []))
        record = EscrowMetadata(
            address=canonical_address(escrow),
            title=(title or "").strip() or DEFAULT_TITLE,
            client_address=canonical_address(client),
            provider_address=canonical_address(provider),
            total_amount=wei_to_ether(total_wei),
        )
        return await self.metadata.save(record)

    # ------------------------------------------------------------------
    # Derived flags for callers that gate controls on them

    def _milestone_index(self, index: int | None) -> int:
        return self._state.selected_milestone if index is None else index

    @property
    def can_fund(self) -> bool:
        return self._pending_action is None and is_allowed(Action.FUND, self._state.snapshot)

    def can_submit(self, index: int | None = None, proof_uri: str = "x") -> bool:
        return self._pending_action is None and is_allowed(
            Action.SUBMIT, self._state.snapshot, self._milestone_index(index), proof_uri=proof_uri
        )

    def can_approve(self, index: int | None = None) -> bool:
        return self._pending_action is None and is_allowed(
            Action.APPROVE, self._state.snapshot, self._milestone_index(index)
        )

    def can_reject(self, index: int | None = None) -> bool:
        return self._pending_action is None and is_allowed(
            Action.REJECT, self._state.snapshot, self._milestone_index(index)
        )

    def can_claim(self, index: int | None = None) -> bool:
        return self._pending_action is None and is_allowed(
            Action.CLAIM,
            self._state.snapshot,
            self._milestone_index(index),
            ledger_time=self.estimated_ledger_time(),
        )

    def claim_ready_in(self, index: int | None = None) -> int | None:
        snap = self._state.snapshot
        now = self.estimated_ledger_time()
        index = self._milestone_index(index)
        if snap is None or now is None or not 0 <= index < snap.milestone_count:
            return None
        return claim_ready_in(snap, index, now)

    @property
    def is_all_paid(self) -> bool:
        snap = self._state.snapshot
        return bool(snap and snap.is_all_paid)

    def view(self) -> dict[str, Any]:
        snap = self._state.snapshot
        listing = self._state.listing
        warning = self._state.last_warning
        return {
            "escrows": listing.addresses,
            "selected": self._state.selected,
            "snapshot": snap.to_dict() if snap else None,
            "metadataList": [m.to_dict() for m in listing.metadata],
            "eventFeedOk": listing.event_feed_ok,
            "optimistic": self._state.optimistic,
            "pendingAction": self._pending_action,
            "warning": str(warning) if warning else None,
            "notice": self._state.notice,
            "flags": {
                "canFund": self.can_fund,
                "canSubmit": self.can_submit(),
                "canApprove": self.can_approve(),
                "canReject": self.can_reject(),
                "canClaim": self.can_claim(),
                "claimReadyIn": self.claim_ready_in(),
                "allPaid": self.is_all_paid,
            },
        }
