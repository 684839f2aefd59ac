"""
Deal state machine for OTC negotiations.

Every transition is looked up in ``TRANSITIONS`` and persisted with a single
conditional UPDATE guarded by the state the deal was read in. Whoever loses a
race re-reads the deal and gets ``InvalidTransition`` (or ``Expired``) back.

    quoted          -> locked | cancelled | rejected | expired
    locked          -> computing | awaiting_amount | cancelled | expired
    awaiting_amount -> computing | cancelled | expired
    computing       -> completed | cancelled

Terminal states (completed, cancelled, rejected, expired) accept nothing.
Operations return ``Ok(deal)`` or ``Err(error)``; they do not raise.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from otc_desk.core.result import (
    Ok,
    Result,
    conflict,
    expired,
    invalid_transition,
    not_found,
    upstream_failure,
    validation_error,
)
from otc_desk.database import utc_now
from otc_desk.models import (
    TERMINAL_STATES,
    ActiveDeal,
    CompletionReason,
    DealHistory,
    DealState,
    PricingSource,
    SpreadMode,
    TradeSide,
)
from otc_desk.services.deal_store import DealStore

logger = logging.getLogger("otc_desk.deals")


class DealOperation(str, Enum):
    lock = "lock"
    start_awaiting_amount = "start_awaiting_amount"
    start_computation = "start_computation"
    complete = "complete"
    cancel = "cancel"
    reject = "reject"
    expire = "expire"


TRANSITIONS: dict[tuple[DealState, DealOperation], DealState] = {
    (DealState.quoted, DealOperation.lock): DealState.locked,
    (DealState.quoted, DealOperation.cancel): DealState.cancelled,
    (DealState.quoted, DealOperation.reject): DealState.rejected,
    (DealState.quoted, DealOperation.expire): DealState.expired,
    (DealState.locked, DealOperation.start_computation): DealState.computing,
    (DealState.locked, DealOperation.start_awaiting_amount): DealState.awaiting_amount,
    (DealState.locked, DealOperation.cancel): DealState.cancelled,
    (DealState.locked, DealOperation.expire): DealState.expired,
    (DealState.awaiting_amount, DealOperation.start_computation): DealState.computing,
    (DealState.awaiting_amount, DealOperation.cancel): DealState.cancelled,
    (DealState.awaiting_amount, DealOperation.expire): DealState.expired,
    (DealState.computing, DealOperation.complete): DealState.completed,
    (DealState.computing, DealOperation.cancel): DealState.cancelled,
}

# States whose ttl_expires_at is enforced lazily on access.
TTL_GUARDED_STATES = frozenset({DealState.quoted, DealState.locked, DealState.awaiting_amount})


def transition_target(state: DealState, operation: DealOperation) -> Optional[DealState]:
    return TRANSITIONS.get((state, operation))


def _is_positive(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def _check_optional_amounts(amount_brl, amount_usdt):
    for field, value in (("amount_brl", amount_brl), ("amount_usdt", amount_usdt)):
        if value is not None and not _is_positive(value):
            return validation_error(f"{field} must be a positive number", field=field)
    return None


PatchBuilder = Callable[[ActiveDeal, datetime], dict[str, Any]]


class DealFlowService:
    def __init__(self, store: DealStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # -----------------------------
    # Reads
    # -----------------------------

    async def get_deal(self, deal_id: str, group_jid: str) -> Result[ActiveDeal]:
        try:
            deal = await self.store.get(deal_id, group_jid)
        except SQLAlchemyError as exc:
            logger.exception("deal_load_failed", extra={"deal_id": deal_id, "group_jid": group_jid})
            return upstream_failure(f"Failed to load deal: {exc}")
        if deal is None:
            return not_found(f"Deal {deal_id} not found in group")
        return Ok(deal)

    async def find_active_deal(self, group_jid: str, client_jid: str) -> Result[Optional[ActiveDeal]]:
        try:
            return Ok(await self.store.find_active(group_jid, client_jid))
        except SQLAlchemyError as exc:
            logger.exception("deal_lookup_failed", extra={"group_jid": group_jid, "client_jid": client_jid})
            return upstream_failure(f"Failed to look up active deal: {exc}")

    async def list_active_deals(self, group_jid: str) -> Result[list[ActiveDeal]]:
        try:
            return Ok(await self.store.list_active(group_jid))
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to list deals: {exc}")

    async def find_expiring(self, before: Optional[datetime] = None) -> Result[list[ActiveDeal]]:
        try:
            return Ok(await self.store.find_expiring(before or self.now()))
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to query expiring deals: {exc}")

    async def find_awaiting_amount(self) -> Result[list[ActiveDeal]]:
        try:
            return Ok(await self.store.find_awaiting_amount())
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to query awaiting_amount deals: {exc}")

    async def find_unarchived(self, before: Optional[datetime] = None) -> Result[list[ActiveDeal]]:
        """Terminal deals whose archival never ran or failed."""
        try:
            return Ok(await self.store.find_unarchived(before or self.now()))
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to query unarchived deals: {exc}")

    async def get_history(
        self,
        group_jid: str,
        limit: int = 50,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Result[list[DealHistory]]:
        try:
            return Ok(await self.store.history(group_jid, limit=limit, since=since, until=until))
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to load deal history: {exc}")

    # -----------------------------
    # Creation
    # -----------------------------

    async def create_deal(
        self,
        *,
        group_jid: str,
        client_jid: str,
        side: TradeSide,
        quoted_rate: float,
        base_rate: float,
        ttl_seconds: int,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
        provenance: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        locked: bool = False,
        locked_rate: Optional[float] = None,
    ) -> Result[ActiveDeal]:
        """Open a deal in ``quoted``, or straight in ``locked`` for calculator-style flows.

        The caller must cancel/archive a client's previous deal first; an open deal
        for the same (group, client) is a ``Conflict``.
        """
        if not group_jid or not client_jid:
            return validation_error("group_jid and client_jid are required")
        if not _is_positive(quoted_rate):
            return validation_error("quoted_rate must be a positive number", field="quoted_rate")
        if not _is_positive(base_rate):
            return validation_error("base_rate must be a positive number", field="base_rate")
        if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            return validation_error("ttl_seconds must be a positive integer", field="ttl_seconds")
        if locked_rate is not None and not _is_positive(locked_rate):
            return validation_error("locked_rate must be a positive number", field="locked_rate")
        invalid = _check_optional_amounts(amount_brl, amount_usdt)
        if invalid is not None:
            return invalid

        existing = await self.find_active_deal(group_jid, client_jid)
        if not existing.ok:
            return existing
        if existing.value is not None:
            return conflict(
                f"Client already has an active deal ({existing.value.id}, {existing.value.state.value})"
            )

        now = self.now()
        provenance = dict(provenance or {})
        deal = ActiveDeal(
            group_jid=group_jid,
            client_jid=client_jid,
            state=DealState.locked if locked else DealState.quoted,
            side=side,
            base_rate=float(base_rate),
            quoted_rate=float(quoted_rate),
            locked_rate=float(locked_rate if locked_rate is not None else quoted_rate) if locked else None,
            amount_brl=amount_brl,
            amount_usdt=amount_usdt,
            quoted_at=now,
            locked_at=now if locked else None,
            ttl_expires_at=now + timedelta(seconds=ttl_seconds),
            rule_id_used=provenance.get("rule_id_used"),
            rule_name=provenance.get("rule_name"),
            pricing_source=provenance.get("pricing_source") or PricingSource.usdt_binance,
            spread_mode=provenance.get("spread_mode") or SpreadMode.bps,
            sell_spread=float(provenance.get("sell_spread") or 0.0),
            buy_spread=float(provenance.get("buy_spread") or 0.0),
            meta=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        try:
            deal = await self.store.insert(deal)
        except IntegrityError:
            return conflict("Client already has an active deal")
        except SQLAlchemyError as exc:
            logger.exception("deal_create_failed", extra={"group_jid": group_jid, "client_jid": client_jid})
            return upstream_failure(f"Failed to create deal: {exc}")

        logger.info(
            "deal_created",
            extra={
                "deal_id": deal.id,
                "group_jid": group_jid,
                "client_jid": client_jid,
                "state": deal.state.value,
                "side": side.value,
                "quoted_rate": quoted_rate,
                "rule_name": deal.rule_name,
            },
        )
        return Ok(deal)

    # -----------------------------
    # Transitions
    # -----------------------------

    async def _expire_lapsed(self, deal: ActiveDeal, now: datetime) -> None:
        try:
            result = await self.store.conditional_update(
                deal_id=deal.id,
                group_jid=deal.group_jid,
                allowed_from=[deal.state],
                values={
                    "state": DealState.expired,
                    "updated_at": now,
                    "meta": {
                        **(deal.meta or {}),
                        "completion_reason": CompletionReason.expired.value,
                        "from_state": deal.state.value,
                    },
                },
            )
        except SQLAlchemyError:
            logger.exception("deal_lazy_expire_failed", extra={"deal_id": deal.id})
            return
        if result.updated:
            logger.info(
                "deal_expired_on_access",
                extra={"deal_id": deal.id, "group_jid": deal.group_jid, "from_state": deal.state.value},
            )

    async def _transition(
        self,
        deal_id: str,
        group_jid: str,
        operation: DealOperation,
        patch: Union[dict[str, Any], PatchBuilder, None] = None,
        meta: Optional[dict[str, Any]] = None,
        check_ttl: bool = True,
    ) -> Result[ActiveDeal]:
        loaded = await self.get_deal(deal_id, group_jid)
        if not loaded.ok:
            return loaded
        deal = loaded.value
        now = self.now()

        target = transition_target(deal.state, operation)
        if target is None:
            return invalid_transition(deal.state.value, operation.value)

        if (
            check_ttl
            and deal.state in TTL_GUARDED_STATES
            and target not in TERMINAL_STATES
            and deal.ttl_expires_at < now
        ):
            await self._expire_lapsed(deal, now)
            return expired(f"Deal {deal.id} expired at {deal.ttl_expires_at.isoformat()}")

        values: dict[str, Any] = {"state": target, "updated_at": now}
        if callable(patch):
            values.update(patch(deal, now))
        elif patch:
            values.update(patch)
        if meta:
            values["meta"] = {**(deal.meta or {}), **meta}
        if target in TERMINAL_STATES:
            values["meta"] = {**values.get("meta", deal.meta or {}), "from_state": deal.state.value}

        try:
            result = await self.store.conditional_update(
                deal_id=deal.id, group_jid=group_jid, allowed_from=[deal.state], values=values
            )
        except SQLAlchemyError as exc:
            logger.exception(
                "deal_transition_failed",
                extra={"deal_id": deal.id, "operation": operation.value, "from_state": deal.state.value},
            )
            return upstream_failure(f"Failed to {operation.value} deal: {exc}")

        if not result.updated:
            # Lost a race: report what the winner left behind.
            reloaded = await self.get_deal(deal_id, group_jid)
            if not reloaded.ok:
                return reloaded
            current = reloaded.value
            logger.info(
                "deal_transition_conflict",
                extra={
                    "deal_id": deal.id,
                    "operation": operation.value,
                    "expected_state": deal.state.value,
                    "current_state": current.state.value,
                },
            )
            if current.state == DealState.expired:
                return expired(f"Deal {deal.id} has expired")
            return invalid_transition(current.state.value, operation.value)

        logger.info(
            "deal_transition",
            extra={
                "deal_id": deal.id,
                "group_jid": group_jid,
                "operation": operation.value,
                "from_state": deal.state.value,
                "to_state": target.value,
            },
        )
        return Ok(result.deal)

    async def lock_deal(
        self,
        deal_id: str,
        group_jid: str,
        locked_rate: float,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
    ) -> Result[ActiveDeal]:
        """Freeze the rate; later market moves no longer change what the client owes."""
        if not _is_positive(locked_rate):
            return validation_error("locked_rate must be a positive number", field="locked_rate")
        invalid = _check_optional_amounts(amount_brl, amount_usdt)
        if invalid is not None:
            return invalid

        def build(deal: ActiveDeal, now: datetime) -> dict[str, Any]:
            values: dict[str, Any] = {"locked_rate": float(locked_rate), "locked_at": now}
            if amount_brl is not None:
                values["amount_brl"] = amount_brl
            if amount_usdt is not None:
                values["amount_usdt"] = amount_usdt
            return values

        return await self._transition(deal_id, group_jid, DealOperation.lock, build)

    async def start_awaiting_amount(
        self,
        deal_id: str,
        group_jid: str,
        amount_timeout_seconds: Optional[int] = None,
    ) -> Result[ActiveDeal]:
        """Rate is locked but volume is unknown.

        With ``amount_timeout_seconds`` the TTL is pushed out to cover the
        reminder + 2x timeout window the sweep enforces.
        """

        def build(deal: ActiveDeal, now: datetime) -> dict[str, Any]:
            values: dict[str, Any] = {"reprompted_at": None}
            if amount_timeout_seconds:
                window_end = now + timedelta(seconds=2 * int(amount_timeout_seconds))
                values["ttl_expires_at"] = max(deal.ttl_expires_at, window_end)
            return values

        return await self._transition(
            deal_id, group_jid, DealOperation.start_awaiting_amount, build
        )

    async def start_computation(
        self,
        deal_id: str,
        group_jid: str,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
    ) -> Result[ActiveDeal]:
        invalid = _check_optional_amounts(amount_brl, amount_usdt)
        if invalid is not None:
            return invalid
        patch: dict[str, Any] = {}
        if amount_brl is not None:
            patch["amount_brl"] = amount_brl
        if amount_usdt is not None:
            patch["amount_usdt"] = amount_usdt
        return await self._transition(deal_id, group_jid, DealOperation.start_computation, patch)

    async def complete_deal(
        self,
        deal_id: str,
        group_jid: str,
        amount_brl: float,
        amount_usdt: float,
    ) -> Result[ActiveDeal]:
        """Record the final pair. The caller has already done the arithmetic."""
        if not _is_positive(amount_brl):
            return validation_error("amount_brl must be a positive number", field="amount_brl")
        if not _is_positive(amount_usdt):
            return validation_error("amount_usdt must be a positive number", field="amount_usdt")
        return await self._transition(
            deal_id,
            group_jid,
            DealOperation.complete,
            {"amount_brl": amount_brl, "amount_usdt": amount_usdt},
            meta={"completion_reason": CompletionReason.confirmed.value},
        )

    async def cancel_deal(
        self,
        deal_id: str,
        group_jid: str,
        reason: str = CompletionReason.cancelled_by_client.value,
    ) -> Result[ActiveDeal]:
        if not reason or not str(reason).strip():
            return validation_error("A cancellation reason is required", field="reason")
        return await self._transition(
            deal_id,
            group_jid,
            DealOperation.cancel,
            meta={"completion_reason": str(reason).strip()},
            check_ttl=False,
        )

    async def reject_deal(self, deal_id: str, group_jid: str) -> Result[ActiveDeal]:
        return await self._transition(
            deal_id,
            group_jid,
            DealOperation.reject,
            meta={"completion_reason": CompletionReason.rejected_by_client.value},
            check_ttl=False,
        )

    async def expire_deal(self, deal_id: str, group_jid: str) -> Result[ActiveDeal]:
        """Idempotent: a deal that is already terminal comes back unchanged."""
        loaded = await self.get_deal(deal_id, group_jid)
        if not loaded.ok:
            return loaded
        if loaded.value.is_terminal:
            return Ok(loaded.value)

        result = await self._transition(
            deal_id,
            group_jid,
            DealOperation.expire,
            meta={"completion_reason": CompletionReason.expired.value},
            check_ttl=False,
        )
        if result.ok:
            return result
        # A concurrent sweep tick or client action may have finished the deal meanwhile.
        reloaded = await self.get_deal(deal_id, group_jid)
        if reloaded.ok and reloaded.value.is_terminal:
            return Ok(reloaded.value)
        return result

    # -----------------------------
    # Maintenance
    # -----------------------------

    async def extend_ttl(self, deal_id: str, group_jid: str, additional_seconds: int) -> Result[ActiveDeal]:
        """New deadline = max(current deadline, now) + additional_seconds."""
        if not isinstance(additional_seconds, int) or additional_seconds <= 0:
            return validation_error("additional_seconds must be a positive integer", field="additional_seconds")
        loaded = await self.get_deal(deal_id, group_jid)
        if not loaded.ok:
            return loaded
        deal = loaded.value
        if deal.is_terminal:
            return invalid_transition(deal.state.value, "extend_ttl")

        now = self.now()
        new_deadline = max(deal.ttl_expires_at, now) + timedelta(seconds=additional_seconds)
        try:
            result = await self.store.conditional_update(
                deal_id=deal.id,
                group_jid=group_jid,
                allowed_from=[deal.state],
                values={"ttl_expires_at": new_deadline, "updated_at": now},
            )
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to extend deal TTL: {exc}")
        if not result.updated:
            reloaded = await self.get_deal(deal_id, group_jid)
            if not reloaded.ok:
                return reloaded
            return invalid_transition(reloaded.value.state.value, "extend_ttl")
        logger.info(
            "deal_ttl_extended",
            extra={"deal_id": deal.id, "group_jid": group_jid, "ttl_expires_at": new_deadline.isoformat()},
        )
        return Ok(result.deal)

    async def mark_reprompted(self, deal_id: str) -> Result[bool]:
        try:
            return Ok(await self.store.mark_reprompted(deal_id, self.now()))
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to mark deal reprompted: {exc}")

    async def archive_deal(self, deal_id: str, group_jid: str) -> Result[DealHistory]:
        loaded = await self.get_deal(deal_id, group_jid)
        if not loaded.ok:
            return loaded
        if not loaded.value.is_terminal:
            return invalid_transition(loaded.value.state.value, "archive")
        try:
            record = await self.store.archive(deal_id, group_jid, self.now())
        except IntegrityError:
            return conflict(f"Deal {deal_id} is already archived")
        except SQLAlchemyError as exc:
            logger.exception("deal_archive_failed", extra={"deal_id": deal_id, "group_jid": group_jid})
            return upstream_failure(f"Failed to archive deal: {exc}")
        if record is None:
            return not_found(f"Deal {deal_id} not found in group")
        logger.info(
            "deal_archived",
            extra={"deal_id": deal_id, "group_jid": group_jid, "final_state": record.final_state.value},
        )
        return Ok(record)
