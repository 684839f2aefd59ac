from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otc_desk.models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    ActiveDeal,
    DealHistory,
    DealState,
)

SWEEP_BATCH_LIMIT = 50
MAX_HISTORY_LIMIT = 200

_HISTORY_COPY_FIELDS = (
    "id",
    "group_jid",
    "client_jid",
    "side",
    "base_rate",
    "quoted_rate",
    "locked_rate",
    "amount_brl",
    "amount_usdt",
    "quoted_at",
    "locked_at",
    "ttl_expires_at",
    "rule_id_used",
    "rule_name",
    "pricing_source",
    "spread_mode",
    "sell_spread",
    "buy_spread",
    "created_at",
)


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int
    deal: Optional[ActiveDeal] = None


class DealStore:
    """Persistence for ``active_deals`` / ``deal_history``.

    Callers never read-then-write a deal's state: every state change goes through
    ``conditional_update``, a single guarded UPDATE.

    Exceptions from the database (``SQLAlchemyError``) propagate; the deal engine
    turns them into results.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, deal: ActiveDeal) -> ActiveDeal:
        """Raises IntegrityError when the client already has an open deal in the group."""
        async with self._session_factory() as db:
            async with db.begin():
                db.add(deal)
            return deal

    async def get(self, deal_id: str, group_jid: str) -> Optional[ActiveDeal]:
        async with self._session_factory() as db:
            deal = await db.get(ActiveDeal, deal_id)
            if deal is None or deal.group_jid != group_jid:
                return None
            return deal

    async def find_active(self, group_jid: str, client_jid: str) -> Optional[ActiveDeal]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(ActiveDeal)
                .where(ActiveDeal.group_jid == group_jid)
                .where(ActiveDeal.client_jid == client_jid)
                .where(ActiveDeal.state.in_(list(ACTIVE_STATES)))
                .order_by(ActiveDeal.created_at.desc())
                .limit(1)
            )
            return rows.scalars().first()

    async def list_active(self, group_jid: str) -> list[ActiveDeal]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(ActiveDeal)
                .where(ActiveDeal.group_jid == group_jid)
                .where(ActiveDeal.state.in_(list(ACTIVE_STATES)))
                .order_by(ActiveDeal.created_at.desc())
            )
            return list(rows.scalars().all())

    async def conditional_update(
        self,
        *,
        deal_id: str,
        group_jid: str,
        allowed_from: Iterable[DealState],
        values: dict[str, Any],
    ) -> TransitionResult:
        """Apply ``values`` only if the deal is still in one of ``allowed_from``.

            UPDATE active_deals SET ... WHERE id = :id AND group_jid = :g AND state IN (:allowed_from)

        A rowcount of 0 means another writer got there first (or the deal is gone).
        """
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(ActiveDeal)
                    .where(ActiveDeal.id == deal_id)
                    .where(ActiveDeal.group_jid == group_jid)
                    .where(ActiveDeal.state.in_(list(allowed_from)))
                    .values({getattr(ActiveDeal, key): value for key, value in values.items()})
                    .execution_options(synchronize_session=False)
                )
                rowcount = int(result.rowcount or 0)
                deal = None
                if rowcount > 0:
                    deal = await db.get(ActiveDeal, deal_id, populate_existing=True)
            return TransitionResult(updated=rowcount > 0, rowcount=rowcount, deal=deal)

    async def find_expiring(
        self,
        before: datetime,
        states: Iterable[DealState] = (DealState.quoted, DealState.locked),
        limit: int = SWEEP_BATCH_LIMIT,
    ) -> list[ActiveDeal]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(ActiveDeal)
                .where(ActiveDeal.state.in_(list(states)))
                .where(ActiveDeal.ttl_expires_at < before)
                .order_by(ActiveDeal.ttl_expires_at.asc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def find_awaiting_amount(self, limit: int = SWEEP_BATCH_LIMIT) -> list[ActiveDeal]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(ActiveDeal)
                .where(ActiveDeal.state == DealState.awaiting_amount)
                .order_by(ActiveDeal.locked_at.asc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def find_unarchived(self, before: datetime, limit: int = SWEEP_BATCH_LIMIT) -> list[ActiveDeal]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(ActiveDeal)
                .where(ActiveDeal.state.in_(list(TERMINAL_STATES)))
                .where(ActiveDeal.updated_at <= before)
                .order_by(ActiveDeal.updated_at.asc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def mark_reprompted(self, deal_id: str, now: datetime) -> bool:
        """Set the reminder flag once; False if it was already set or the deal moved on."""
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(ActiveDeal)
                    .where(ActiveDeal.id == deal_id)
                    .where(ActiveDeal.state == DealState.awaiting_amount)
                    .where(ActiveDeal.reprompted_at.is_(None))
                    .values(reprompted_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            return int(result.rowcount or 0) > 0

    async def archive(self, deal_id: str, group_jid: str, now: datetime) -> Optional[DealHistory]:
        """Move a terminal deal to ``deal_history`` (copy + delete in one transaction)."""
        async with self._session_factory() as db:
            async with db.begin():
                deal = await db.get(ActiveDeal, deal_id)
                if deal is None or deal.group_jid != group_jid:
                    return None
                if deal.state not in TERMINAL_STATES:
                    return None
                meta = dict(deal.meta or {})
                record = DealHistory(
                    **{name: getattr(deal, name) for name in _HISTORY_COPY_FIELDS},
                    final_state=deal.state,
                    meta=meta,
                    completion_reason=meta.get("completion_reason"),
                    completed_at=deal.updated_at or now,
                    archived_at=now,
                )
                db.add(record)
                await db.delete(deal)
            return record

    async def history(
        self,
        group_jid: str,
        limit: int = 50,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[DealHistory]:
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        stmt = select(DealHistory).where(DealHistory.group_jid == group_jid)
        if since is not None:
            stmt = stmt.where(DealHistory.completed_at >= since)
        if until is not None:
            stmt = stmt.where(DealHistory.completed_at <= until)
        stmt = stmt.order_by(DealHistory.completed_at.desc()).limit(limit)
        async with self._session_factory() as db:
            rows = await db.execute(stmt)
            return list(rows.scalars().all())
