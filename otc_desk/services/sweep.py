from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from otc_desk.models import ActiveDeal, DealState
from otc_desk.services import messages
from otc_desk.services.active_quotes import ActiveQuoteBridge
from otc_desk.services.deal_flow import DealFlowService
from otc_desk.services.notifier import Notifier
from otc_desk.services.spread_calculator import SpreadConfig, SpreadConfigService

logger = logging.getLogger("otc_desk.sweep")

DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0


@dataclass
class SweepReport:
    expired: int = 0
    withdrawn_notices: int = 0
    reprompted: int = 0
    amount_expired: int = 0
    archived: int = 0
    recovered: int = 0
    failures: int = 0

    @property
    def touched(self) -> int:
        return self.expired + self.reprompted + self.amount_expired + self.recovered


class DealSweeper:
    """Periodic TTL enforcement for open deals.

    Three passes per tick:
    - quoted/locked deals past ``ttl_expires_at`` are expired; quotes that were
      never locked get an "off" notice tagging the group's operator
    - awaiting_amount deals get one reminder after the group's amount timeout
      (counted from ``locked_at``) and are expired after twice that
    - terminal deals still sitting in ``active_deals`` (archival failed or never
      ran, e.g. after an expiry on access) are moved to history

    One deal failing (store error, send error) is logged and does not stop the
    rest of the tick. ``start``/``stop`` toggle a single asyncio task.
    """

    def __init__(
        self,
        deals: DealFlowService,
        notifier: Notifier,
        spreads: SpreadConfigService,
        quotes: Optional[ActiveQuoteBridge] = None,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.deals = deals
        self.notifier = notifier
        self.spreads = spreads
        self.quotes = quotes
        self.interval_seconds = float(interval_seconds)
        self._clock = clock or deals.now
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the timer on the running loop. Returns False if it was already running."""
        if self.is_running:
            return False
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="deal-sweep")
        logger.info("deal_sweep_timer_started", extra={"interval_s": self.interval_seconds})
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            self._task = None
            return
        assert self._stop is not None and self._task is not None
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info("deal_sweep_timer_stopped")

    async def _loop(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                report = await self.run_once()
                if report.touched:
                    logger.info("deal_sweep_periodic", extra=asdict(report))
            except Exception as exc:
                logger.exception("deal_sweep_periodic_error", extra={"error": str(exc)})
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    # -----------------------------
    # Passes
    # -----------------------------

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport()
        await self._ttl_pass(now, report)
        await self._awaiting_amount_pass(now, report)
        await self._leftover_pass(now, report)
        return report

    async def _group_config(self, group_jid: str) -> SpreadConfig:
        loaded = await self.spreads.get_config(group_jid)
        if loaded.ok:
            return loaded.value
        return SpreadConfig(group_jid=group_jid)

    async def _finish(self, deal: ActiveDeal, report: SweepReport) -> None:
        if self.quotes is not None:
            self.quotes.clear(deal.group_jid)
        archived = await self.deals.archive_deal(deal.id, deal.group_jid)
        if archived.ok:
            report.archived += 1
        else:
            logger.warning(
                "deal_sweep_archive_failed",
                extra={"deal_id": deal.id, "error": archived.error.message},
            )

    async def _ttl_pass(self, now: datetime, report: SweepReport) -> None:
        found = await self.deals.find_expiring(now)
        if not found.ok:
            report.failures += 1
            logger.error("deal_sweep_error", extra={"error": found.error.message})
            return

        for deal in found.value:
            try:
                result = await self.deals.expire_deal(deal.id, deal.group_jid)
                if not result.ok:
                    report.failures += 1
                    logger.warning(
                        "deal_sweep_expire_error",
                        extra={"deal_id": deal.id, "error": result.error.message},
                    )
                    continue
                if result.value.state != DealState.expired:
                    # finished some other way while we were looking
                    continue
                report.expired += 1
                expired_deal = result.value
                try:
                    if (expired_deal.meta or {}).get("from_state") == DealState.quoted.value:
                        config = await self._group_config(deal.group_jid)
                        operator = config.operator_jid
                        await self.notifier.send_to_group(
                            deal.group_jid,
                            messages.offer_withdrawn(operator, config.group_language.value),
                            mentions=[operator] if operator else None,
                        )
                        report.withdrawn_notices += 1
                finally:
                    await self._finish(expired_deal, report)
            except Exception as exc:
                report.failures += 1
                logger.exception("deal_sweep_item_failed", extra={"deal_id": deal.id, "error": str(exc)})

    async def _awaiting_amount_pass(self, now: datetime, report: SweepReport) -> None:
        found = await self.deals.find_awaiting_amount()
        if not found.ok:
            report.failures += 1
            logger.error("deal_sweep_reprompt_error", extra={"error": found.error.message})
            return

        for deal in found.value:
            try:
                config = await self._group_config(deal.group_jid)
                timeout = timedelta(seconds=config.amount_timeout_seconds)
                age = now - (deal.locked_at or deal.updated_at)
                lang = config.group_language.value

                if deal.reprompted_at is None:
                    if age < timeout:
                        continue
                    marked = await self.deals.mark_reprompted(deal.id)
                    if not marked.ok or not marked.value:
                        continue
                    await self.notifier.send_to_group(
                        deal.group_jid,
                        messages.amount_reminder(deal, lang),
                        mentions=[deal.client_jid],
                    )
                    report.reprompted += 1
                    continue

                if age < 2 * timeout:
                    continue
                result = await self.deals.expire_deal(deal.id, deal.group_jid)
                if not result.ok:
                    report.failures += 1
                    logger.warning(
                        "deal_sweep_expire_error",
                        extra={"deal_id": deal.id, "error": result.error.message},
                    )
                    continue
                if result.value.state != DealState.expired:
                    continue
                report.amount_expired += 1
                try:
                    await self.notifier.send_to_group(
                        deal.group_jid, messages.text("expired", lang), mentions=[deal.client_jid]
                    )
                finally:
                    await self._finish(result.value, report)
            except Exception as exc:
                report.failures += 1
                logger.exception("deal_sweep_item_failed", extra={"deal_id": deal.id, "error": str(exc)})

    async def _leftover_pass(self, now: datetime, report: SweepReport) -> None:
        found = await self.deals.find_unarchived(now)
        if not found.ok:
            report.failures += 1
            logger.error("deal_sweep_leftover_error", extra={"error": found.error.message})
            return

        for deal in found.value:
            archived = await self.deals.archive_deal(deal.id, deal.group_jid)
            if archived.ok:
                report.recovered += 1
                continue
            report.failures += 1
            logger.warning(
                "deal_sweep_archive_failed",
                extra={"deal_id": deal.id, "error": archived.error.message},
            )
