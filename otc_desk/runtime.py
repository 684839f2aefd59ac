"""Process-wide service graph.

Caches, the active-quote bridge and the sweep timer are per-process state, so
the services that own them are built once here and handed to the routes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otc_desk.config import Settings, settings as default_settings
from otc_desk.core.cache import TTLCache
from otc_desk.database import SessionLocal, utc_now
from otc_desk.services.active_quotes import ActiveQuoteBridge
from otc_desk.services.deal_flow import DealFlowService
from otc_desk.services.deal_store import DealStore
from otc_desk.services.dispatcher import MessageDispatcher
from otc_desk.services.notifier import Notifier, OutboxNotifier
from otc_desk.services.price_feed import HttpPriceFeed, PriceFeed
from otc_desk.services.pricing import QuotePricer
from otc_desk.services.rule_scheduler import RuleScheduler, RuleStore
from otc_desk.services.spread_calculator import SpreadConfigService
from otc_desk.services.sweep import DealSweeper

logger = logging.getLogger("otc_desk.runtime")


@dataclass
class Runtime:
    deals: DealFlowService
    rules: RuleScheduler
    spreads: SpreadConfigService
    quotes: ActiveQuoteBridge
    notifier: Notifier
    price_feed: PriceFeed
    pricer: QuotePricer
    dispatcher: MessageDispatcher
    sweeper: DealSweeper


def build_runtime(
    config: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    price_feed: Optional[PriceFeed] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Runtime:
    config = config or default_settings
    session_factory = session_factory or SessionLocal

    rules = RuleScheduler(
        RuleStore(session_factory),
        cache=TTLCache(max_items=1024, ttl_seconds=config.rule_cache_ttl_seconds),
        clock=clock,
    )
    spreads = SpreadConfigService(
        session_factory,
        cache=TTLCache(max_items=1024, ttl_seconds=config.spread_cache_ttl_seconds),
        quote_ttl_seconds=config.default_quote_ttl_seconds,
        amount_timeout_seconds=config.default_amount_timeout_seconds,
    )
    quotes = ActiveQuoteBridge(
        ttl_seconds=config.active_quote_ttl_seconds, capacity=config.active_quote_capacity
    )
    notifier = notifier or OutboxNotifier(session_factory)
    price_feed = price_feed or HttpPriceFeed(
        binance_url=config.binance_price_url,
        commercial_dollar_url=config.commercial_dollar_url,
        timeout=config.price_feed_timeout_seconds,
    )
    deals = DealFlowService(DealStore(session_factory), clock=clock)
    pricer = QuotePricer(price_feed, rules, spreads, clock=clock)
    dispatcher = MessageDispatcher(deals, pricer, spreads, quotes, notifier)
    sweeper = DealSweeper(
        deals,
        notifier,
        spreads,
        quotes=quotes,
        interval_seconds=config.sweep_interval_seconds,
        clock=clock,
    )
    return Runtime(
        deals=deals,
        rules=rules,
        spreads=spreads,
        quotes=quotes,
        notifier=notifier,
        price_feed=price_feed,
        pricer=pricer,
        dispatcher=dispatcher,
        sweeper=sweeper,
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Swap the process runtime (tests inject fakes here)."""
    global _runtime
    _runtime = runtime


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is None:
        return
    await _runtime.sweeper.stop()
    await _runtime.dispatcher.drain()
    logger.info("runtime_stopped")
    _runtime = None
