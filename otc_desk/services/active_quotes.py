from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from otc_desk.core.cache import TTLCache
from otc_desk.database import utc_now
from otc_desk.models import PricingSource, TradeSide

logger = logging.getLogger("otc_desk.active_quotes")

DEFAULT_ACTIVE_QUOTE_TTL_SECONDS = 300.0
DEFAULT_ACTIVE_QUOTE_CAPACITY = 1024


class QuoteStatus(str, Enum):
    pending = "pending"
    repricing = "repricing"
    consumed = "consumed"


@dataclass
class ActiveQuote:
    id: str
    group_jid: str
    quoted_price: float
    base_price: float
    side: TradeSide
    price_source: PricingSource = PricingSource.usdt_binance
    status: QuoteStatus = QuoteStatus.pending
    pre_stated_volume: Optional[float] = None
    reprice_count: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_usable(self) -> bool:
        return self.status == QuoteStatus.pending


class ActiveQuoteBridge:
    """Per-group "last price shown", best effort and never the system of record.

    Lets a follow-up like "5000" resolve against the most recent quote before any
    deal exists. Backed by a bounded TTL cache, so abandoned quotes age out and
    the map cannot grow without limit.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_ACTIVE_QUOTE_TTL_SECONDS,
        capacity: int = DEFAULT_ACTIVE_QUOTE_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._quotes: TTLCache[str, ActiveQuote] = TTLCache(
            max_items=capacity, ttl_seconds=ttl_seconds, clock=clock
        )
        self._counter = itertools.count(1)

    def create(
        self,
        group_jid: str,
        quoted_price: float,
        base_price: float,
        side: TradeSide,
        price_source: PricingSource = PricingSource.usdt_binance,
    ) -> ActiveQuote:
        """Replace whatever quote the group had with a fresh pending one."""
        quote = ActiveQuote(
            id=f"quote_{int(time.time() * 1000)}_{next(self._counter)}",
            group_jid=group_jid,
            quoted_price=quoted_price,
            base_price=base_price,
            side=side,
            price_source=price_source,
        )
        self._quotes.set(group_jid, quote)
        logger.info(
            "active_quote_created",
            extra={"group_jid": group_jid, "quote_id": quote.id, "quoted_price": quoted_price},
        )
        return quote

    def get(self, group_jid: str) -> Optional[ActiveQuote]:
        return self._quotes.get(group_jid)

    def get_usable(self, group_jid: str) -> Optional[ActiveQuote]:
        quote = self._quotes.get(group_jid)
        if quote is None or not quote.is_usable:
            return None
        return quote

    def set_pre_stated_volume(self, group_jid: str, amount_usdt: float) -> Optional[ActiveQuote]:
        quote = self.get_usable(group_jid)
        if quote is None:
            return None
        quote.pre_stated_volume = amount_usdt
        return quote

    def try_lock_for_reprice(self, group_jid: str) -> bool:
        """Claim the quote for a price refresh; False if someone else holds it."""
        quote = self._quotes.get(group_jid)
        if quote is None or quote.status != QuoteStatus.pending:
            return False
        quote.status = QuoteStatus.repricing
        return True

    def unlock_after_reprice(
        self, group_jid: str, new_price: Optional[float] = None, base_price: Optional[float] = None
    ) -> Optional[ActiveQuote]:
        """Release a repricing claim, optionally with the refreshed prices."""
        quote = self._quotes.get(group_jid)
        if quote is None or quote.status != QuoteStatus.repricing:
            return None
        if new_price is not None:
            quote.quoted_price = new_price
            quote.reprice_count += 1
            # a fresh price restarts the TTL
            self._quotes.set(group_jid, quote)
        if base_price is not None:
            quote.base_price = base_price
        quote.status = QuoteStatus.pending
        return quote

    def consume(self, group_jid: str) -> Optional[ActiveQuote]:
        """Mark the quote as used by a deal; it stays visible until cleared."""
        quote = self._quotes.get(group_jid)
        if quote is None:
            return None
        quote.status = QuoteStatus.consumed
        return quote

    def clear(self, group_jid: str) -> bool:
        cleared = self._quotes.invalidate(group_jid)
        if cleared:
            logger.info("active_quote_cleared", extra={"group_jid": group_jid})
        return cleared

    def reset(self) -> None:
        self._quotes.clear()

    def __len__(self) -> int:
        return len(self._quotes)
