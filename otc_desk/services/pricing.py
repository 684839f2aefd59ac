from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from otc_desk.core.result import Ok, Result, upstream_failure
from otc_desk.database import utc_now
from otc_desk.models import GroupRule, PricingSource, TradeSide
from otc_desk.services.price_feed import PriceFeed, PriceFeedError
from otc_desk.services.rule_scheduler import RuleScheduler
from otc_desk.services.spread_calculator import (
    SpreadConfig,
    SpreadConfigService,
    apply_rule,
    calculate_quote,
)

logger = logging.getLogger("otc_desk.pricing")


@dataclass(frozen=True)
class QuoteContext:
    """Everything a new deal needs to record about how its price was made."""

    base_rate: float
    quoted_rate: float
    side: TradeSide
    pricing_source: PricingSource
    spread: SpreadConfig
    group_config: SpreadConfig
    rule: Optional[GroupRule] = None

    @property
    def rule_provenance(self) -> dict:
        return {
            "rule_id_used": self.rule.id if self.rule is not None else None,
            "rule_name": self.rule.name if self.rule is not None else None,
            "pricing_source": self.pricing_source,
            "spread_mode": self.spread.spread_mode,
            "sell_spread": self.spread.sell_spread,
            "buy_spread": self.spread.buy_spread,
        }


class QuotePricer:
    def __init__(
        self,
        price_feed: PriceFeed,
        rules: RuleScheduler,
        spreads: SpreadConfigService,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.price_feed = price_feed
        self.rules = rules
        self.spreads = spreads
        self._clock = clock

    async def price(
        self,
        group_jid: str,
        side: Optional[TradeSide] = None,
        now: Optional[datetime] = None,
    ) -> Result[QuoteContext]:
        loaded = await self.spreads.get_config(group_jid)
        if not loaded.ok:
            return loaded
        group_config = loaded.value

        resolved = await self.rules.get_active_rule(group_jid, now or self._clock())
        if not resolved.ok:
            return resolved
        rule = resolved.value

        source = rule.pricing_source if rule is not None else PricingSource.usdt_binance
        try:
            base_rate = await self.price_feed.fetch_base_rate(source)
        except PriceFeedError as exc:
            logger.warning(
                "quote_price_unavailable",
                extra={"group_jid": group_jid, "source": source.value, "error": str(exc)},
            )
            return upstream_failure(str(exc))

        side = side or group_config.default_side
        spread = apply_rule(group_config, rule)
        quoted_rate = calculate_quote(base_rate, spread, side)
        return Ok(
            QuoteContext(
                base_rate=base_rate,
                quoted_rate=quoted_rate,
                side=side,
                pricing_source=source,
                spread=spread,
                group_config=group_config,
                rule=rule,
            )
        )
