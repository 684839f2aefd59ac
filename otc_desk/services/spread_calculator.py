from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otc_desk.core.cache import TTLCache
from otc_desk.core.result import Ok, Result, upstream_failure, validation_error
from otc_desk.database import utc_now
from otc_desk.models import DealFlowMode, GroupLanguage, GroupSpread, SpreadMode, TradeSide

logger = logging.getLogger("otc_desk.spreads")

BPS_PRECISION = 10000
MAX_SPREAD_BPS = 500.0
MAX_SPREAD_ABS_BRL = 1.0
DEFAULT_SPREAD_CACHE_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class SpreadConfig:
    group_jid: str
    spread_mode: SpreadMode = SpreadMode.bps
    sell_spread: float = 0.0
    buy_spread: float = 0.0
    quote_ttl_seconds: int = 180
    default_side: TradeSide = TradeSide.client_buys_usdt
    default_currency: str = "BRL"
    language: str = "pt-BR"
    deal_flow_mode: DealFlowMode = DealFlowMode.classic
    operator_jid: Optional[str] = None
    amount_timeout_seconds: int = 60
    group_language: GroupLanguage = GroupLanguage.pt

    @classmethod
    def from_row(cls, row: GroupSpread) -> "SpreadConfig":
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


def clamp_spread(spread: float, mode: SpreadMode, context: str = "") -> float:
    if mode == SpreadMode.flat:
        return spread
    limit = MAX_SPREAD_BPS if mode == SpreadMode.bps else MAX_SPREAD_ABS_BRL
    if abs(spread) <= limit:
        return spread
    clamped = math.copysign(limit, spread)
    logger.warning(
        "spread_clamped",
        extra={
            "original": spread,
            "clamped": clamped,
            "mode": mode.value,
            "context": context,
            "max_allowed": limit,
        },
    )
    return clamped


def calculate_quote(base_rate: float, config: SpreadConfig, side: TradeSide) -> float:
    """Apply the spread for one side of the book.

    client_buys_usdt: the desk sells USDT, so ``sell_spread`` applies (usually a markup).
    client_sells_usdt: the desk buys USDT, so ``buy_spread`` applies (usually a markdown).
    """
    raw = config.sell_spread if side == TradeSide.client_buys_usdt else config.buy_spread
    spread = clamp_spread(float(raw), config.spread_mode, f"{config.group_jid}:{side.value}")

    if config.spread_mode == SpreadMode.bps:
        return base_rate * (1 + spread / BPS_PRECISION)
    if config.spread_mode == SpreadMode.abs_brl:
        return base_rate + spread
    return base_rate


@dataclass(frozen=True)
class BothQuotes:
    buy_rate: float
    sell_rate: float


def calculate_both_quotes(base_rate: float, config: SpreadConfig) -> BothQuotes:
    """buy_rate: client buys USDT; sell_rate: client sells USDT."""
    return BothQuotes(
        buy_rate=calculate_quote(base_rate, config, TradeSide.client_buys_usdt),
        sell_rate=calculate_quote(base_rate, config, TradeSide.client_sells_usdt),
    )


def apply_rule(config: SpreadConfig, rule) -> SpreadConfig:
    """A resolved rule replaces the spread fields wholesale; flow settings stay."""
    if rule is None:
        return config
    return replace(
        config,
        spread_mode=rule.spread_mode,
        sell_spread=float(rule.sell_spread),
        buy_spread=float(rule.buy_spread),
    )


_UPSERT_FIELDS = {
    "spread_mode": SpreadMode,
    "sell_spread": float,
    "buy_spread": float,
    "quote_ttl_seconds": int,
    "default_side": TradeSide,
    "default_currency": str,
    "language": str,
    "deal_flow_mode": DealFlowMode,
    "operator_jid": str,
    "amount_timeout_seconds": int,
    "group_language": GroupLanguage,
}


def _validate_upsert(changes: dict[str, Any]):
    for key, value in changes.items():
        if key not in _UPSERT_FIELDS:
            return validation_error(f"Unknown spread config field: {key}", field=key)
        kind = _UPSERT_FIELDS[key]
        if value is None:
            if key == "operator_jid":
                continue
            return validation_error(f"{key} cannot be null", field=key)
        if kind in (SpreadMode, TradeSide, DealFlowMode, GroupLanguage):
            try:
                kind(value)
            except ValueError:
                return validation_error(f"Invalid {key}: {value!r}", field=key)
        elif kind in (int, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                return validation_error(f"{key} must be a number", field=key)
    for key in ("quote_ttl_seconds", "amount_timeout_seconds"):
        if key in changes and int(changes[key]) <= 0:
            return validation_error(f"{key} must be positive", field=key)
    return None


class SpreadConfigService:
    """Per-group spread/flow defaults with a read-through cache.

    Also serves as the operator directory: the operator assigned to a group is
    part of its config row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[TTLCache[str, SpreadConfig]] = None,
        quote_ttl_seconds: int = 180,
        amount_timeout_seconds: int = 60,
    ):
        self._session_factory = session_factory
        self.quote_ttl_seconds = quote_ttl_seconds
        self.amount_timeout_seconds = amount_timeout_seconds
        self.cache = cache if cache is not None else TTLCache(
            max_items=1024, ttl_seconds=DEFAULT_SPREAD_CACHE_TTL_SECONDS
        )

    def defaults(self, group_jid: str) -> SpreadConfig:
        return SpreadConfig(
            group_jid=group_jid,
            quote_ttl_seconds=self.quote_ttl_seconds,
            amount_timeout_seconds=self.amount_timeout_seconds,
        )

    async def get_config(self, group_jid: str) -> Result[SpreadConfig]:
        cached = self.cache.get(group_jid)
        if cached is not None:
            return Ok(cached)
        try:
            async with self._session_factory() as db:
                row = await db.get(GroupSpread, group_jid)
        except SQLAlchemyError as exc:
            logger.exception("spread_config_load_failed", extra={"group_jid": group_jid})
            return upstream_failure(f"Failed to load spread config: {exc}")
        config = SpreadConfig.from_row(row) if row is not None else self.defaults(group_jid)
        self.cache.set(group_jid, config)
        return Ok(config)

    async def upsert_config(self, group_jid: str, changes: dict[str, Any]) -> Result[SpreadConfig]:
        invalid = _validate_upsert(changes)
        if invalid is not None:
            return invalid
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    row = await db.get(GroupSpread, group_jid)
                    if row is None:
                        row = GroupSpread(group_jid=group_jid)
                        db.add(row)
                    for key, value in changes.items():
                        kind = _UPSERT_FIELDS[key]
                        setattr(row, key, kind(value) if value is not None else None)
                    row.updated_at = utc_now()
                # Column defaults are applied at flush; read them back committed.
                config = SpreadConfig.from_row(row)
        except SQLAlchemyError as exc:
            logger.exception("spread_config_save_failed", extra={"group_jid": group_jid})
            return upstream_failure(f"Failed to save spread config: {exc}")
        finally:
            self.cache.invalidate(group_jid)
        logger.info("spread_config_saved", extra={"group_jid": group_jid, "fields": sorted(changes)})
        return Ok(config)

    async def resolve_operator_for_group(self, group_jid: str) -> Optional[str]:
        loaded = await self.get_config(group_jid)
        if not loaded.ok:
            return None
        return loaded.value.operator_jid
