# ruff: noqa: E501
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from otc_desk.database import Base, UtcDateTime, utc_now


class DealState(PyEnum):
    quoted = "quoted"
    locked = "locked"
    awaiting_amount = "awaiting_amount"
    computing = "computing"
    completed = "completed"
    cancelled = "cancelled"
    rejected = "rejected"
    expired = "expired"


TERMINAL_STATES = frozenset(
    {DealState.completed, DealState.cancelled, DealState.rejected, DealState.expired}
)
ACTIVE_STATES = frozenset(set(DealState) - TERMINAL_STATES)


class TradeSide(PyEnum):
    client_buys_usdt = "client_buys_usdt"
    client_sells_usdt = "client_sells_usdt"


class SpreadMode(PyEnum):
    bps = "bps"
    abs_brl = "abs_brl"
    flat = "flat"


class PricingSource(PyEnum):
    commercial_dollar = "commercial_dollar"
    usdt_binance = "usdt_binance"


class DealFlowMode(PyEnum):
    classic = "classic"
    simple = "simple"


class GroupLanguage(PyEnum):
    pt = "pt"
    en = "en"


class CompletionReason(PyEnum):
    confirmed = "confirmed"
    expired = "expired"
    cancelled_by_client = "cancelled_by_client"
    cancelled_by_operator = "cancelled_by_operator"
    rejected_by_client = "rejected_by_client"


class OutboundStatus(PyEnum):
    queued = "queued"
    sent = "sent"
    failed = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


# Partial index predicate: only open deals participate in the one-per-client guard.
_OPEN_DEAL_PREDICATE = text("state IN ('quoted', 'locked', 'awaiting_amount', 'computing')")


class ActiveDeal(Base):
    __tablename__ = "active_deals"
    __table_args__ = (
        Index(
            "uq_active_deals_open_client",
            "group_jid",
            "client_jid",
            unique=True,
            sqlite_where=_OPEN_DEAL_PREDICATE,
            postgresql_where=_OPEN_DEAL_PREDICATE,
        ),
        Index("ix_active_deals_state_ttl", "state", "ttl_expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_jid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    client_jid: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[DealState] = mapped_column(
        Enum(DealState, native_enum=False, length=32), default=DealState.quoted, nullable=False
    )
    side: Mapped[TradeSide] = mapped_column(Enum(TradeSide, native_enum=False, length=32), nullable=False)

    base_rate: Mapped[float] = mapped_column(Float, nullable=False)
    quoted_rate: Mapped[float] = mapped_column(Float, nullable=False)
    locked_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount_brl: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount_usdt: Mapped[float | None] = mapped_column(Float, nullable=True)

    quoted_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)
    locked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    ttl_expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    reprompted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)

    rule_id_used: Mapped[str | None] = mapped_column(String(36), nullable=True)
    rule_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pricing_source: Mapped[PricingSource] = mapped_column(
        Enum(PricingSource, native_enum=False, length=32), default=PricingSource.usdt_binance, nullable=False
    )
    spread_mode: Mapped[SpreadMode] = mapped_column(
        Enum(SpreadMode, native_enum=False, length=16), default=SpreadMode.bps, nullable=False
    )
    sell_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    buy_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    # "metadata" is reserved on declarative classes.
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def effective_rate(self) -> float:
        return self.locked_rate if self.locked_rate is not None else self.quoted_rate


class DealHistory(Base):
    __tablename__ = "deal_history"
    __table_args__ = (Index("ix_deal_history_group_completed", "group_jid", "completed_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    group_jid: Mapped[str] = mapped_column(String(128), nullable=False)
    client_jid: Mapped[str] = mapped_column(String(128), nullable=False)
    final_state: Mapped[DealState] = mapped_column(Enum(DealState, native_enum=False, length=32), nullable=False)
    side: Mapped[TradeSide] = mapped_column(Enum(TradeSide, native_enum=False, length=32), nullable=False)

    base_rate: Mapped[float] = mapped_column(Float, nullable=False)
    quoted_rate: Mapped[float] = mapped_column(Float, nullable=False)
    locked_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount_brl: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount_usdt: Mapped[float | None] = mapped_column(Float, nullable=True)

    quoted_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    ttl_expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)

    rule_id_used: Mapped[str | None] = mapped_column(String(36), nullable=True)
    rule_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pricing_source: Mapped[PricingSource] = mapped_column(Enum(PricingSource, native_enum=False, length=32), nullable=False)
    spread_mode: Mapped[SpreadMode] = mapped_column(Enum(SpreadMode, native_enum=False, length=16), nullable=False)
    sell_spread: Mapped[float] = mapped_column(Float, nullable=False)
    buy_spread: Mapped[float] = mapped_column(Float, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    completion_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)


class GroupRule(Base):
    __tablename__ = "group_rules"
    __table_args__ = (UniqueConstraint("group_jid", "name", name="uq_group_rules_group_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_jid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    schedule_start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    schedule_end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    schedule_days: Mapped[list] = mapped_column(JSON, nullable=False)
    schedule_timezone: Mapped[str] = mapped_column(String(64), default="America/Sao_Paulo", nullable=False)

    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    pricing_source: Mapped[PricingSource] = mapped_column(
        Enum(PricingSource, native_enum=False, length=32), default=PricingSource.usdt_binance, nullable=False
    )
    spread_mode: Mapped[SpreadMode] = mapped_column(
        Enum(SpreadMode, native_enum=False, length=16), default=SpreadMode.bps, nullable=False
    )
    sell_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    buy_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now)


class GroupSpread(Base):
    __tablename__ = "group_spreads"

    group_jid: Mapped[str] = mapped_column(String(128), primary_key=True)
    spread_mode: Mapped[SpreadMode] = mapped_column(
        Enum(SpreadMode, native_enum=False, length=16), default=SpreadMode.bps, nullable=False
    )
    sell_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    buy_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    quote_ttl_seconds: Mapped[int] = mapped_column(Integer, default=180, nullable=False)
    default_side: Mapped[TradeSide] = mapped_column(
        Enum(TradeSide, native_enum=False, length=32), default=TradeSide.client_buys_usdt, nullable=False
    )
    default_currency: Mapped[str] = mapped_column(String(8), default="BRL", nullable=False)
    language: Mapped[str] = mapped_column(String(8), default="pt-BR", nullable=False)
    deal_flow_mode: Mapped[DealFlowMode] = mapped_column(
        Enum(DealFlowMode, native_enum=False, length=16), default=DealFlowMode.classic, nullable=False
    )
    operator_jid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_timeout_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    group_language: Mapped[GroupLanguage] = mapped_column(
        Enum(GroupLanguage, native_enum=False, length=8), default=GroupLanguage.pt, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now)


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_jid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    mentions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[OutboundStatus] = mapped_column(
        Enum(OutboundStatus, native_enum=False, length=16), default=OutboundStatus.queued, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utc_now)
    sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
