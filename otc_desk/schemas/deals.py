from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from otc_desk.models.domain import DealState, PricingSource, SpreadMode, TradeSide


class DealRead(BaseModel):
    id: str
    group_jid: str
    client_jid: str
    state: DealState
    side: TradeSide
    base_rate: float
    quoted_rate: float
    locked_rate: Optional[float] = None
    amount_brl: Optional[float] = None
    amount_usdt: Optional[float] = None
    quoted_at: datetime
    locked_at: Optional[datetime] = None
    ttl_expires_at: datetime
    reprompted_at: Optional[datetime] = None
    rule_id_used: Optional[str] = None
    rule_name: Optional[str] = None
    pricing_source: PricingSource
    spread_mode: SpreadMode
    sell_spread: float
    buy_spread: float
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class DealHistoryRead(BaseModel):
    id: str
    group_jid: str
    client_jid: str
    final_state: DealState
    completion_reason: Optional[str] = None
    side: TradeSide
    base_rate: float
    quoted_rate: float
    locked_rate: Optional[float] = None
    amount_brl: Optional[float] = None
    amount_usdt: Optional[float] = None
    rule_name: Optional[str] = None
    pricing_source: PricingSource
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime
    completed_at: datetime
    archived_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class DealCancel(BaseModel):
    reason: str = Field(default="cancelled_by_operator", min_length=1, max_length=64)


class DealExtendTtl(BaseModel):
    additional_seconds: int = Field(gt=0, le=86400)
