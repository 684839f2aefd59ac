from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from otc_desk.models.domain import PricingSource, SpreadMode


class RuleBase(BaseModel):
    description: Optional[str] = None
    schedule_timezone: Optional[str] = None
    priority: int = 0
    is_active: bool = True
    pricing_source: PricingSource = PricingSource.usdt_binance
    spread_mode: SpreadMode = SpreadMode.bps
    sell_spread: float = 0.0
    buy_spread: float = 0.0


class RuleCreate(RuleBase):
    name: str = Field(min_length=1, max_length=100)
    schedule_start_time: str
    schedule_end_time: str
    schedule_days: List[str]


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    schedule_start_time: Optional[str] = None
    schedule_end_time: Optional[str] = None
    schedule_days: Optional[List[str]] = None
    schedule_timezone: Optional[str] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    pricing_source: Optional[PricingSource] = None
    spread_mode: Optional[SpreadMode] = None
    sell_spread: Optional[float] = None
    buy_spread: Optional[float] = None


class RuleRead(BaseModel):
    id: str
    group_jid: str
    name: str
    description: Optional[str] = None
    schedule_start_time: str
    schedule_end_time: str
    schedule_days: List[str]
    schedule_timezone: str
    priority: int
    is_active: bool
    pricing_source: PricingSource
    spread_mode: SpreadMode
    sell_spread: float
    buy_spread: float
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ActiveRuleRead(BaseModel):
    group_jid: str
    at: datetime
    rule: Optional[RuleRead] = None
