from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from otc_desk.models.domain import DealFlowMode, GroupLanguage, SpreadMode, TradeSide


class SpreadConfigRead(BaseModel):
    group_jid: str
    spread_mode: SpreadMode
    sell_spread: float
    buy_spread: float
    quote_ttl_seconds: int
    default_side: TradeSide
    default_currency: str
    language: str
    deal_flow_mode: DealFlowMode
    operator_jid: Optional[str] = None
    amount_timeout_seconds: int
    group_language: GroupLanguage

    model_config = ConfigDict(from_attributes=True)


class SpreadConfigUpdate(BaseModel):
    spread_mode: Optional[SpreadMode] = None
    sell_spread: Optional[float] = None
    buy_spread: Optional[float] = None
    quote_ttl_seconds: Optional[int] = Field(default=None, gt=0)
    default_side: Optional[TradeSide] = None
    default_currency: Optional[str] = Field(default=None, max_length=8)
    language: Optional[str] = Field(default=None, max_length=8)
    deal_flow_mode: Optional[DealFlowMode] = None
    operator_jid: Optional[str] = None
    amount_timeout_seconds: Optional[int] = Field(default=None, gt=0)
    group_language: Optional[GroupLanguage] = None


class QuotePreview(BaseModel):
    group_jid: str
    base_rate: float
    buy_rate: float
    sell_rate: float
    pricing_source: str
    rule_name: Optional[str] = None
