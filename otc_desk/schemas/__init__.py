from otc_desk.schemas.deals import DealCancel, DealExtendTtl, DealHistoryRead, DealRead
from otc_desk.schemas.messages import DispatchOut, InboundMessageIn, OutboundMessageRead
from otc_desk.schemas.rules import ActiveRuleRead, RuleCreate, RuleRead, RuleUpdate
from otc_desk.schemas.spreads import QuotePreview, SpreadConfigRead, SpreadConfigUpdate

__all__ = [
    "ActiveRuleRead",
    "DealCancel",
    "DealExtendTtl",
    "DealHistoryRead",
    "DealRead",
    "DispatchOut",
    "InboundMessageIn",
    "OutboundMessageRead",
    "QuotePreview",
    "RuleCreate",
    "RuleRead",
    "RuleUpdate",
    "SpreadConfigRead",
    "SpreadConfigUpdate",
]
