from otc_desk.models.domain import (  # noqa: F401
    ACTIVE_STATES,
    TERMINAL_STATES,
    ActiveDeal,
    CompletionReason,
    DealFlowMode,
    DealHistory,
    DealState,
    GroupLanguage,
    GroupRule,
    GroupSpread,
    OutboundMessage,
    OutboundStatus,
    PricingSource,
    SpreadMode,
    TradeSide,
)
