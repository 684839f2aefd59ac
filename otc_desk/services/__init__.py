from otc_desk.services.deal_computation import compute_deal
from otc_desk.services.deal_flow import DealFlowService
from otc_desk.services.dispatcher import InboundMessage, MessageDispatcher, MessageIntent
from otc_desk.services.rule_scheduler import RuleScheduler
from otc_desk.services.spread_calculator import SpreadConfigService, calculate_quote
from otc_desk.services.sweep import DealSweeper

__all__ = [
    "compute_deal",
    "calculate_quote",
    "DealFlowService",
    "DealSweeper",
    "InboundMessage",
    "MessageDispatcher",
    "MessageIntent",
    "RuleScheduler",
    "SpreadConfigService",
]
