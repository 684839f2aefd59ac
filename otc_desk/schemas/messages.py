from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from otc_desk.models.domain import OutboundStatus
from otc_desk.services.dispatcher import DispatchAction, MessageIntent


class InboundMessageIn(BaseModel):
    group_jid: str = Field(min_length=1, max_length=128)
    sender_jid: str = Field(min_length=1, max_length=128)
    intent: MessageIntent
    text: str = Field(default="", max_length=4096)
    sender_name: Optional[str] = Field(default=None, max_length=128)


class DispatchOut(BaseModel):
    action: DispatchAction
    deal_id: Optional[str] = None
    deal_state: Optional[str] = None
    reply: Optional[str] = None


class OutboundMessageRead(BaseModel):
    id: int
    group_jid: str
    content_text: str
    mentions: List[str]
    status: OutboundStatus
    created_at: datetime
    sent_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
