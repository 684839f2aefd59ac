# ruff: noqa: B008

from fastapi import APIRouter, Depends, HTTPException, Query, status

from otc_desk.api.deps import require_ingest_token, runtime
from otc_desk.runtime import Runtime
from otc_desk.schemas.messages import DispatchOut, InboundMessageIn, OutboundMessageRead
from otc_desk.services.dispatcher import InboundMessage
from otc_desk.services.notifier import OutboxNotifier

router = APIRouter(
    prefix="/messages", tags=["messages"], dependencies=[Depends(require_ingest_token)]
)


def _outbox(rt: Runtime) -> OutboxNotifier:
    if not isinstance(rt.notifier, OutboxNotifier):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Outbox is not enabled")
    return rt.notifier


@router.post("/inbound", response_model=DispatchOut)
async def inbound_message(payload: InboundMessageIn, rt: Runtime = Depends(runtime)):
    """Entry point for the chat transport: one classified group message per call."""
    result = await rt.dispatcher.dispatch(
        payload.intent,
        InboundMessage(
            group_jid=payload.group_jid,
            sender_jid=payload.sender_jid,
            text=payload.text,
            sender_name=payload.sender_name,
        ),
    )
    return DispatchOut(
        action=result.action,
        deal_id=result.deal_id,
        deal_state=result.deal.state.value if result.deal is not None else None,
        reply=result.reply,
    )


@router.get("/outbox", response_model=list[OutboundMessageRead])
async def pending_outbound(
    limit: int = Query(100, ge=1, le=500), rt: Runtime = Depends(runtime)
):
    """Queued replies, oldest first, for the transport to deliver."""
    return await _outbox(rt).pending(limit=limit)


@router.post("/outbox/{message_id}/sent", status_code=status.HTTP_204_NO_CONTENT)
async def mark_outbound_sent(message_id: int, rt: Runtime = Depends(runtime)):
    if not await _outbox(rt).mark_sent(message_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Message is not queued")


@router.post("/outbox/{message_id}/failed", status_code=status.HTTP_204_NO_CONTENT)
async def mark_outbound_failed(message_id: int, rt: Runtime = Depends(runtime)):
    if not await _outbox(rt).mark_failed(message_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Message is not queued")


@router.post("/sweep")
async def run_sweep(rt: Runtime = Depends(runtime)):
    """Run one sweep tick now (ops / cron fallback when the in-process timer is off)."""
    report = await rt.sweeper.run_once()
    return {
        "expired": report.expired,
        "withdrawn_notices": report.withdrawn_notices,
        "reprompted": report.reprompted,
        "amount_expired": report.amount_expired,
        "archived": report.archived,
        "recovered": report.recovered,
        "failures": report.failures,
    }
