# ruff: noqa: B008

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from otc_desk.api.deps import runtime, unwrap
from otc_desk.runtime import Runtime
from otc_desk.schemas.deals import DealCancel, DealExtendTtl, DealHistoryRead, DealRead

router = APIRouter(prefix="/groups/{group_jid}/deals", tags=["deals"])


@router.get("", response_model=list[DealRead])
async def list_active_deals(group_jid: str, rt: Runtime = Depends(runtime)):
    return unwrap(await rt.deals.list_active_deals(group_jid))


@router.get("/history", response_model=list[DealHistoryRead])
async def deal_history(
    group_jid: str,
    limit: int = Query(50, ge=1, le=200),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    rt: Runtime = Depends(runtime),
):
    return unwrap(await rt.deals.get_history(group_jid, limit=limit, since=since, until=until))


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(group_jid: str, deal_id: str, rt: Runtime = Depends(runtime)):
    return unwrap(await rt.deals.get_deal(deal_id, group_jid))


@router.post("/{deal_id}/cancel", response_model=DealRead)
async def cancel_deal(
    group_jid: str,
    deal_id: str,
    payload: Optional[DealCancel] = None,
    rt: Runtime = Depends(runtime),
):
    """Operator-side cancel. The row stays visible until the archiver moves it."""
    reason = (payload or DealCancel()).reason
    deal = unwrap(await rt.deals.cancel_deal(deal_id, group_jid, reason))
    rt.quotes.clear(group_jid)
    return deal


@router.post("/{deal_id}/extend", response_model=DealRead)
async def extend_deal_ttl(
    group_jid: str, deal_id: str, payload: DealExtendTtl, rt: Runtime = Depends(runtime)
):
    return unwrap(await rt.deals.extend_ttl(deal_id, group_jid, payload.additional_seconds))


@router.post("/{deal_id}/archive", response_model=DealHistoryRead)
async def archive_deal(group_jid: str, deal_id: str, rt: Runtime = Depends(runtime)):
    return unwrap(await rt.deals.archive_deal(deal_id, group_jid))
