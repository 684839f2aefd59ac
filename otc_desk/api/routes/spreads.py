# ruff: noqa: B008

from dataclasses import asdict

from fastapi import APIRouter, Depends

from otc_desk.api.deps import runtime, unwrap
from otc_desk.runtime import Runtime
from otc_desk.schemas.spreads import QuotePreview, SpreadConfigRead, SpreadConfigUpdate
from otc_desk.services.spread_calculator import calculate_both_quotes

router = APIRouter(prefix="/groups/{group_jid}", tags=["spreads"])


@router.get("/spread", response_model=SpreadConfigRead)
async def get_spread_config(group_jid: str, rt: Runtime = Depends(runtime)):
    return asdict(unwrap(await rt.spreads.get_config(group_jid)))


@router.put("/spread", response_model=SpreadConfigRead)
async def upsert_spread_config(
    group_jid: str, payload: SpreadConfigUpdate, rt: Runtime = Depends(runtime)
):
    changes = payload.model_dump(exclude_unset=True)
    return asdict(unwrap(await rt.spreads.upsert_config(group_jid, changes)))


@router.get("/quote", response_model=QuotePreview)
async def preview_quote(group_jid: str, rt: Runtime = Depends(runtime)):
    """Both sides of the current price for the group, without opening a deal."""
    context = unwrap(await rt.pricer.price(group_jid))
    both = calculate_both_quotes(context.base_rate, context.spread)
    return QuotePreview(
        group_jid=group_jid,
        base_rate=context.base_rate,
        buy_rate=both.buy_rate,
        sell_rate=both.sell_rate,
        pricing_source=context.pricing_source.value,
        rule_name=context.rule.name if context.rule is not None else None,
    )
