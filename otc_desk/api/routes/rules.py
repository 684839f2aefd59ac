# ruff: noqa: B008

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from otc_desk.api.deps import runtime, unwrap
from otc_desk.runtime import Runtime
from otc_desk.schemas.rules import ActiveRuleRead, RuleCreate, RuleRead, RuleUpdate

router = APIRouter(prefix="/groups/{group_jid}/rules", tags=["rules"])


@router.get("", response_model=list[RuleRead])
async def list_rules(group_jid: str, rt: Runtime = Depends(runtime)):
    return unwrap(await rt.rules.list_rules(group_jid))


@router.get("/active", response_model=ActiveRuleRead)
async def get_active_rule(
    group_jid: str,
    at: Optional[datetime] = Query(None, description="Instant to resolve at (default: now)"),
    rt: Runtime = Depends(runtime),
):
    when = at or rt.deals.now()
    rule = unwrap(await rt.rules.get_active_rule(group_jid, when))
    return ActiveRuleRead(
        group_jid=group_jid,
        at=when,
        rule=RuleRead.model_validate(rule) if rule is not None else None,
    )


@router.get("/{rule_id}", response_model=RuleRead)
async def get_rule(group_jid: str, rule_id: str, rt: Runtime = Depends(runtime)):
    return unwrap(await rt.rules.get_rule(rule_id, group_jid))


@router.post("", response_model=RuleRead, status_code=status.HTTP_201_CREATED)
async def create_rule(group_jid: str, payload: RuleCreate, rt: Runtime = Depends(runtime)):
    fields = payload.model_dump(exclude_none=True)
    return unwrap(await rt.rules.create_rule(group_jid, fields))


@router.patch("/{rule_id}", response_model=RuleRead)
async def update_rule(
    group_jid: str, rule_id: str, payload: RuleUpdate, rt: Runtime = Depends(runtime)
):
    changes = payload.model_dump(exclude_unset=True)
    return unwrap(await rt.rules.update_rule(rule_id, group_jid, changes))


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(group_jid: str, rule_id: str, rt: Runtime = Depends(runtime)):
    unwrap(await rt.rules.delete_rule(rule_id, group_jid))
