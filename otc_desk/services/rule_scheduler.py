from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otc_desk.core.cache import TTLCache
from otc_desk.core.result import (
    Ok,
    Result,
    conflict,
    not_found,
    upstream_failure,
    validation_error,
)
from otc_desk.database import utc_now
from otc_desk.models import GroupRule, PricingSource, SpreadMode

logger = logging.getLogger("otc_desk.rules")

DAYS_OF_WEEK = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
MAX_RULES_PER_GROUP = 20
MAX_PRIORITY = 100
MAX_NAME_LENGTH = 100
DEFAULT_TIMEZONE = "America/Sao_Paulo"
DEFAULT_RULE_CACHE_TTL_SECONDS = 60.0

_TIME_RE = re.compile(r"^(\d{2}):(\d{2})$")

_RULE_FIELDS = {
    "name",
    "description",
    "schedule_start_time",
    "schedule_end_time",
    "schedule_days",
    "schedule_timezone",
    "priority",
    "is_active",
    "pricing_source",
    "spread_mode",
    "sell_spread",
    "buy_spread",
}


# -----------------------------
# Validation
# -----------------------------


def is_valid_time_format(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    m = _TIME_RE.match(value)
    if not m:
        return False
    return int(m.group(1)) <= 23 and int(m.group(2)) <= 59


def is_valid_timezone(tz: Any) -> bool:
    if not isinstance(tz, str) or not tz.strip():
        return False
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def validate_rule_fields(fields: dict[str, Any], *, partial: bool = False):
    """Return an ``Err(ValidationError)`` for the first bad field, else None.

    With ``partial=True`` only the keys present are checked (updates).
    """

    def present(key: str) -> bool:
        return key in fields or not partial

    if present("name"):
        name = str(fields.get("name") or "").strip()
        if not name:
            return validation_error("Rule name is required", field="name")
        if len(name) > MAX_NAME_LENGTH:
            return validation_error(
                f"Rule name must be at most {MAX_NAME_LENGTH} characters", field="name"
            )
    for key in ("schedule_start_time", "schedule_end_time"):
        if present(key) and not is_valid_time_format(fields.get(key)):
            return validation_error(f"Invalid time (HH:MM expected): {fields.get(key)!r}", field=key)
    if present("schedule_days"):
        days = fields.get("schedule_days")
        if not days or isinstance(days, str):
            return validation_error("At least one schedule day is required", field="schedule_days")
        for day in days:
            if day not in DAYS_OF_WEEK:
                return validation_error(f"Invalid day: {day!r}", field="schedule_days")
    if "schedule_timezone" in fields and not is_valid_timezone(fields.get("schedule_timezone")):
        return validation_error(
            f"Invalid timezone: {fields.get('schedule_timezone')!r}", field="schedule_timezone"
        )
    if "priority" in fields:
        priority = fields.get("priority")
        if not isinstance(priority, int) or isinstance(priority, bool) or not 0 <= priority <= MAX_PRIORITY:
            return validation_error(f"Priority must be between 0 and {MAX_PRIORITY}", field="priority")
    if "pricing_source" in fields and _coerce_enum(PricingSource, fields["pricing_source"]) is None:
        return validation_error(
            f"Invalid pricing source: {fields['pricing_source']!r}", field="pricing_source"
        )
    if "spread_mode" in fields and _coerce_enum(SpreadMode, fields["spread_mode"]) is None:
        return validation_error(f"Invalid spread mode: {fields['spread_mode']!r}", field="spread_mode")
    for key in ("sell_spread", "buy_spread"):
        if key in fields:
            value = fields[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                return validation_error(f"{key} must be a number", field=key)
    return None


# -----------------------------
# Schedule matching
# -----------------------------


@dataclass(frozen=True)
class LocalTime:
    day: str
    hour: int
    minute: int


def time_in_timezone(tz: str, now: datetime) -> LocalTime:
    """Wall-clock (weekday, hour, minute) of an absolute instant in an IANA zone."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    local = now.astimezone(ZoneInfo(tz))
    return LocalTime(day=DAYS_OF_WEEK[local.weekday()], hour=local.hour, minute=local.minute)


def _to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def previous_day(day: str) -> str:
    return DAYS_OF_WEEK[(DAYS_OF_WEEK.index(day) - 1) % 7]


def is_rule_active_at_time(rule, day: str, hour: int, minute: int) -> bool:
    """Window membership for a rule at a local (day, hour, minute).

    - start == end: all day on every scheduled day
    - start < end: scheduled day and start <= now < end
    - start > end: wraps past midnight; the early-morning tail belongs to the
      previous day's window, so it checks the previous weekday
    """
    if not rule.is_active:
        return False

    days = set(rule.schedule_days or [])
    current = hour * 60 + minute
    start = _to_minutes(rule.schedule_start_time)
    end = _to_minutes(rule.schedule_end_time)

    if start == end:
        return day in days
    if start < end:
        return day in days and start <= current < end
    if current >= start:
        return day in days
    if current < end:
        return previous_day(day) in days
    return False


def resolution_order(rules: Iterable[GroupRule]) -> list[GroupRule]:
    """Priority descending; equal priorities fall back to creation order, then id."""
    return sorted(rules, key=lambda r: (-int(r.priority), r.created_at, str(r.id)))


def select_active_rule(rules: Iterable[GroupRule], now: datetime) -> Optional[GroupRule]:
    for rule in resolution_order(rules):
        if not rule.is_active:
            continue
        try:
            local = time_in_timezone(rule.schedule_timezone or DEFAULT_TIMEZONE, now)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "rule_timezone_invalid",
                extra={"rule_id": rule.id, "timezone": rule.schedule_timezone},
            )
            continue
        if is_rule_active_at_time(rule, local.day, local.hour, local.minute):
            return rule
    return None


# -----------------------------
# Store + scheduler
# -----------------------------


class RuleStore:
    """SQLAlchemy access to ``group_rules``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_by_group(self, group_jid: str) -> list[GroupRule]:
        async with self._session_factory() as db:
            rows = await db.execute(select(GroupRule).where(GroupRule.group_jid == group_jid))
            return list(rows.scalars().all())

    async def get(self, rule_id: str, group_jid: str) -> Optional[GroupRule]:
        async with self._session_factory() as db:
            rule = await db.get(GroupRule, rule_id)
            if rule is None or rule.group_jid != group_jid:
                return None
            return rule

    async def insert(self, group_jid: str, fields: dict[str, Any]) -> Optional[GroupRule]:
        """Insert unless the group is already at capacity (returns None)."""
        async with self._session_factory() as db:
            async with db.begin():
                count = await db.scalar(
                    select(func.count()).select_from(GroupRule).where(GroupRule.group_jid == group_jid)
                )
                if int(count or 0) >= MAX_RULES_PER_GROUP:
                    return None
                rule = GroupRule(group_jid=group_jid, **fields)
                db.add(rule)
            return rule

    async def update(self, rule_id: str, group_jid: str, changes: dict[str, Any]) -> Optional[GroupRule]:
        async with self._session_factory() as db:
            async with db.begin():
                rule = await db.get(GroupRule, rule_id)
                if rule is None or rule.group_jid != group_jid:
                    return None
                for key, value in changes.items():
                    setattr(rule, key, value)
                rule.updated_at = utc_now()
            return rule

    async def delete(self, rule_id: str, group_jid: str) -> bool:
        async with self._session_factory() as db:
            async with db.begin():
                rule = await db.get(GroupRule, rule_id)
                if rule is None or rule.group_jid != group_jid:
                    return False
                await db.delete(rule)
            return True


def _normalise_fields(fields: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in fields.items() if k in _RULE_FIELDS}
    if "name" in out:
        out["name"] = str(out["name"]).strip()
    if "pricing_source" in out:
        out["pricing_source"] = _coerce_enum(PricingSource, out["pricing_source"])
    if "spread_mode" in out:
        out["spread_mode"] = _coerce_enum(SpreadMode, out["spread_mode"])
    if "schedule_days" in out:
        # keep a stable mon..sun order
        out["schedule_days"] = [d for d in DAYS_OF_WEEK if d in set(out["schedule_days"])]
    for key in ("sell_spread", "buy_spread"):
        if key in out:
            out[key] = float(out[key])
    return out


class RuleScheduler:
    """Resolves the pricing rule in force for a group at a given instant.

    Rule lists are read through a per-group TTL cache; every write through this
    class invalidates the group's entry before returning.
    """

    def __init__(
        self,
        store: RuleStore,
        cache: Optional[TTLCache[str, list[GroupRule]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cache = cache if cache is not None else TTLCache(
            max_items=1024, ttl_seconds=DEFAULT_RULE_CACHE_TTL_SECONDS
        )
        self._clock = clock

    def invalidate(self, group_jid: str) -> None:
        self.cache.invalidate(group_jid)

    async def list_rules(self, group_jid: str) -> Result[list[GroupRule]]:
        cached = self.cache.get(group_jid)
        if cached is not None:
            return Ok(cached)
        try:
            rules = resolution_order(await self.store.list_by_group(group_jid))
        except SQLAlchemyError as exc:
            logger.exception("rules_load_failed", extra={"group_jid": group_jid})
            return upstream_failure(f"Failed to load rules: {exc}")
        self.cache.set(group_jid, rules)
        return Ok(rules)

    async def get_active_rule(
        self, group_jid: str, now: Optional[datetime] = None
    ) -> Result[Optional[GroupRule]]:
        loaded = await self.list_rules(group_jid)
        if not loaded.ok:
            return loaded
        return Ok(select_active_rule(loaded.value, now or self._clock()))

    async def get_rule(self, rule_id: str, group_jid: str) -> Result[GroupRule]:
        try:
            rule = await self.store.get(rule_id, group_jid)
        except SQLAlchemyError as exc:
            return upstream_failure(f"Failed to load rule: {exc}")
        if rule is None:
            return not_found("Rule not found")
        return Ok(rule)

    async def create_rule(self, group_jid: str, fields: dict[str, Any]) -> Result[GroupRule]:
        fields = {"schedule_timezone": DEFAULT_TIMEZONE, **fields}
        invalid = validate_rule_fields(fields)
        if invalid is not None:
            return invalid
        try:
            rule = await self.store.insert(group_jid, _normalise_fields(fields))
        except IntegrityError:
            return conflict(f'A rule named "{fields.get("name")}" already exists in this group')
        except SQLAlchemyError as exc:
            logger.exception("rule_create_failed", extra={"group_jid": group_jid})
            return upstream_failure(f"Failed to create rule: {exc}")
        finally:
            self.invalidate(group_jid)
        if rule is None:
            return validation_error(f"Maximum {MAX_RULES_PER_GROUP} rules per group")
        logger.info("rule_created", extra={"group_jid": group_jid, "rule_id": rule.id, "rule_name": rule.name})
        return Ok(rule)

    async def update_rule(self, rule_id: str, group_jid: str, changes: dict[str, Any]) -> Result[GroupRule]:
        changes = {k: v for k, v in changes.items() if k in _RULE_FIELDS}
        if not changes:
            return validation_error("No fields to update")
        invalid = validate_rule_fields(changes, partial=True)
        if invalid is not None:
            return invalid
        try:
            rule = await self.store.update(rule_id, group_jid, _normalise_fields(changes))
        except IntegrityError:
            return conflict("A rule with that name already exists in this group")
        except SQLAlchemyError as exc:
            logger.exception("rule_update_failed", extra={"group_jid": group_jid, "rule_id": rule_id})
            return upstream_failure(f"Failed to update rule: {exc}")
        finally:
            self.invalidate(group_jid)
        if rule is None:
            return not_found("Rule not found")
        logger.info("rule_updated", extra={"group_jid": group_jid, "rule_id": rule_id, "fields": sorted(changes)})
        return Ok(rule)

    async def delete_rule(self, rule_id: str, group_jid: str) -> Result[None]:
        try:
            deleted = await self.store.delete(rule_id, group_jid)
        except SQLAlchemyError as exc:
            logger.exception("rule_delete_failed", extra={"group_jid": group_jid, "rule_id": rule_id})
            return upstream_failure(f"Failed to delete rule: {exc}")
        finally:
            self.invalidate(group_jid)
        if not deleted:
            return not_found("Rule not found")
        logger.info("rule_deleted", extra={"group_jid": group_jid, "rule_id": rule_id})
        return Ok(None)
