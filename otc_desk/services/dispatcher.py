"""
Inbound chat message -> deal state machine.

The transport (or an upstream classifier) decides *what* the client said
(``MessageIntent``); this module decides what that means for the client's deal
in the group, runs the transition and answers in the group.

Replies are awaited; archival of finished deals runs in the background and
never delays or fails the response.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from otc_desk.core.result import (
    Conflict,
    Err,
    Expired,
    InvalidTransition,
    UpstreamFailure,
    ValidationError,
)
from otc_desk.models import ActiveDeal, CompletionReason, DealFlowMode, DealState
from otc_desk.services import messages
from otc_desk.services.active_quotes import ActiveQuote, ActiveQuoteBridge
from otc_desk.services.deal_computation import (
    compute_deal,
    extract_bare_amount,
    extract_brl_amount,
    extract_usdt_amount,
)
from otc_desk.services.deal_flow import DealFlowService
from otc_desk.services.notifier import NotificationError, Notifier, OperatorDirectory
from otc_desk.services.pricing import QuotePricer
from otc_desk.services.spread_calculator import SpreadConfig, SpreadConfigService

logger = logging.getLogger("otc_desk.dispatcher")


class MessageIntent(str, Enum):
    volume_inquiry = "volume_inquiry"
    price_lock = "price_lock"
    confirmation = "confirmation"
    cancellation = "cancellation"
    rejection = "rejection"
    volume_input = "volume_input"
    direct_amount = "direct_amount"
    unrecognized = "unrecognized"


class DispatchAction(str, Enum):
    quoted = "quoted"
    locked = "locked"
    awaiting_amount = "awaiting_amount"
    completed = "completed"
    cancelled = "cancelled"
    rejected = "rejected"
    reminded = "reminded"
    previewed = "previewed"
    operator_tagged = "operator_tagged"
    withdrawn = "withdrawn"
    clarification = "clarification"
    expired = "expired"
    retry = "retry"
    ignored = "ignored"


@dataclass(frozen=True)
class InboundMessage:
    group_jid: str
    sender_jid: str
    text: str
    sender_name: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    action: DispatchAction
    deal: Optional[ActiveDeal] = None
    reply: Optional[str] = None

    @property
    def deal_id(self) -> Optional[str]:
        return self.deal.id if self.deal is not None else None


@dataclass(frozen=True)
class _Turn:
    """One inbound message with the group settings it is handled under."""

    message: InboundMessage
    config: SpreadConfig

    @property
    def group_jid(self) -> str:
        return self.message.group_jid

    @property
    def client_jid(self) -> str:
        return self.message.sender_jid

    @property
    def language(self) -> str:
        return self.config.group_language.value


def parse_amounts(text: str) -> tuple[Optional[float], Optional[float]]:
    """(amount_brl, amount_usdt) stated in ``text``; a bare number counts as USDT."""
    amount_usdt = extract_usdt_amount(text)
    amount_brl = extract_brl_amount(text)
    if amount_usdt is None and amount_brl is None:
        amount_usdt = extract_bare_amount(text)
    return amount_brl, amount_usdt


class MessageDispatcher:
    def __init__(
        self,
        deals: DealFlowService,
        pricer: QuotePricer,
        spreads: SpreadConfigService,
        quotes: ActiveQuoteBridge,
        notifier: Notifier,
        operators: Optional[OperatorDirectory] = None,
    ):
        self.deals = deals
        self.pricer = pricer
        self.spreads = spreads
        self.quotes = quotes
        self.notifier = notifier
        self.operators = operators or spreads
        self._background: set[asyncio.Task] = set()
        self._handlers = {
            MessageIntent.volume_inquiry: self._volume_inquiry,
            MessageIntent.price_lock: self._price_lock,
            MessageIntent.confirmation: self._confirmation,
            MessageIntent.cancellation: self._cancellation,
            MessageIntent.rejection: self._rejection,
            MessageIntent.volume_input: self._volume_input,
            MessageIntent.direct_amount: self._direct_amount,
            MessageIntent.unrecognized: self._unrecognized,
        }

    async def dispatch(self, intent: MessageIntent, message: InboundMessage) -> DispatchResult:
        intent = MessageIntent(intent)
        loaded = await self.spreads.get_config(message.group_jid)
        if not loaded.ok:
            turn = _Turn(message, SpreadConfig(group_jid=message.group_jid))
            return await self._from_error(turn, loaded)
        turn = _Turn(message, loaded.value)

        active = await self.deals.find_active_deal(turn.group_jid, turn.client_jid)
        if not active.ok:
            return await self._from_error(turn, active)

        result = await self._handlers[intent](turn, active.value)
        logger.info(
            "message_dispatched",
            extra={
                "group_jid": turn.group_jid,
                "client_jid": turn.client_jid,
                "intent": intent.value,
                "action": result.action.value,
                "deal_id": result.deal_id,
            },
        )
        return result

    async def drain(self) -> None:
        """Wait for pending background archival (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -----------------------------
    # Intents
    # -----------------------------

    async def _volume_inquiry(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is not None:
            return await self._remind(turn, deal)

        text = turn.message.text
        amount_usdt = extract_usdt_amount(text)
        amount_brl = extract_brl_amount(text)
        if amount_usdt is None and amount_brl is None:
            bare = extract_bare_amount(text)
            if bare is not None:
                return await self._calculator(turn, amount_usdt=bare)
        return await self._open_quote(turn, amount_brl=amount_brl, amount_usdt=amount_usdt)

    async def _price_lock(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        amount_brl, amount_usdt = parse_amounts(turn.message.text)

        if deal is not None:
            if deal.state != DealState.quoted:
                return await self._remind(turn, deal)
            return await self._lock_quoted(turn, deal, amount_brl, amount_usdt)

        quote = self.quotes.get_usable(turn.group_jid)
        if quote is not None:
            if amount_usdt is None and amount_brl is None and quote.pre_stated_volume:
                amount_usdt = quote.pre_stated_volume
            if amount_usdt is not None or amount_brl is not None:
                return await self._open_locked(turn, quote, amount_brl, amount_usdt)
            created = await self._create_from_quote(turn, quote)
            if not created.ok:
                return await self._from_error(turn, created)
            return await self._lock_quoted(turn, created.value, None, None)

        if amount_usdt is not None or amount_brl is not None:
            return await self._calculator(turn, amount_brl=amount_brl, amount_usdt=amount_usdt)

        reply = await self._reply(turn, messages.text("no_quote", turn.language))
        return DispatchResult(DispatchAction.clarification, reply=reply)

    async def _confirmation(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is None:
            reply = await self._reply(turn, messages.text("no_quote", turn.language))
            return DispatchResult(DispatchAction.clarification, reply=reply)
        if deal.state == DealState.quoted:
            reply = await self._reply(turn, messages.text("lock_first", turn.language))
            return DispatchResult(DispatchAction.reminded, deal, reply)
        if deal.state == DealState.locked:
            if deal.amount_usdt is not None or deal.amount_brl is not None:
                return await self._complete(turn, deal)
            return await self._await_amount(turn, deal)
        return await self._remind(turn, deal)

    async def _cancellation(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is None:
            if self.quotes.clear(turn.group_jid):
                reply = await self._reply(turn, messages.text("cancelled", turn.language))
                return DispatchResult(DispatchAction.cancelled, reply=reply)
            return DispatchResult(DispatchAction.ignored)
        if deal.state == DealState.computing:
            reply = await self._reply(turn, messages.text("cannot_cancel", turn.language))
            return DispatchResult(DispatchAction.reminded, deal, reply)

        cancelled = await self.deals.cancel_deal(
            deal.id, turn.group_jid, CompletionReason.cancelled_by_client.value
        )
        if not cancelled.ok:
            return await self._from_error(turn, cancelled, deal)
        self.quotes.clear(turn.group_jid)
        reply = await self._reply(turn, messages.text("cancelled", turn.language))
        self._archive_later(cancelled.value)
        return DispatchResult(DispatchAction.cancelled, cancelled.value, reply)

    async def _rejection(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is None:
            if self.quotes.clear(turn.group_jid):
                return await self._withdraw(turn)
            return DispatchResult(DispatchAction.ignored)
        if deal.state != DealState.quoted:
            # Past the quote stage a "no" is a cancellation.
            return await self._cancellation(turn, deal)

        rejected = await self.deals.reject_deal(deal.id, turn.group_jid)
        if not rejected.ok:
            return await self._from_error(turn, rejected, deal)
        self.quotes.clear(turn.group_jid)
        self._archive_later(rejected.value)
        withdrawn = await self._withdraw(turn)
        return DispatchResult(DispatchAction.rejected, rejected.value, withdrawn.reply)

    async def _volume_input(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is None:
            return await self._direct_amount(turn, None)
        if deal.state not in (DealState.locked, DealState.awaiting_amount):
            return await self._remind(turn, deal)

        amount_brl, amount_usdt = parse_amounts(turn.message.text)
        if amount_brl is None and amount_usdt is None:
            reply = await self._reply(turn, messages.text("amount_parse_error", turn.language))
            return DispatchResult(DispatchAction.clarification, deal, reply)
        return await self._complete(turn, deal, amount_brl=amount_brl, amount_usdt=amount_usdt)

    async def _direct_amount(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is not None:
            return await self._volume_input(turn, deal)

        amount_brl, amount_usdt = parse_amounts(turn.message.text)
        if amount_brl is None and amount_usdt is None:
            reply = await self._reply(turn, messages.text("amount_parse_error", turn.language))
            return DispatchResult(DispatchAction.clarification, reply=reply)

        quote = self.quotes.get_usable(turn.group_jid)
        if quote is None:
            return await self._calculator(turn, amount_brl=amount_brl, amount_usdt=amount_usdt)

        computed = compute_deal(quote.quoted_price, amount_brl, amount_usdt, turn.language)
        if not computed.ok:
            return await self._from_error(turn, computed)
        self.quotes.set_pre_stated_volume(turn.group_jid, computed.value.amount_usdt)
        reply = await self._reply(
            turn, messages.text("amount_preview", turn.language, display=computed.value.display)
        )
        return DispatchResult(DispatchAction.previewed, reply=reply)

    async def _unrecognized(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        if deal is not None:
            if deal.state == DealState.awaiting_amount:
                reply = await self._reply(turn, messages.amount_prompt(deal, turn.language))
                return DispatchResult(DispatchAction.reminded, deal, reply)
            if deal.state in (DealState.quoted, DealState.locked):
                return await self._tag_operator(turn, deal)
            return DispatchResult(DispatchAction.ignored, deal)
        if self.quotes.get(turn.group_jid) is not None:
            return await self._tag_operator(turn, None)
        return DispatchResult(DispatchAction.ignored)

    # -----------------------------
    # Deal entry points
    # -----------------------------

    def _metadata(self, turn: _Turn, flow: str, **extra: Any) -> dict[str, Any]:
        meta = {"original_message": turn.message.text, "flow": flow}
        if turn.message.sender_name:
            meta["sender_name"] = turn.message.sender_name
        meta.update({k: v for k, v in extra.items() if v is not None})
        return meta

    async def _calculator(
        self,
        turn: _Turn,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
    ) -> DispatchResult:
        """Client typed an amount with nothing open: do the math and lock straight away."""
        quote = self.quotes.get_usable(turn.group_jid)
        if quote is not None:
            return await self._open_locked(turn, quote, amount_brl, amount_usdt)

        priced = await self.pricer.price(turn.group_jid, now=self.deals.now())
        if not priced.ok:
            return await self._from_error(turn, priced)
        context = priced.value

        computed = compute_deal(context.quoted_rate, amount_brl, amount_usdt, turn.language)
        if not computed.ok:
            return await self._from_error(turn, computed)

        created = await self.deals.create_deal(
            group_jid=turn.group_jid,
            client_jid=turn.client_jid,
            side=context.side,
            quoted_rate=context.quoted_rate,
            base_rate=context.base_rate,
            ttl_seconds=turn.config.quote_ttl_seconds,
            amount_brl=computed.value.amount_brl,
            amount_usdt=computed.value.amount_usdt,
            provenance=context.rule_provenance,
            metadata=self._metadata(turn, "calculator"),
            locked=True,
        )
        if not created.ok:
            return await self._from_error(turn, created)
        return await self._after_lock(turn, created.value)

    async def _open_quote(
        self,
        turn: _Turn,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
    ) -> DispatchResult:
        priced = await self._price_for_quote(turn)
        if not priced.ok:
            return await self._from_error(turn, priced)
        context = priced.value

        if amount_brl is not None or amount_usdt is not None:
            computed = compute_deal(context.quoted_rate, amount_brl, amount_usdt, turn.language)
            if not computed.ok:
                return await self._from_error(turn, computed)
            amount_brl, amount_usdt = computed.value.amount_brl, computed.value.amount_usdt

        created = await self.deals.create_deal(
            group_jid=turn.group_jid,
            client_jid=turn.client_jid,
            side=context.side,
            quoted_rate=context.quoted_rate,
            base_rate=context.base_rate,
            ttl_seconds=turn.config.quote_ttl_seconds,
            amount_brl=amount_brl,
            amount_usdt=amount_usdt,
            provenance=context.rule_provenance,
            metadata=self._metadata(turn, "quote"),
        )
        if not created.ok:
            return await self._from_error(turn, created)
        deal = created.value
        reply = await self._reply(turn, messages.quote_message(deal, self.deals.now(), turn.language))
        return DispatchResult(DispatchAction.quoted, deal, reply)

    async def _price_for_quote(self, turn: _Turn):
        """Fresh price for a new quote; a pending bridge quote is repriced in place."""
        repricing = self.quotes.try_lock_for_reprice(turn.group_jid)
        priced = None
        try:
            priced = await self.pricer.price(turn.group_jid, now=self.deals.now())
        finally:
            context = priced.value if priced is not None and priced.ok else None
            if repricing:
                self.quotes.unlock_after_reprice(
                    turn.group_jid,
                    new_price=context.quoted_rate if context else None,
                    base_price=context.base_rate if context else None,
                )
        if priced.ok and not repricing:
            self.quotes.create(
                turn.group_jid,
                quoted_price=priced.value.quoted_rate,
                base_price=priced.value.base_rate,
                side=priced.value.side,
                price_source=priced.value.pricing_source,
            )
        return priced

    def _quote_provenance(self, turn: _Turn, quote: ActiveQuote) -> dict[str, Any]:
        return {
            "pricing_source": quote.price_source,
            "spread_mode": turn.config.spread_mode,
            "sell_spread": turn.config.sell_spread,
            "buy_spread": turn.config.buy_spread,
        }

    async def _create_from_quote(self, turn: _Turn, quote: ActiveQuote):
        return await self.deals.create_deal(
            group_jid=turn.group_jid,
            client_jid=turn.client_jid,
            side=quote.side,
            quoted_rate=quote.quoted_price,
            base_rate=quote.base_price,
            ttl_seconds=turn.config.quote_ttl_seconds,
            provenance=self._quote_provenance(turn, quote),
            metadata=self._metadata(turn, "quote_bridge", quote_id=quote.id),
        )

    async def _open_locked(
        self,
        turn: _Turn,
        quote: ActiveQuote,
        amount_brl: Optional[float],
        amount_usdt: Optional[float],
    ) -> DispatchResult:
        computed = compute_deal(quote.quoted_price, amount_brl, amount_usdt, turn.language)
        if not computed.ok:
            return await self._from_error(turn, computed)
        created = await self.deals.create_deal(
            group_jid=turn.group_jid,
            client_jid=turn.client_jid,
            side=quote.side,
            quoted_rate=quote.quoted_price,
            base_rate=quote.base_price,
            ttl_seconds=turn.config.quote_ttl_seconds,
            amount_brl=computed.value.amount_brl,
            amount_usdt=computed.value.amount_usdt,
            provenance=self._quote_provenance(turn, quote),
            metadata=self._metadata(turn, "quote_bridge", quote_id=quote.id),
            locked=True,
        )
        if not created.ok:
            return await self._from_error(turn, created)
        self.quotes.consume(turn.group_jid)
        return await self._after_lock(turn, created.value)

    async def _lock_quoted(
        self,
        turn: _Turn,
        deal: ActiveDeal,
        amount_brl: Optional[float],
        amount_usdt: Optional[float],
    ) -> DispatchResult:
        if amount_brl is not None or amount_usdt is not None:
            computed = compute_deal(deal.quoted_rate, amount_brl, amount_usdt, turn.language)
            if not computed.ok:
                return await self._from_error(turn, computed, deal)
            amount_brl, amount_usdt = computed.value.amount_brl, computed.value.amount_usdt

        locked = await self.deals.lock_deal(
            deal.id, turn.group_jid, deal.quoted_rate, amount_brl=amount_brl, amount_usdt=amount_usdt
        )
        if not locked.ok:
            return await self._from_error(turn, locked, deal)
        self.quotes.consume(turn.group_jid)
        return await self._after_lock(turn, locked.value)

    async def _after_lock(self, turn: _Turn, deal: ActiveDeal) -> DispatchResult:
        has_amount = deal.amount_usdt is not None or deal.amount_brl is not None
        if turn.config.deal_flow_mode == DealFlowMode.simple:
            if has_amount:
                return await self._complete(turn, deal)
            return await self._await_amount(turn, deal)
        reply = await self._reply(turn, messages.lock_message(deal, self.deals.now(), turn.language))
        return DispatchResult(DispatchAction.locked, deal, reply)

    async def _await_amount(self, turn: _Turn, deal: ActiveDeal) -> DispatchResult:
        waiting = await self.deals.start_awaiting_amount(
            deal.id, turn.group_jid, amount_timeout_seconds=turn.config.amount_timeout_seconds
        )
        if not waiting.ok:
            return await self._from_error(turn, waiting, deal)
        reply = await self._reply(turn, messages.amount_prompt(waiting.value, turn.language))
        return DispatchResult(DispatchAction.awaiting_amount, waiting.value, reply)

    async def _complete(
        self,
        turn: _Turn,
        deal: ActiveDeal,
        amount_brl: Optional[float] = None,
        amount_usdt: Optional[float] = None,
    ) -> DispatchResult:
        """computing -> completed, reply, clear quote, archive in the background."""
        if amount_brl is None and amount_usdt is None:
            amount_brl, amount_usdt = deal.amount_brl, deal.amount_usdt
        computed = compute_deal(deal.effective_rate, amount_brl, amount_usdt, turn.language)
        if not computed.ok:
            return await self._from_error(turn, computed, deal)
        pair = computed.value

        computing = await self.deals.start_computation(
            deal.id, turn.group_jid, amount_brl=pair.amount_brl, amount_usdt=pair.amount_usdt
        )
        if not computing.ok:
            return await self._from_error(turn, computing, deal)

        done = await self.deals.complete_deal(deal.id, turn.group_jid, pair.amount_brl, pair.amount_usdt)
        if not done.ok:
            logger.error(
                "deal_completion_failed",
                extra={"deal_id": deal.id, "group_jid": turn.group_jid, "error": done.error.message},
            )
            rollback = await self.deals.cancel_deal(deal.id, turn.group_jid, "completion_failed")
            if rollback.ok:
                self._archive_later(rollback.value)
            return await self._from_error(turn, done)
        completed = done.value

        operator = await self.operators.resolve_operator_for_group(turn.group_jid)
        reply = await self._reply(
            turn,
            messages.completion_message(completed, pair.display, operator, turn.language),
            extra_mentions=[operator] if operator else None,
        )
        self.quotes.clear(turn.group_jid)
        self._archive_later(completed)
        return DispatchResult(DispatchAction.completed, completed, reply)

    # -----------------------------
    # Replies
    # -----------------------------

    async def _reply(
        self, turn: _Turn, text: str, extra_mentions: Optional[list[str]] = None
    ) -> str:
        mentions = [turn.client_jid] + list(extra_mentions or [])
        try:
            await self.notifier.send_to_group(turn.group_jid, text, mentions=mentions)
        except NotificationError as exc:
            logger.warning(
                "dispatch_reply_failed",
                extra={"group_jid": turn.group_jid, "client_jid": turn.client_jid, "error": str(exc)},
            )
        return text

    async def _remind(self, turn: _Turn, deal: ActiveDeal) -> DispatchResult:
        reply = await self._reply(turn, messages.reminder_message(deal, turn.language))
        return DispatchResult(DispatchAction.reminded, deal, reply)

    async def _withdraw(self, turn: _Turn) -> DispatchResult:
        operator = await self.operators.resolve_operator_for_group(turn.group_jid)
        text = messages.offer_withdrawn(operator, turn.language)
        try:
            await self.notifier.send_to_group(
                turn.group_jid, text, mentions=[operator] if operator else None
            )
        except NotificationError as exc:
            logger.warning("dispatch_reply_failed", extra={"group_jid": turn.group_jid, "error": str(exc)})
        return DispatchResult(DispatchAction.withdrawn, reply=text)

    async def _tag_operator(self, turn: _Turn, deal: Optional[ActiveDeal]) -> DispatchResult:
        operator = await self.operators.resolve_operator_for_group(turn.group_jid)
        if not operator:
            return DispatchResult(DispatchAction.ignored, deal)
        text = messages.text("operator_tag", turn.language, operator=messages.mention(operator))
        try:
            await self.notifier.send_to_group(turn.group_jid, text, mentions=[operator])
        except NotificationError as exc:
            logger.warning("dispatch_reply_failed", extra={"group_jid": turn.group_jid, "error": str(exc)})
        return DispatchResult(DispatchAction.operator_tagged, deal, text)

    async def _from_error(
        self, turn: _Turn, failed: Err, deal: Optional[ActiveDeal] = None
    ) -> DispatchResult:
        error = failed.error
        logger.info(
            "dispatch_error",
            extra={"group_jid": turn.group_jid, "client_jid": turn.client_jid, "code": error.code},
        )
        if isinstance(error, UpstreamFailure):
            reply = await self._reply(turn, messages.text("retry", turn.language))
            return DispatchResult(DispatchAction.retry, deal, reply)
        if isinstance(error, Expired):
            self.quotes.clear(turn.group_jid)
            if deal is not None:
                # Expired on access; archive now instead of waiting for the sweep.
                reloaded = await self.deals.get_deal(deal.id, turn.group_jid)
                if reloaded.ok and reloaded.value.is_terminal:
                    deal = reloaded.value
                    self._archive_later(deal)
            reply = await self._reply(turn, messages.text("expired", turn.language))
            return DispatchResult(DispatchAction.expired, deal, reply)
        if isinstance(error, ValidationError):
            reply = await self._reply(turn, messages.text("amount_parse_error", turn.language))
            return DispatchResult(DispatchAction.clarification, deal, reply)
        if isinstance(error, (InvalidTransition, Conflict)):
            current = await self.deals.find_active_deal(turn.group_jid, turn.client_jid)
            if current.ok and current.value is not None:
                return await self._remind(turn, current.value)
        return DispatchResult(DispatchAction.ignored, deal)

    # -----------------------------
    # Background archival
    # -----------------------------

    def _archive_later(self, deal: ActiveDeal) -> None:
        task = asyncio.get_running_loop().create_task(self._archive(deal.id, deal.group_jid))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _archive(self, deal_id: str, group_jid: str) -> None:
        try:
            archived = await self.deals.archive_deal(deal_id, group_jid)
            if not archived.ok:
                logger.warning(
                    "deal_archive_skipped",
                    extra={"deal_id": deal_id, "group_jid": group_jid, "error": archived.error.message},
                )
                return
            record = archived.value
            logger.info(
                "deal_completed_audit",
                extra={
                    "deal_id": deal_id,
                    "group_jid": group_jid,
                    "client_jid": record.client_jid,
                    "final_state": record.final_state.value,
                    "completion_reason": record.completion_reason,
                    "amount_brl": record.amount_brl,
                    "amount_usdt": record.amount_usdt,
                    "rate": record.locked_rate or record.quoted_rate,
                },
            )
        except Exception:
            logger.exception("deal_archive_failed", extra={"deal_id": deal_id, "group_jid": group_jid})
