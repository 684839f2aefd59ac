import pytest

from otc_desk.models import DealState, TradeSide
from otc_desk.services.dispatcher import (
    DispatchAction,
    InboundMessage,
    MessageIntent,
    parse_amounts,
)
from otc_desk.services.price_feed import PriceFeedError

GROUP = "120363000000000007@g.us"
CLIENT = "5511999990000@s.whatsapp.net"
OTHER_CLIENT = "5511888880000@s.whatsapp.net"
OPERATOR = "5511900000000@s.whatsapp.net"


async def _say(rt, intent, text, sender=CLIENT):
    return await rt.dispatcher.dispatch(intent, InboundMessage(GROUP, sender, text))


async def _active(rt, client=CLIENT):
    return (await rt.deals.find_active_deal(GROUP, client)).value


@pytest.mark.parametrize(
    "text, expected",
    [
        ("5000", (None, 5000.0)),
        ("500 usdt", (None, 500.0)),
        ("R$ 10.000", (10000.0, None)),
        ("fechado", (None, None)),
    ],
)
def test_parse_amounts(text, expected):
    assert parse_amounts(text) == expected


async def test_bare_number_is_a_locked_calculator_deal(rt, notifier):
    result = await _say(rt, MessageIntent.volume_inquiry, "1000")

    assert result.action == DispatchAction.locked
    assert result.deal.state == DealState.locked
    assert result.deal.amount_usdt == 1000
    assert result.deal.amount_brl == pytest.approx(5000)
    assert result.deal.meta["flow"] == "calculator"
    assert "Taxa Travada" in result.reply
    assert notifier.sent[0].mentions == [CLIENT]


async def test_inquiry_with_brl_amount_opens_a_quote(rt, notifier):
    await rt.spreads.upsert_config(GROUP, {"sell_spread": 100})

    result = await _say(rt, MessageIntent.volume_inquiry, "cotação para R$ 10.000")

    assert result.action == DispatchAction.quoted
    deal = result.deal
    assert deal.state == DealState.quoted
    assert deal.quoted_rate == pytest.approx(5.05)
    assert deal.base_rate == 5.0
    assert deal.sell_spread == 100
    assert deal.amount_brl == 10000
    assert "Cotação" in result.reply
    assert "Válido por 3 min." in result.reply
    assert rt.quotes.get_usable(GROUP).quoted_price == pytest.approx(5.05)


async def test_inquiry_with_open_deal_only_reminds(rt, notifier):
    first = await _say(rt, MessageIntent.volume_inquiry, "cotação")
    again = await _say(rt, MessageIntent.volume_inquiry, "e agora?")

    assert again.action == DispatchAction.reminded
    assert again.deal.id == first.deal.id
    assert again.deal.state == DealState.quoted
    assert "já tem uma cotação aberta" in again.reply
    assert len((await rt.deals.list_active_deals(GROUP)).value) == 1


async def test_new_inquiry_reprices_the_group_quote(rt):
    rt.quotes.create(GROUP, 4.0, 4.0, TradeSide.client_buys_usdt)

    await _say(rt, MessageIntent.volume_inquiry, "cotação")

    quote = rt.quotes.get_usable(GROUP)
    assert quote.quoted_price == 5.0
    assert quote.reprice_count == 1


async def test_classic_flow_quote_lock_confirm_amount(rt, notifier):
    quoted = await _say(rt, MessageIntent.volume_inquiry, "cotação")
    locked = await _say(rt, MessageIntent.price_lock, "trava")
    assert locked.action == DispatchAction.locked
    assert locked.deal.locked_rate == quoted.deal.quoted_rate

    waiting = await _say(rt, MessageIntent.confirmation, "fechado")
    assert waiting.action == DispatchAction.awaiting_amount
    assert "Quantos USDTs?" in waiting.reply

    done = await _say(rt, MessageIntent.volume_input, "5000")
    assert done.action == DispatchAction.completed
    assert done.deal.state == DealState.completed
    assert done.deal.amount_usdt == 5000
    assert done.deal.amount_brl == pytest.approx(25000)
    assert "Operação Confirmada" in done.reply
    assert rt.quotes.get(GROUP) is None

    await rt.dispatcher.drain()
    history = (await rt.deals.get_history(GROUP)).value
    assert [(h.final_state, h.completion_reason) for h in history] == [(DealState.completed, "confirmed")]
    assert await _active(rt) is None


async def test_confirming_a_quote_asks_to_lock_first(rt):
    await _say(rt, MessageIntent.volume_inquiry, "cotação")
    result = await _say(rt, MessageIntent.confirmation, "fechado")
    assert result.action == DispatchAction.reminded
    assert "Primeiro trave a taxa" in result.reply
    assert (await _active(rt)).state == DealState.quoted


async def test_confirmation_without_deal_asks_for_amount(rt):
    result = await _say(rt, MessageIntent.confirmation, "fechado")
    assert result.action == DispatchAction.clarification
    assert "Sem cotação ativa" in result.reply


async def test_lock_against_group_quote_with_amount(rt):
    rt.quotes.create(GROUP, 5.1, 5.0, TradeSide.client_buys_usdt)

    result = await _say(rt, MessageIntent.price_lock, "trava 1000 usdt", sender=OTHER_CLIENT)

    assert result.action == DispatchAction.locked
    assert result.deal.client_jid == OTHER_CLIENT
    assert result.deal.locked_rate == 5.1
    assert result.deal.amount_brl == pytest.approx(5100)
    assert rt.quotes.get_usable(GROUP) is None


async def test_pre_stated_volume_is_used_by_the_lock(rt):
    rt.quotes.create(GROUP, 5.2, 5.1, TradeSide.client_buys_usdt)

    preview = await _say(rt, MessageIntent.direct_amount, "2000")
    assert preview.action == DispatchAction.previewed
    assert preview.deal is None
    assert "2.000,00 USDT × 5,2000 = R$ 10.400,00" in preview.reply

    locked = await _say(rt, MessageIntent.price_lock, "trava")
    assert locked.action == DispatchAction.locked
    assert locked.deal.amount_usdt == 2000


async def test_lock_with_nothing_to_lock(rt):
    result = await _say(rt, MessageIntent.price_lock, "trava")
    assert result.action == DispatchAction.clarification
    assert await _active(rt) is None


async def test_simple_mode_completes_and_tags_operator(rt, notifier):
    await rt.spreads.upsert_config(GROUP, {"deal_flow_mode": "simple", "operator_jid": OPERATOR})

    result = await _say(rt, MessageIntent.volume_inquiry, "1000")

    assert result.action == DispatchAction.completed
    assert result.reply.endswith("@5511900000000")
    assert notifier.sent[-1].mentions == [CLIENT, OPERATOR]
    await rt.dispatcher.drain()
    history = (await rt.deals.get_history(GROUP)).value
    assert len(history) == 1
    assert history[0].amount_usdt == 1000


async def test_simple_mode_lock_without_amount_waits_for_it(rt):
    await rt.spreads.upsert_config(GROUP, {"deal_flow_mode": "simple"})
    await _say(rt, MessageIntent.volume_inquiry, "cotação")

    result = await _say(rt, MessageIntent.price_lock, "trava")

    assert result.action == DispatchAction.awaiting_amount
    assert result.deal.state == DealState.awaiting_amount


async def test_unparseable_amount_keeps_the_deal_waiting(rt):
    await _say(rt, MessageIntent.volume_inquiry, "cotação")
    await _say(rt, MessageIntent.price_lock, "trava")
    await _say(rt, MessageIntent.confirmation, "fechado")

    result = await _say(rt, MessageIntent.volume_input, "uns trocados")

    assert result.action == DispatchAction.clarification
    assert "Não entendi o valor" in result.reply
    assert (await _active(rt)).state == DealState.awaiting_amount


async def test_unrecognized_message_routing(rt, notifier):
    assert (await _say(rt, MessageIntent.unrecognized, "bom dia")).action == DispatchAction.ignored

    await _say(rt, MessageIntent.volume_inquiry, "cotação")
    # no operator configured
    assert (await _say(rt, MessageIntent.unrecognized, "hmm")).action == DispatchAction.ignored

    await rt.spreads.upsert_config(GROUP, {"operator_jid": OPERATOR})
    tagged = await _say(rt, MessageIntent.unrecognized, "hmm")
    assert tagged.action == DispatchAction.operator_tagged
    assert tagged.reply == "@5511900000000"
    assert notifier.sent[-1].mentions == [OPERATOR]


async def test_unrecognized_while_awaiting_amount_reprompts(rt):
    await _say(rt, MessageIntent.volume_inquiry, "cotação")
    await _say(rt, MessageIntent.price_lock, "trava")
    await _say(rt, MessageIntent.confirmation, "fechado")

    result = await _say(rt, MessageIntent.unrecognized, "??")
    assert result.action == DispatchAction.reminded
    assert "Quantos USDTs?" in result.reply


async def test_rejecting_a_quote_withdraws_the_offer(rt, notifier):
    await rt.spreads.upsert_config(GROUP, {"operator_jid": OPERATOR})
    await _say(rt, MessageIntent.volume_inquiry, "cotação")

    result = await _say(rt, MessageIntent.rejection, "não, obrigado")

    assert result.action == DispatchAction.rejected
    assert result.deal.state == DealState.rejected
    assert result.reply == "off @5511900000000"
    assert rt.quotes.get(GROUP) is None
    await rt.dispatcher.drain()
    history = (await rt.deals.get_history(GROUP)).value
    assert history[0].completion_reason == "rejected_by_client"


async def test_rejecting_a_bare_group_quote(rt):
    rt.quotes.create(GROUP, 5.2, 5.1, TradeSide.client_buys_usdt)
    result = await _say(rt, MessageIntent.rejection, "não")
    assert result.action == DispatchAction.withdrawn
    assert result.reply == "off"
    assert rt.quotes.get(GROUP) is None


async def test_cancel_locked_deal(rt):
    await _say(rt, MessageIntent.volume_inquiry, "1000")
    result = await _say(rt, MessageIntent.cancellation, "cancela")
    assert result.action == DispatchAction.cancelled
    assert result.deal.meta["completion_reason"] == "cancelled_by_client"
    assert "cancelada" in result.reply


async def test_cancel_while_computing_is_refused(rt):
    await _say(rt, MessageIntent.volume_inquiry, "1000")
    deal = await _active(rt)
    await rt.deals.start_computation(deal.id, GROUP)

    result = await _say(rt, MessageIntent.cancellation, "cancela")

    assert result.action == DispatchAction.reminded
    assert "não pode ser cancelada" in result.reply
    assert (await _active(rt)).state == DealState.computing


async def test_price_feed_outage_asks_to_retry(rt, price_feed):
    price_feed.error = PriceFeedError("binance down")

    result = await _say(rt, MessageIntent.volume_inquiry, "cotação")

    assert result.action == DispatchAction.retry
    assert "Tente novamente" in result.reply
    assert await _active(rt) is None


async def test_lock_after_ttl_reports_expiry(rt, clock):
    await _say(rt, MessageIntent.volume_inquiry, "cotação")
    clock.advance(minutes=4)

    result = await _say(rt, MessageIntent.price_lock, "trava")

    assert result.action == DispatchAction.expired
    assert "expirou" in result.reply
    assert await _active(rt) is None

    await rt.dispatcher.drain()
    assert (await rt.deals.get_deal(result.deal_id, GROUP)).error.code == "not_found"
    history = (await rt.deals.get_history(GROUP)).value
    assert [h.final_state for h in history] == [DealState.expired]
    assert history[0].id == result.deal_id


async def test_failed_reply_does_not_undo_the_transition(rt, notifier):
    notifier.failing_groups.add(GROUP)
    result = await _say(rt, MessageIntent.volume_inquiry, "cotação")
    assert result.action == DispatchAction.quoted
    assert notifier.sent == []
    assert (await _active(rt)).state == DealState.quoted


async def test_english_group_replies_in_english(rt):
    await rt.spreads.upsert_config(GROUP, {"group_language": "en"})
    result = await _say(rt, MessageIntent.confirmation, "done")
    assert "No active quote" in result.reply
