from otc_desk.core.result import Ok
from otc_desk.models import DealState, TradeSide

GROUP = "120363000000000004@g.us"
OTHER_GROUP = "120363000000000005@g.us"
CLIENT = "5511999990000@s.whatsapp.net"
OPERATOR = "5511900000000@s.whatsapp.net"


async def _seed_deal(rt, group=GROUP, client=CLIENT, ttl_seconds=60, locked=False):
    created = await rt.deals.create_deal(
        group_jid=group,
        client_jid=client,
        side=TradeSide.client_buys_usdt,
        quoted_rate=5.25,
        base_rate=5.2,
        ttl_seconds=ttl_seconds,
        locked=locked,
    )
    assert created.ok, created
    return created.value


async def _seed_awaiting(rt, timeout=60):
    deal = await _seed_deal(rt, ttl_seconds=30, locked=True)
    waiting = await rt.deals.start_awaiting_amount(deal.id, GROUP, amount_timeout_seconds=timeout)
    assert waiting.ok, waiting
    return waiting.value


async def test_nothing_to_do_before_ttl(rt, clock, notifier):
    await _seed_deal(rt)
    clock.advance(seconds=59)
    report = await rt.sweeper.run_once()
    assert report.touched == 0
    assert notifier.sent == []


async def test_expired_quote_is_withdrawn_with_operator_tag(rt, clock, notifier):
    await rt.spreads.upsert_config(GROUP, {"operator_jid": OPERATOR})
    deal = await _seed_deal(rt)
    rt.quotes.create(GROUP, 5.25, 5.2, TradeSide.client_buys_usdt)

    clock.advance(seconds=61)
    report = await rt.sweeper.run_once()

    assert report.expired == 1
    assert report.withdrawn_notices == 1
    assert report.archived == 1
    assert notifier.texts(GROUP) == ["off @5511900000000"]
    assert notifier.sent[0].mentions == [OPERATOR]
    assert rt.quotes.get(GROUP) is None
    history = (await rt.deals.get_history(GROUP)).value
    assert [(h.id, h.final_state) for h in history] == [(deal.id, DealState.expired)]


async def test_expired_lock_is_archived_without_notice(rt, clock, notifier):
    await _seed_deal(rt, locked=True)
    clock.advance(seconds=61)
    report = await rt.sweeper.run_once()
    assert report.expired == 1
    assert report.withdrawn_notices == 0
    assert report.archived == 1
    assert notifier.sent == []


async def test_second_tick_does_not_repeat_work(rt, clock, notifier):
    await _seed_deal(rt)
    clock.advance(seconds=61)
    await rt.sweeper.run_once()
    again = await rt.sweeper.run_once()
    assert again.touched == 0
    assert len(notifier.sent) == 1


async def test_awaiting_amount_is_reminded_once_then_expired(rt, clock, notifier):
    deal = await _seed_awaiting(rt, timeout=60)

    clock.advance(seconds=59)
    assert (await rt.sweeper.run_once()).reprompted == 0

    clock.advance(seconds=2)
    first = await rt.sweeper.run_once()
    assert first.reprompted == 1
    assert "Ainda aguardando o valor" in notifier.texts(GROUP)[0]
    assert notifier.sent[0].mentions == [CLIENT]

    clock.advance(seconds=30)
    assert (await rt.sweeper.run_once()).reprompted == 0
    assert len(notifier.sent) == 1

    clock.advance(seconds=30)
    final = await rt.sweeper.run_once()
    assert final.amount_expired == 1
    assert final.archived == 1
    assert "expirou" in notifier.texts(GROUP)[-1]
    assert (await rt.deals.get_deal(deal.id, GROUP)).error.code == "not_found"


async def test_reminder_uses_group_language(rt, clock, notifier):
    await rt.spreads.upsert_config(GROUP, {"group_language": "en", "amount_timeout_seconds": 30})
    await _seed_awaiting(rt, timeout=30)
    clock.advance(seconds=31)
    await rt.sweeper.run_once()
    assert notifier.texts(GROUP) == ["💰 Still waiting for the amount. How much USDT at 5.2500?"]


async def test_one_failing_group_does_not_stop_the_tick(rt, clock, notifier):
    failing = await _seed_deal(rt, group=GROUP)
    await _seed_deal(rt, group=OTHER_GROUP)
    rt.quotes.create(GROUP, 5.25, 5.2, TradeSide.client_buys_usdt)
    notifier.failing_groups.add(GROUP)

    clock.advance(seconds=61)
    report = await rt.sweeper.run_once()

    assert report.expired == 2
    assert report.failures == 1
    assert report.archived == 2
    assert notifier.texts(OTHER_GROUP) == ["off"]

    # The failed notice still leaves nothing behind for the group.
    assert (await rt.deals.get_deal(failing.id, GROUP)).error.code == "not_found"
    assert rt.quotes.get(GROUP) is None
    history = (await rt.deals.get_history(GROUP)).value
    assert [(h.id, h.final_state) for h in history] == [(failing.id, DealState.expired)]


async def test_failed_expiry_notice_still_archives_awaiting_deal(rt, clock, notifier):
    deal = await _seed_awaiting(rt, timeout=60)
    clock.advance(seconds=61)
    await rt.sweeper.run_once()

    notifier.failing_groups.add(GROUP)
    clock.advance(seconds=60)
    report = await rt.sweeper.run_once()

    assert report.amount_expired == 1
    assert report.failures == 1
    assert report.archived == 1
    assert (await rt.deals.get_deal(deal.id, GROUP)).error.code == "not_found"


async def test_deal_expired_on_access_is_archived_by_the_next_tick(rt, clock):
    deal = await _seed_deal(rt, ttl_seconds=60)
    clock.advance(seconds=61)
    assert (await rt.deals.lock_deal(deal.id, GROUP, locked_rate=5.25)).error.code == "expired"
    assert (await rt.deals.get_deal(deal.id, GROUP)).value.state == DealState.expired

    report = await rt.sweeper.run_once()

    assert report.expired == 0
    assert report.recovered == 1
    assert (await rt.deals.get_deal(deal.id, GROUP)).error.code == "not_found"
    history = (await rt.deals.get_history(GROUP)).value
    assert [(h.id, h.final_state) for h in history] == [(deal.id, DealState.expired)]
    assert (await rt.sweeper.run_once()).touched == 0


async def test_off_notice_follows_the_state_actually_expired(rt, clock, notifier, monkeypatch):
    deal = await _seed_deal(rt, ttl_seconds=60)
    stale_snapshot = [deal]
    assert (await rt.deals.lock_deal(deal.id, GROUP, locked_rate=5.25)).ok

    async def stale_find_expiring(before=None):
        return Ok(stale_snapshot)

    monkeypatch.setattr(rt.deals, "find_expiring", stale_find_expiring)
    clock.advance(seconds=61)
    report = await rt.sweeper.run_once()

    assert report.expired == 1
    assert report.withdrawn_notices == 0
    assert notifier.sent == []


async def test_timer_start_and_stop_are_idempotent(rt):
    assert rt.sweeper.start() is True
    assert rt.sweeper.start() is False
    assert rt.sweeper.is_running
    await rt.sweeper.stop()
    assert not rt.sweeper.is_running
    await rt.sweeper.stop()
