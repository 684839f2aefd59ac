import pytest

from otc_desk.models import DealFlowMode, SpreadMode, TradeSide
from otc_desk.services.spread_calculator import (
    MAX_SPREAD_ABS_BRL,
    MAX_SPREAD_BPS,
    SpreadConfig,
    apply_rule,
    calculate_both_quotes,
    calculate_quote,
    clamp_spread,
)

GROUP = "120363000000000002@g.us"


def _config(**overrides) -> SpreadConfig:
    return SpreadConfig(group_jid=GROUP, **overrides)


def test_bps_spreads_apply_per_side():
    config = _config(spread_mode=SpreadMode.bps, sell_spread=50, buy_spread=-30)
    assert calculate_quote(5.0, config, TradeSide.client_buys_usdt) == pytest.approx(5.025)
    assert calculate_quote(5.0, config, TradeSide.client_sells_usdt) == pytest.approx(4.985)


def test_abs_brl_spreads_add_to_base():
    config = _config(spread_mode=SpreadMode.abs_brl, sell_spread=0.05, buy_spread=-0.02)
    both = calculate_both_quotes(5.2, config)
    assert both.buy_rate == pytest.approx(5.25)
    assert both.sell_rate == pytest.approx(5.18)


def test_flat_mode_ignores_spread_values():
    config = _config(spread_mode=SpreadMode.flat, sell_spread=9999, buy_spread=-9999)
    both = calculate_both_quotes(5.2, config)
    assert both.buy_rate == 5.2
    assert both.sell_rate == 5.2


def test_positive_spreads_favour_the_desk():
    config = _config(sell_spread=25, buy_spread=25)
    assert calculate_quote(5.0, config, TradeSide.client_buys_usdt) > 5.0
    # A positive buy spread still raises the price; markdowns are negative by convention.
    assert calculate_quote(5.0, config, TradeSide.client_sells_usdt) > 5.0


def test_extreme_spreads_are_clamped():
    assert clamp_spread(800, SpreadMode.bps) == MAX_SPREAD_BPS
    assert clamp_spread(-800, SpreadMode.bps) == -MAX_SPREAD_BPS
    assert clamp_spread(3.5, SpreadMode.abs_brl) == MAX_SPREAD_ABS_BRL
    assert clamp_spread(120, SpreadMode.bps) == 120

    config = _config(spread_mode=SpreadMode.bps, sell_spread=10_000)
    assert calculate_quote(5.0, config, TradeSide.client_buys_usdt) == pytest.approx(5.25)


class _Rule:
    spread_mode = SpreadMode.abs_brl
    sell_spread = 0.03
    buy_spread = -0.01


def test_rule_overrides_spreads_but_not_flow_settings():
    config = _config(sell_spread=50, buy_spread=-30, deal_flow_mode=DealFlowMode.simple, operator_jid="op@s.whatsapp.net")
    merged = apply_rule(config, _Rule())
    assert merged.spread_mode == SpreadMode.abs_brl
    assert (merged.sell_spread, merged.buy_spread) == (0.03, -0.01)
    assert merged.deal_flow_mode == DealFlowMode.simple
    assert merged.operator_jid == "op@s.whatsapp.net"
    assert apply_rule(config, None) is config


async def test_missing_config_falls_back_to_defaults(rt):
    loaded = await rt.spreads.get_config(GROUP)
    assert loaded.ok
    config = loaded.value
    assert config.spread_mode == SpreadMode.bps
    assert config.sell_spread == 0.0
    assert config.default_side == TradeSide.client_buys_usdt
    assert config.deal_flow_mode == DealFlowMode.classic
    assert await rt.spreads.resolve_operator_for_group(GROUP) is None


async def test_upsert_persists_and_refreshes_cache(rt):
    await rt.spreads.get_config(GROUP)
    saved = await rt.spreads.upsert_config(
        GROUP,
        {"sell_spread": 40, "buy_spread": -20, "deal_flow_mode": "simple", "operator_jid": "op@s.whatsapp.net"},
    )
    assert saved.ok
    assert saved.value.deal_flow_mode == DealFlowMode.simple

    loaded = (await rt.spreads.get_config(GROUP)).value
    assert loaded.sell_spread == 40.0
    assert loaded.buy_spread == -20.0
    assert await rt.spreads.resolve_operator_for_group(GROUP) == "op@s.whatsapp.net"


@pytest.mark.parametrize(
    "changes, field",
    [
        ({"spread_mode": "percent"}, "spread_mode"),
        ({"sell_spread": "ten"}, "sell_spread"),
        ({"quote_ttl_seconds": 0}, "quote_ttl_seconds"),
        ({"favourite_colour": "blue"}, "favourite_colour"),
    ],
)
async def test_upsert_rejects_bad_fields(rt, changes, field):
    saved = await rt.spreads.upsert_config(GROUP, changes)
    assert not saved.ok
    assert saved.error.code == "validation_error"
    assert saved.error.field == field
