import math

import pytest

from otc_desk.services.deal_computation import (
    brl_to_usdt,
    compute_deal,
    extract_bare_amount,
    extract_brl_amount,
    extract_usdt_amount,
    format_brl,
    format_rate,
    format_usdt,
    has_currency_marker,
    parse_localized_number,
    usdt_to_brl,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("10.000", 10000.0),
        ("1.234,56", 1234.56),
        ("1,5", 1.5),
        ("1,500", 1500.0),
        ("1.000.000", 1000000.0),
        ("5.5", 5.5),
        ("10k", 10000.0),
        ("5,5k", 5500.0),
        ("2 mil", 2000.0),
        ("R$ 2.500", 2500.0),
        ("US$ 300", 300.0),
        ("BRL 50", 50.0),
    ],
)
def test_parse_localized_number(raw, expected):
    assert parse_localized_number(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", [None, "", "abc", "0", "-5", "R$", "1..2,,3"])
def test_parse_localized_number_rejects_garbage(raw):
    assert parse_localized_number(raw) is None


def test_extract_brl_amount():
    assert extract_brl_amount("quero R$ 10.000 hoje") == 10000.0
    assert extract_brl_amount("10 mil reais") == 10000.0
    assert extract_brl_amount("500 brl") == 500.0
    assert extract_brl_amount("500 usdt") is None


def test_extract_usdt_amount():
    assert extract_usdt_amount("500 usdt") == 500.0
    assert extract_usdt_amount("2k u") == 2000.0
    assert extract_usdt_amount("US$ 1.200") == 1200.0
    assert extract_usdt_amount("R$ 1.200") is None


def test_bare_amount_only_without_currency_marker():
    assert extract_bare_amount("5000") == 5000.0
    assert extract_bare_amount("10k por favor") == 10000.0
    assert extract_bare_amount("500 usdt") is None
    assert extract_bare_amount("R$ 500") is None
    assert has_currency_marker("2k u")
    assert not has_currency_marker("5000")


def test_conversions():
    assert brl_to_usdt(5800, 5.8).value == pytest.approx(1000)
    assert usdt_to_brl(1000, 5.8).value == pytest.approx(5800)


@pytest.mark.parametrize("rate", [0, -1, math.inf, math.nan])
def test_conversion_rejects_bad_rate(rate):
    result = brl_to_usdt(100, rate)
    assert not result.ok
    assert result.error.code == "validation_error"
    assert result.error.field == "rate"


def test_conversion_rejects_negative_amount():
    result = usdt_to_brl(-1, 5.0)
    assert not result.ok
    assert result.error.field == "amount"


def test_compute_deal_fills_missing_side_and_keeps_precision():
    result = compute_deal(5.2345, amount_brl=10000)
    assert result.ok
    # stored values are not rounded
    assert result.value.amount_usdt == 10000 / 5.2345
    assert "R$ 10.000,00" in result.value.display
    assert "1.910,40 USDT" in result.value.display


def test_compute_deal_prefers_usdt_when_both_given():
    result = compute_deal(5.0, amount_brl=1, amount_usdt=100)
    assert result.value.amount_brl == pytest.approx(500.0)
    assert result.value.amount_usdt == 100


def test_compute_deal_requires_an_amount():
    result = compute_deal(5.0)
    assert not result.ok
    assert result.error.code == "validation_error"


def test_formatting_pt_and_en():
    assert format_brl(1234.565) == "R$ 1.234,57"
    assert format_usdt(1234.5) == "1.234,50 USDT"
    assert format_rate(5.8) == "5,8000"
    assert format_brl(1234.565, "en") == "R$ 1,234.57"
    assert format_rate(5.8, "en") == "5.8000"
