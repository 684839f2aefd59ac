"""
BRL/USDT arithmetic and pt-BR number handling for the OTC desk.

Design goals
- Pure functions, no I/O, deterministic output.
- Parsing never raises: anything that does not look like a positive amount is ``None``.
- Stored values keep full precision; only the formatted strings are rounded
  (ROUND_HALF_UP).

Rate convention: ``rate`` is BRL per 1 USDT.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from otc_desk.core.result import Ok, Result, validation_error

# -----------------------------
# Parsing
# -----------------------------

_CURRENCY_PREFIX_RE = re.compile(r"^(?:R\$|US\$|USD|BRL)\s*", re.IGNORECASE)
_MULTIPLIER_RE = re.compile(r"^(\d+(?:[.,]\d+)?)\s*(?:k|mil)$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d+$")

_BRL_PREFIX_RE = re.compile(r"R\$\s*([\d.,]+(?:\s*(?:k|mil)\b)?)", re.IGNORECASE)
_BRL_SUFFIX_RE = re.compile(r"([\d.,]*\d(?:\s*(?:k|mil))?)\s*(?:reais|real|brl)\b", re.IGNORECASE)
_USDT_SUFFIX_RE = re.compile(r"([\d.,]*\d(?:\s*(?:k|mil))?)\s*(?:usdt|usd|u)\b", re.IGNORECASE)
_USD_PREFIX_RE = re.compile(r"US\$\s*([\d.,]+(?:\s*(?:k|mil)\b)?)", re.IGNORECASE)
_BARE_NUMBER_RE = re.compile(r"(?<![\w$])(\d[\d.,]*(?:\s*(?:k|mil)\b)?)", re.IGNORECASE)
_CURRENCY_MARKER_RE = re.compile(r"R\$|US\$|\b(?:reais|real|brl|usdt|usd)\b|\d\s*u\b", re.IGNORECASE)


def _positive_or_none(value: float) -> Optional[float]:
    if math.isfinite(value) and value > 0:
        return value
    return None


def parse_localized_number(text: Optional[str]) -> Optional[float]:
    """Parse a Brazilian-formatted amount ("10.000", "1.234,56", "5,5k", "R$ 2 mil")."""
    if not text or not isinstance(text, str):
        return None

    cleaned = _CURRENCY_PREFIX_RE.sub("", text.strip()).strip()
    if not cleaned:
        return None

    m = _MULTIPLIER_RE.match(cleaned)
    if m:
        try:
            return _positive_or_none(float(m.group(1).replace(",", ".")) * 1000)
        except ValueError:
            return None

    has_period = "." in cleaned
    has_comma = "," in cleaned

    if has_period and has_comma:
        # 1.234,56 -> period is the thousands separator
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    elif has_comma:
        after = cleaned[cleaned.rfind(",") + 1 :]
        if len(after) == 3 and _DIGITS_RE.match(after):
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(",", ".", 1)
    elif has_period:
        if cleaned.count(".") > 1:
            cleaned = cleaned.replace(".", "")
        else:
            before, _, after = cleaned.partition(".")
            if len(after) == 3 and _DIGITS_RE.match(after) and re.match(r"^\d{1,3}$", before):
                cleaned = before + after

    try:
        return _positive_or_none(float(cleaned))
    except ValueError:
        return None


def _first_parsed(patterns, text: str) -> Optional[float]:
    for pattern in patterns:
        for m in pattern.finditer(text):
            parsed = parse_localized_number(m.group(1))
            if parsed is not None:
                return parsed
    return None


def extract_brl_amount(message: Optional[str]) -> Optional[float]:
    """First amount tagged as BRL: ``R$ 10.000`` or ``10 mil reais``."""
    if not message:
        return None
    return _first_parsed((_BRL_PREFIX_RE, _BRL_SUFFIX_RE), message.strip())


def extract_usdt_amount(message: Optional[str]) -> Optional[float]:
    """First amount tagged as USDT: ``500 usdt``, ``2k u`` or ``US$ 500``."""
    if not message:
        return None
    return _first_parsed((_USDT_SUFFIX_RE, _USD_PREFIX_RE), message.strip())


def has_currency_marker(message: Optional[str]) -> bool:
    return bool(message and _CURRENCY_MARKER_RE.search(message))


def extract_bare_amount(message: Optional[str]) -> Optional[float]:
    """First untagged number in the message, or None when any currency marker is present."""
    if not message or has_currency_marker(message):
        return None
    return _first_parsed((_BARE_NUMBER_RE,), message.strip())


# -----------------------------
# Conversion
# -----------------------------


def _check_conversion_inputs(amount: float, rate: float, label: str):
    if not isinstance(rate, (int, float)) or not math.isfinite(rate) or rate <= 0:
        return validation_error("Rate must be a positive number", field="rate")
    if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount < 0:
        return validation_error(f"{label} amount must be a non-negative number", field="amount")
    return None


def brl_to_usdt(amount_brl: float, rate: float) -> Result[float]:
    failure = _check_conversion_inputs(amount_brl, rate, "BRL")
    if failure is not None:
        return failure
    return Ok(amount_brl / rate)


def usdt_to_brl(amount_usdt: float, rate: float) -> Result[float]:
    failure = _check_conversion_inputs(amount_usdt, rate, "USDT")
    if failure is not None:
        return failure
    return Ok(amount_usdt * rate)


@dataclass(frozen=True)
class DealComputation:
    amount_brl: float
    amount_usdt: float
    rate: float
    display: str


def compute_deal(
    rate: float,
    amount_brl: Optional[float] = None,
    amount_usdt: Optional[float] = None,
    language: str = "pt",
) -> Result[DealComputation]:
    """Fill in the missing side of the pair. USDT wins when both are given."""
    if amount_usdt is not None and amount_usdt > 0:
        converted = usdt_to_brl(amount_usdt, rate)
        if not converted.ok:
            return converted
        brl = converted.value
        display = (
            f"{format_usdt(amount_usdt, language)} × {format_rate(rate, language)} = "
            f"{format_brl(brl, language)}"
        )
        return Ok(DealComputation(amount_brl=brl, amount_usdt=amount_usdt, rate=rate, display=display))

    if amount_brl is not None and amount_brl > 0:
        converted = brl_to_usdt(amount_brl, rate)
        if not converted.ok:
            return converted
        usdt = converted.value
        display = (
            f"{format_brl(amount_brl, language)} / {format_rate(rate, language)} = "
            f"{format_usdt(usdt, language)}"
        )
        return Ok(DealComputation(amount_brl=amount_brl, amount_usdt=usdt, rate=rate, display=display))

    return validation_error("Either amount_brl or amount_usdt must be provided", field="amount")


# -----------------------------
# Formatting
# -----------------------------


def format_amount(value: float, decimals: int = 2, language: str = "pt") -> str:
    """Group thousands and round half-up. pt: 1.234,56 / en: 1,234.56"""
    try:
        quant = Decimal(1).scaleb(-decimals)
        rounded = Decimal(str(value)).quantize(quant, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        rounded = Decimal(0).quantize(Decimal(1).scaleb(-decimals))
    text = f"{rounded:,.{decimals}f}"
    if language.lower().startswith("en"):
        return text
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_brl(value: float, language: str = "pt") -> str:
    return f"R$ {format_amount(value, 2, language)}"


def format_usdt(value: float, language: str = "pt") -> str:
    return f"{format_amount(value, 2, language)} USDT"


def format_rate(value: float, language: str = "pt") -> str:
    return format_amount(value, 4, language)
