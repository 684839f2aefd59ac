"""Chat replies sent by the desk (pt-BR by default, English for ``group_language=en``)."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from otc_desk.models import ActiveDeal, DealState
from otc_desk.services.deal_computation import format_brl, format_rate, format_usdt

_TEXT: dict[str, dict[str, str]] = {
    "quote_title": {"pt": "📊 *Cotação*", "en": "📊 *Quote*"},
    "rate": {"pt": "Taxa", "en": "Rate"},
    "amount": {"pt": "Valor", "en": "Amount"},
    "quote_cta": {
        "pt": "Responda *trava* para travar essa taxa.",
        "en": "Reply *lock* to lock this rate.",
    },
    "valid_for": {"pt": "⏱️ Válido por {minutes} min.", "en": "⏱️ Valid for {minutes} min."},
    "lock_title": {"pt": "🔒 *Taxa Travada*", "en": "🔒 *Rate Locked*"},
    "lock_cta": {
        "pt": "Responda *fechado* para confirmar a operação.",
        "en": "Reply *done* to confirm the trade.",
    },
    "completed_title": {"pt": "✅ *Operação Confirmada*", "en": "✅ *Trade Confirmed*"},
    "completed_footer": {"pt": "Operação registrada com sucesso.", "en": "Trade recorded."},
    "expired": {
        "pt": "⏰ Sua cotação expirou. Envie uma nova mensagem para receber uma cotação atualizada.",
        "en": "⏰ Your quote has expired. Send a new message for an updated quote.",
    },
    "cancelled": {"pt": "❌ Operação cancelada.", "en": "❌ Trade cancelled."},
    "reminder_quoted": {
        "pt": "📊 Você já tem uma cotação aberta. Responda *trava* para travar a taxa.",
        "en": "📊 You already have an open quote. Reply *lock* to lock the rate.",
    },
    "reminder_locked": {
        "pt": "🔒 Sua taxa já está travada. Responda *fechado* para confirmar.",
        "en": "🔒 Your rate is already locked. Reply *done* to confirm.",
    },
    "reminder_computing": {
        "pt": "⏳ Sua operação está sendo processada.",
        "en": "⏳ Your trade is being processed.",
    },
    "amount_prompt": {
        "pt": "🔒 Taxa travada em {rate}. Quantos USDTs?",
        "en": "🔒 Rate locked at {rate}. How much USDT?",
    },
    "amount_reminder": {
        "pt": "💰 Ainda aguardando o valor. Quantos USDTs na taxa {rate}?",
        "en": "💰 Still waiting for the amount. How much USDT at {rate}?",
    },
    "amount_parse_error": {
        "pt": '❓ Não entendi o valor. Envie só o número de USDTs (ex: "5000", "10k", "500 usdt").',
        "en": '❓ Couldn\'t understand the amount. Send just the USDT number (e.g. "5000", "10k", "500 usdt").',
    },
    "lock_first": {
        "pt": "📊 Primeiro trave a taxa respondendo *trava*, depois confirme.",
        "en": "📊 Lock the rate first by replying *lock*, then confirm.",
    },
    "no_quote": {
        "pt": '💰 Sem cotação ativa. Informe o valor da operação (ex: "10k", "R$ 5.000", "500 usdt").',
        "en": '💰 No active quote. Tell us the amount (e.g. "10k", "R$ 5,000", "500 usdt").',
    },
    "offer_withdrawn": {"pt": "off {operator}", "en": "off {operator}"},
    "operator_tag": {"pt": "{operator}", "en": "{operator}"},
    "amount_preview": {
        "pt": "{display}\nResponda *trava* para travar.",
        "en": "{display}\nReply *lock* to lock it in.",
    },
    "retry": {
        "pt": "⚠️ Não consegui processar agora. Tente novamente em instantes.",
        "en": "⚠️ Couldn't process that right now. Please try again shortly.",
    },
    "cannot_cancel": {
        "pt": "⏳ Sua operação já está sendo processada e não pode ser cancelada.",
        "en": "⏳ Your trade is already being processed and can't be cancelled.",
    },
}


def _lang(language: Optional[str]) -> str:
    return "en" if str(language or "").lower().startswith("en") else "pt"


def text(key: str, language: Optional[str] = "pt", **params) -> str:
    template = _TEXT[key][_lang(language)]
    return template.format(**params) if params else template


def mention(jid: Optional[str]) -> str:
    if not jid:
        return ""
    return "@" + jid.split("@", 1)[0]


def _ttl_line(deal: ActiveDeal, now: datetime, language: str) -> Optional[str]:
    minutes = math.ceil((deal.ttl_expires_at - now).total_seconds() / 60)
    if minutes <= 0:
        return None
    return text("valid_for", language, minutes=minutes)


def quote_message(deal: ActiveDeal, now: datetime, language: str = "pt") -> str:
    lang = _lang(language)
    lines = [text("quote_title", lang), "", f"{text('rate', lang)}: {format_rate(deal.quoted_rate, lang)}"]
    if deal.amount_brl is not None and deal.amount_usdt is not None:
        lines.append(f"{format_brl(deal.amount_brl, lang)} → {format_usdt(deal.amount_usdt, lang)}")
    lines += ["", text("quote_cta", lang)]
    ttl = _ttl_line(deal, now, lang)
    if ttl:
        lines.append(ttl)
    return "\n".join(lines)


def lock_message(deal: ActiveDeal, now: datetime, language: str = "pt") -> str:
    lang = _lang(language)
    lines = [text("lock_title", lang), "", f"{text('rate', lang)}: {format_rate(deal.effective_rate, lang)}"]
    if deal.amount_brl is not None:
        lines.append(f"{text('amount', lang)}: {format_brl(deal.amount_brl, lang)}")
    if deal.amount_usdt is not None:
        lines.append(f"USDT: {format_usdt(deal.amount_usdt, lang)}")
    lines += ["", text("lock_cta", lang)]
    ttl = _ttl_line(deal, now, lang)
    if ttl:
        lines.append(ttl)
    return "\n".join(lines)


def completion_message(
    deal: ActiveDeal, display: str, operator_jid: Optional[str] = None, language: str = "pt"
) -> str:
    lang = _lang(language)
    lines = [text("completed_title", lang), "", display, "", text("completed_footer", lang)]
    if operator_jid:
        lines.append(mention(operator_jid))
    return "\n".join(lines)


def reminder_message(deal: ActiveDeal, language: str = "pt") -> str:
    if deal.state == DealState.awaiting_amount:
        return text("amount_prompt", language, rate=format_rate(deal.effective_rate, language))
    key = {
        DealState.quoted: "reminder_quoted",
        DealState.locked: "reminder_locked",
    }.get(deal.state, "reminder_computing")
    return text(key, language)


def amount_prompt(deal: ActiveDeal, language: str = "pt") -> str:
    return text("amount_prompt", language, rate=format_rate(deal.effective_rate, language))


def amount_reminder(deal: ActiveDeal, language: str = "pt") -> str:
    return text("amount_reminder", language, rate=format_rate(deal.effective_rate, language))


def offer_withdrawn(operator_jid: Optional[str], language: str = "pt") -> str:
    return text("offer_withdrawn", language, operator=mention(operator_jid)).strip()
