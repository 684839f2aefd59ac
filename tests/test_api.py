from datetime import timedelta

import httpx
import pytest

from otc_desk.config import settings
from otc_desk.main import app
from otc_desk.runtime import set_runtime

GROUP = "120363000000000008@g.us"
CLIENT = "5511999990000@s.whatsapp.net"


@pytest.fixture
async def client(rt):
    set_runtime(rt)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    set_runtime(None)


def _rule_payload(**overrides):
    data = {
        "name": "Business hours",
        "schedule_start_time": "09:00",
        "schedule_end_time": "18:00",
        "schedule_days": ["mon", "tue", "wed", "thu", "fri"],
        "priority": 10,
        "spread_mode": "bps",
        "sell_spread": 50,
        "buy_spread": -30,
    }
    data.update(overrides)
    return data


async def _inbound(client, intent, text, sender=CLIENT):
    return await client.post(
        "/api/messages/inbound",
        json={"group_jid": GROUP, "sender_jid": sender, "intent": intent, "text": text},
    )


async def test_health(client):
    res = await client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["sweep_running"] is False
    assert "rule_cache" in body
    assert "X-Request-ID" in res.headers

    assert (await client.get("/healthz")).json()["status"] == "ok"


async def test_rule_crud_and_active_lookup(client):
    created = await client.post(f"/api/groups/{GROUP}/rules", json=_rule_payload())
    assert created.status_code == 201, created.text
    rule = created.json()
    assert rule["schedule_timezone"] == "America/Sao_Paulo"

    listed = await client.get(f"/api/groups/{GROUP}/rules")
    assert [r["id"] for r in listed.json()] == [rule["id"]]

    active = await client.get(f"/api/groups/{GROUP}/rules/active", params={"at": "2026-03-02T15:00:00Z"})
    assert active.json()["rule"]["id"] == rule["id"]
    idle = await client.get(f"/api/groups/{GROUP}/rules/active", params={"at": "2026-03-07T15:00:00Z"})
    assert idle.json()["rule"] is None

    patched = await client.patch(f"/api/groups/{GROUP}/rules/{rule['id']}", json={"priority": 80})
    assert patched.json()["priority"] == 80

    deleted = await client.delete(f"/api/groups/{GROUP}/rules/{rule['id']}")
    assert deleted.status_code == 204
    missing = await client.get(f"/api/groups/{GROUP}/rules/{rule['id']}")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"


async def test_rule_errors_map_to_status_codes(client):
    bad = await client.post(f"/api/groups/{GROUP}/rules", json=_rule_payload(schedule_end_time="25:00"))
    assert bad.status_code == 400
    assert bad.json()["detail"]["field"] == "schedule_end_time"

    await client.post(f"/api/groups/{GROUP}/rules", json=_rule_payload())
    dup = await client.post(f"/api/groups/{GROUP}/rules", json=_rule_payload())
    assert dup.status_code == 409


async def test_spread_config_and_quote_preview(client):
    res = await client.get(f"/api/groups/{GROUP}/spread")
    assert res.json()["spread_mode"] == "bps"

    saved = await client.put(
        f"/api/groups/{GROUP}/spread",
        json={"spread_mode": "abs_brl", "sell_spread": 0.05, "buy_spread": -0.03},
    )
    assert saved.status_code == 200, saved.text
    assert saved.json()["sell_spread"] == 0.05

    quote = (await client.get(f"/api/groups/{GROUP}/quote")).json()
    assert quote["base_rate"] == 5.0
    assert quote["buy_rate"] == pytest.approx(5.05)
    assert quote["sell_rate"] == pytest.approx(4.97)
    assert quote["pricing_source"] == "usdt_binance"


async def test_inbound_message_drives_the_deal(client, notifier):
    quoted = await _inbound(client, "volume_inquiry", "cotação")
    assert quoted.status_code == 200, quoted.text
    body = quoted.json()
    assert body["action"] == "quoted"
    assert body["deal_state"] == "quoted"
    assert notifier.sent[-1].mentions == [CLIENT]

    deals = (await client.get(f"/api/groups/{GROUP}/deals")).json()
    assert [d["id"] for d in deals] == [body["deal_id"]]
    assert deals[0]["metadata"]["flow"] == "quote"

    locked = (await _inbound(client, "price_lock", "trava")).json()
    assert locked["action"] == "locked"
    assert locked["deal_id"] == body["deal_id"]


async def test_operator_cancel_and_archive(client):
    deal_id = (await _inbound(client, "volume_inquiry", "1000")).json()["deal_id"]

    cancelled = await client.post(f"/api/groups/{GROUP}/deals/{deal_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "cancelled"
    assert cancelled.json()["metadata"]["completion_reason"] == "cancelled_by_operator"

    again = await client.post(f"/api/groups/{GROUP}/deals/{deal_id}/cancel")
    assert again.status_code == 409
    assert again.json()["detail"]["current"] == "cancelled"

    archived = await client.post(f"/api/groups/{GROUP}/deals/{deal_id}/archive")
    assert archived.status_code == 200
    assert archived.json()["final_state"] == "cancelled"

    history = (await client.get(f"/api/groups/{GROUP}/deals/history")).json()
    assert [h["id"] for h in history] == [deal_id]


async def test_extend_ttl_until_the_deal_lapses(client, rt, clock):
    deal_id = (await _inbound(client, "volume_inquiry", "cotação")).json()["deal_id"]
    clock.advance(minutes=10)
    # a lapsed but not yet swept deal can still be extended
    extended = await client.post(
        f"/api/groups/{GROUP}/deals/{deal_id}/extend", json={"additional_seconds": 60}
    )
    assert extended.status_code == 200
    deadline = clock.current + timedelta(seconds=60)
    assert extended.json()["ttl_expires_at"].startswith(deadline.strftime("%Y-%m-%dT%H:%M:%S"))

    clock.advance(minutes=5)
    locked = await rt.deals.lock_deal(deal_id, GROUP, locked_rate=5.0)
    assert locked.error.code == "expired"
    gone = await client.post(f"/api/groups/{GROUP}/deals/{deal_id}/extend", json={"additional_seconds": 60})
    assert gone.status_code == 409


async def test_manual_sweep(client, clock):
    await _inbound(client, "volume_inquiry", "cotação")
    clock.advance(minutes=10)
    report = (await client.post("/api/messages/sweep")).json()
    assert report["expired"] == 1
    assert report["archived"] == 1


async def test_ingest_token_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "ingest_token", "s3cret")

    denied = await _inbound(client, "volume_inquiry", "cotação")
    assert denied.status_code == 401

    allowed = await client.post(
        "/api/messages/inbound",
        json={"group_jid": GROUP, "sender_jid": CLIENT, "intent": "volume_inquiry", "text": "cotação"},
        headers={"X-Ingest-Token": "s3cret"},
    )
    assert allowed.status_code == 200


async def test_unknown_intent_is_rejected(client):
    res = await _inbound(client, "haggle", "por favor")
    assert res.status_code == 422


async def test_outbox_needs_the_outbox_notifier(client):
    res = await client.get("/api/messages/outbox")
    assert res.status_code == 404
