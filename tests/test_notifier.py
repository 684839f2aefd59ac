import httpx
import pytest

from otc_desk.main import app
from otc_desk.models import OutboundStatus
from otc_desk.runtime import build_runtime, set_runtime
from otc_desk.services.notifier import NotificationError, OutboxNotifier

GROUP = "120363000000000009@g.us"
CLIENT = "5511999990000@s.whatsapp.net"


async def test_messages_are_queued_in_order(session_factory):
    outbox = OutboxNotifier(session_factory)
    await outbox.send_to_group(GROUP, "primeira", mentions=[CLIENT])
    await outbox.send_to_group(GROUP, "segunda")

    pending = await outbox.pending()
    assert [m.content_text for m in pending] == ["primeira", "segunda"]
    assert pending[0].mentions == [CLIENT]
    assert pending[1].mentions == []
    assert all(m.status == OutboundStatus.queued for m in pending)


async def test_delivery_status_is_reported_once(session_factory):
    outbox = OutboxNotifier(session_factory)
    await outbox.send_to_group(GROUP, "oi")
    message = (await outbox.pending())[0]

    assert await outbox.mark_sent(message.id)
    assert not await outbox.mark_sent(message.id)
    assert not await outbox.mark_failed(message.id)
    assert await outbox.pending() == []


async def test_empty_message_is_refused(session_factory):
    with pytest.raises(NotificationError):
        await OutboxNotifier(session_factory).send_to_group(GROUP, "")


async def test_transport_polls_the_outbox(session_factory, price_feed, clock):
    rt = build_runtime(session_factory=session_factory, price_feed=price_feed, clock=clock)
    set_runtime(rt)
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/api/messages/inbound",
                json={"group_jid": GROUP, "sender_jid": CLIENT, "intent": "volume_inquiry", "text": "cotação"},
            )
            assert res.json()["action"] == "quoted"

            queued = (await client.get("/api/messages/outbox")).json()
            assert len(queued) == 1
            assert queued[0]["mentions"] == [CLIENT]
            assert queued[0]["status"] == "queued"

            sent = await client.post(f"/api/messages/outbox/{queued[0]['id']}/sent")
            assert sent.status_code == 204
            again = await client.post(f"/api/messages/outbox/{queued[0]['id']}/failed")
            assert again.status_code == 409
            assert (await client.get("/api/messages/outbox")).json() == []
    finally:
        await rt.dispatcher.drain()
        set_runtime(None)
