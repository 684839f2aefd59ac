"""
Outbound chat messages.

The WhatsApp transport (connection handling, pacing) lives outside this service.
``OutboxNotifier`` queues each message in ``outbound_messages``; the transport
polls ``pending`` and reports back with ``mark_sent`` / ``mark_failed``.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otc_desk.database import utc_now
from otc_desk.models import OutboundMessage, OutboundStatus

logger = logging.getLogger("otc_desk.notifier")


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    async def send_to_group(
        self, group_jid: str, text: str, mentions: Optional[Sequence[str]] = None
    ) -> None: ...


class OperatorDirectory(Protocol):
    async def resolve_operator_for_group(self, group_jid: str) -> Optional[str]: ...


class OutboxNotifier:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def send_to_group(
        self, group_jid: str, text: str, mentions: Optional[Sequence[str]] = None
    ) -> None:
        if not text:
            raise NotificationError("Refusing to queue an empty message")
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(
                        OutboundMessage(
                            group_jid=group_jid,
                            content_text=text,
                            mentions=list(mentions or []),
                            status=OutboundStatus.queued,
                        )
                    )
        except Exception as exc:
            raise NotificationError(f"Failed to queue message for {group_jid}: {exc}") from exc
        logger.info("outbound_message_queued", extra={"group_jid": group_jid, "mentions": list(mentions or [])})

    async def pending(self, limit: int = 100) -> list[OutboundMessage]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(OutboundMessage)
                .where(OutboundMessage.status == OutboundStatus.queued)
                .order_by(OutboundMessage.id.asc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def _set_status(self, message_id: int, status: OutboundStatus) -> bool:
        values = {"status": status}
        if status == OutboundStatus.sent:
            values["sent_at"] = utc_now()
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(OutboundMessage)
                    .where(OutboundMessage.id == message_id)
                    .where(OutboundMessage.status == OutboundStatus.queued)
                    .values(**values)
                )
            return int(result.rowcount or 0) > 0

    async def mark_sent(self, message_id: int) -> bool:
        return await self._set_status(message_id, OutboundStatus.sent)

    async def mark_failed(self, message_id: int) -> bool:
        return await self._set_status(message_id, OutboundStatus.failed)
