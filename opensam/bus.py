"""Inbound/outbound message types and the asyncio message bus."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    """A message received from a chat channel (or the CLI)."""

    channel: str
    sender_id: str
    chat_id: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now().astimezone())
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        return f"{self.channel}:{self.chat_id}"


@dataclass
class OutboundMessage:
    """A message to deliver to a chat channel."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "channel": self.channel,
            "chat_id": self.chat_id,
            "content": self.content,
            "media": list(self.media),
            "metadata": dict(self.metadata),
        }
        if self.reply_to is not None:
            data["reply_to"] = self.reply_to
        return data


class MessageBus:
    """Two unbounded queues decoupling channel adapters from the agent loop."""

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()

    async def publish_inbound(self, msg: InboundMessage) -> None:
        logger.debug("inbound %s -> %s", msg.sender_id, msg.channel)
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        logger.debug("outbound %s -> %s", msg.channel, msg.chat_id)
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        return await self.outbound.get()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
