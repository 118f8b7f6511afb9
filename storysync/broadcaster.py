"""Hands envelopes to the transport.

Snapshots are always the full session, never a diff: a peer that missed any
number of earlier messages is consistent again after the next one it gets.
"""

from __future__ import annotations

import logging

from storysync import protocol
from storysync.models import Envelope, Session
from storysync.protocol import IdempotencyTracker
from storysync.transport import Transport, TransportError

logger = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, transport: Transport | None, tracker: IdempotencyTracker) -> None:
        self.transport = transport
        self._tracker = tracker

    @property
    def connected(self) -> bool:
        return self.transport is not None and self.transport.group_id is not None

    async def broadcast(self, envelope: Envelope) -> bool:
        """Send `envelope` to the group. Returns False when nothing was sent."""
        # Our own echo must never be processed as a new message.
        self._tracker.should_process(envelope.id)

        if not self.connected:
            logger.debug("no active group, %s %s kept local", envelope.kind.value, envelope.id)
            return False

        data = protocol.encode(envelope)
        limit = self.transport.max_payload_bytes
        if len(data) > limit:
            logger.warning(
                "dropping %s %s: %d bytes exceeds transport limit of %d",
                envelope.kind.value, envelope.id, len(data), limit,
            )
            return False

        try:
            await self.transport.send(self.transport.group_id, data)
        except TransportError as e:
            logger.warning("send of %s %s failed: %s", envelope.kind.value, envelope.id, e)
            return False
        return True

    async def sync(self, session: Session, sender_identity: str) -> bool:
        envelope = Envelope.state_sync(session, sender_identity)
        return await self.broadcast(envelope)
