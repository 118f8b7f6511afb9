"""Wire protocol: envelope codec and idempotency tracking.

Envelopes travel as UTF-8 JSON documents. The transport gives no ordering or
delivery guarantee, so every receiver gates envelopes through an
IdempotencyTracker keyed by envelope id before acting on them.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from pydantic import ValidationError

from storysync.models import Envelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 4096
DEFAULT_ID_LIMIT = 10_000


class DecodeError(ValueError):
    """Raised when a wire payload is truncated, oversized or malformed."""


def encode(envelope: Envelope) -> bytes:
    return envelope.model_dump_json().encode("utf-8")


def decode(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> Envelope:
    """Parse a wire payload into an Envelope.

    Callers treat DecodeError as "drop the message, log, continue".
    """
    if not data:
        raise DecodeError("empty payload")
    if len(data) > max_bytes:
        raise DecodeError(f"payload of {len(data)} bytes exceeds limit of {max_bytes}")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"payload is not UTF-8: {e}") from e
    try:
        return Envelope.model_validate_json(text)
    except ValidationError as e:
        raise DecodeError(f"invalid envelope: {e.error_count()} error(s)") from e


class IdempotencyTracker:
    """Remembers processed envelope ids.

    Ids are kept in arrival order; once more than `limit` ids are held the
    oldest are forgotten. Blank ids are never recorded and always pass.
    """

    def __init__(self, limit: int = DEFAULT_ID_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self._limit = limit
        self._seen: OrderedDict[str, None] = OrderedDict()

    def should_process(self, message_id: str) -> bool:
        if not message_id or not message_id.strip():
            return True
        if message_id in self._seen:
            return False
        self._seen[message_id] = None
        while len(self._seen) > self._limit:
            evicted, _ = self._seen.popitem(last=False)
            logger.debug("idempotency tracker evicted %s", evicted)
        return True

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
