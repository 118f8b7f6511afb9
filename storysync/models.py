"""Core domain models.

The session, its roster and the wire envelope. Every component operates on
these types. Pydantic is used for validation and serialisation at every data
boundary (wire decode, save slots).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_OPENING = "You awaken at a crossroads under a violet sky."


def new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Participant(BaseModel):
    """One human or automated actor in a session."""

    identity: str
    display_name: str = "Player"
    is_host: bool = False
    is_automated: bool = False
    inventory: list[str] = Field(default_factory=list)

    @field_validator("inventory")
    @classmethod
    def _unique_items(cls, items: list[str]) -> list[str]:
        seen: set[str] = set()
        for item in items:
            key = item.casefold()
            if key in seen:
                raise ValueError(f"duplicate inventory item {item!r}")
            seen.add(key)
        return items

    def has_item(self, name: str) -> bool:
        key = name.casefold()
        return any(i.casefold() == key for i in self.inventory)


class Session(BaseModel):
    """Shared narrative and roster. The host owns the writable copy."""

    session_id: str = ""
    world_seed: str = ""
    narrative: str = DEFAULT_OPENING
    participants: dict[str, Participant] = Field(default_factory=dict)
    last_saved_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_roster(self) -> Session:
        for key, p in self.participants.items():
            if key != p.identity:
                raise ValueError(f"participant key {key!r} does not match identity {p.identity!r}")
        hosts = [p for p in self.participants.values() if p.is_host]
        if len(hosts) > 1:
            raise ValueError("a session has at most one host")
        return self

    def host(self) -> Participant | None:
        return next((p for p in self.participants.values() if p.is_host), None)

    def automated(self) -> list[Participant]:
        return [p for p in self.participants.values() if p.is_automated]

    def name_of(self, identity: str) -> str:
        p = self.participants.get(identity)
        return p.display_name if p else identity

    def roster(self) -> list[Participant]:
        """Humans first, then companions, each in join order."""
        return sorted(self.participants.values(), key=lambda p: p.is_automated)


class EnvelopeKind(str, Enum):
    CHAT = "Chat"
    COMMAND = "Command"
    STATE_SYNC = "StateSync"


class Envelope(BaseModel):
    """The unit of wire communication.

    `id` is assigned once at creation and is the idempotency key; the model
    is frozen so a re-send always carries the same id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: EnvelopeKind
    sender_identity: str
    sender_name: str = ""
    payload: str = ""
    session_id: str = ""

    @classmethod
    def chat(cls, sender: Participant, text: str, session_id: str) -> Envelope:
        return cls(
            kind=EnvelopeKind.CHAT,
            sender_identity=sender.identity,
            sender_name=sender.display_name,
            payload=f"{sender.display_name}: {text}",
            session_id=session_id,
        )

    @classmethod
    def command(cls, sender: Participant, text: str, session_id: str) -> Envelope:
        return cls(
            kind=EnvelopeKind.COMMAND,
            sender_identity=sender.identity,
            sender_name=sender.display_name,
            payload=text,
            session_id=session_id,
        )

    @classmethod
    def state_sync(cls, session: Session, sender_identity: str) -> Envelope:
        return cls(
            kind=EnvelopeKind.STATE_SYNC,
            sender_identity=sender_identity,
            payload=session.model_dump_json(),
            session_id=session.session_id,
        )

    def session(self) -> Session:
        """Parse a StateSync payload. Raises pydantic.ValidationError."""
        return Session.model_validate_json(self.payload)
