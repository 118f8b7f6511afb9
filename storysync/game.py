"""Game controller — wires the session pieces together for one peer.

Upward it exposes the only two things a front end needs: issue a command or
chat line, and read the session (plus observer callbacks from
SessionEvents). Downward it owns the store, the idempotency tracker, the
broadcaster and, on the host, the turn engine.

Inbound path for every payload the pump delivers:
  decode → sender check → idempotency gate → dispatch by kind.
Anything that fails a step is logged and dropped; nothing here is fatal.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from storysync import protocol
from storysync.broadcaster import Broadcaster
from storysync.config import Settings
from storysync.engine import TurnEngine, TurnResult
from storysync.events import SessionEvents
from storysync.llm import LLM
from storysync.models import Envelope, EnvelopeKind, Participant, Session, new_id
from storysync.protocol import DecodeError, IdempotencyTracker
from storysync.saves import SaveSlots
from storysync.state import SessionStore
from storysync.transport import Pump, Transport

logger = logging.getLogger(__name__)

HOST_STARTING_ITEMS = ["Torch"]
BOT_STARTING_ITEMS = ["Rations"]


class NotAuthorized(PermissionError):
    """Raised when a non-host peer attempts a host-only action."""


class Game:
    def __init__(
        self,
        *,
        identity: str,
        display_name: str,
        is_host: bool,
        llm: LLM,
        transport: Transport | None = None,
        saves: SaveSlots | None = None,
        settings: Settings | None = None,
        events: SessionEvents | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.identity = identity
        self.display_name = display_name
        self.is_host = is_host
        self.transport = transport
        self.saves = saves
        self.events = events or SessionEvents()
        self.store = SessionStore()
        self.tracker = IdempotencyTracker(self.settings.processed_id_limit)
        self.broadcaster = Broadcaster(transport, self.tracker)
        self.engine: TurnEngine | None = None
        if is_host:
            self.engine = TurnEngine(
                store=self.store,
                llm=llm,
                broadcaster=self.broadcaster,
                host_identity=identity,
                events=self.events,
                call_timeout=self.settings.call_timeout,
            )

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self.store.current()

    def me(self) -> Participant:
        return self.session.participants.get(self.identity) or Participant(
            identity=self.identity, display_name=self.display_name, is_host=self.is_host,
        )

    def roster(self) -> list[Participant]:
        return self.session.roster()

    def inventory(self) -> list[str]:
        p = self.session.participants.get(self.identity)
        return list(p.inventory) if p else []

    def pump(self) -> Pump:
        if self.transport is None:
            raise RuntimeError("no transport configured")
        return Pump(self.transport, self.on_message, self.settings.pump_interval)

    # ------------------------------------------------------------------
    # Host-only actions
    # ------------------------------------------------------------------

    def _require_host(self, action: str) -> TurnEngine:
        if not self.is_host or self.engine is None:
            raise NotAuthorized(f"Only the host can {action}.")
        return self.engine

    def _make_bots(self, count: int, already: int) -> list[Participant]:
        return [
            Participant(
                identity=new_id(),
                display_name=f"AI-{already + i + 1}",
                is_automated=True,
                inventory=list(BOT_STARTING_ITEMS),
            )
            for i in range(count)
        ]

    async def new_game(
        self,
        slot: str,
        *,
        add_bots: bool = True,
        bot_count: int = 1,
        prologue: bool = True,
    ) -> Session:
        engine = self._require_host("start a new world")
        session = Session(session_id=slot, world_seed=new_id())
        session.participants[self.identity] = Participant(
            identity=self.identity,
            display_name=self.display_name,
            is_host=True,
            inventory=list(HOST_STARTING_ITEMS),
        )
        if add_bots:
            for bot in self._make_bots(bot_count, already=0):
                session.participants[bot.identity] = bot

        self.events.log(f"[SYSTEM] New world created. Save: {slot}")
        await engine.reset(session)
        if prologue:
            await engine.open_scene()
        return self.session

    async def add_bots(self, count: int) -> list[Participant]:
        engine = self._require_host("add bots")
        if count < 1:
            return []
        bots = self._make_bots(count, already=len(self.session.automated()))
        await engine.admit(bots)
        self.events.log(f"[SYSTEM] Added {count} AI companion(s).")
        return bots

    async def load_game(self, slot: str) -> Session | None:
        engine = self._require_host("load a world")
        if self.saves is None:
            raise RuntimeError("no save directory configured")
        session = self.saves.load(slot)
        if session is None:
            self.events.log(f"[SYSTEM] No save found in {slot}")
            return None

        _rehome(session, self.identity, self.display_name)
        await engine.reset(session)
        self.events.log(f"[SYSTEM] Loaded save {slot}")
        return self.session

    # ------------------------------------------------------------------
    # Any peer
    # ------------------------------------------------------------------

    def save_game(self) -> None:
        if self.saves is None:
            raise RuntimeError("no save directory configured")
        if not self.session.session_id:
            self.events.log("[SYSTEM] No world to save yet.")
            return
        self.saves.save(self.session)
        self.events.log(f"[SYSTEM] Saved to {self.session.session_id}")

    async def send_chat(self, text: str) -> Envelope:
        envelope = Envelope.chat(self.me(), text, self.session.session_id)
        await self.broadcaster.broadcast(envelope)
        self.events.log(envelope.payload)
        return envelope

    async def send_command(self, text: str) -> TurnResult | None:
        """Resolve `text` as a turn (host) or forward it to the host."""
        envelope = Envelope.command(self.me(), text, self.session.session_id)
        self.events.log(f"[ACTION] {self.display_name}: {text}")
        if self.engine is not None:
            if not self.tracker.should_process(envelope.id):
                return None
            return await self.engine.submit(envelope)
        await self.broadcaster.broadcast(envelope)
        return None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_message(self, sender_identity: str, data: bytes) -> None:
        try:
            envelope = protocol.decode(data, self.settings.max_payload_bytes)
        except DecodeError as e:
            logger.warning("dropping payload from %s: %s", sender_identity, e)
            return

        if envelope.sender_identity != sender_identity:
            logger.warning(
                "dropping %s %s: claims sender %s but came from %s",
                envelope.kind.value, envelope.id, envelope.sender_identity, sender_identity,
            )
            return

        if not self.tracker.should_process(envelope.id):
            logger.debug("duplicate %s %s ignored", envelope.kind.value, envelope.id)
            return

        if envelope.kind is EnvelopeKind.STATE_SYNC:
            self._apply_snapshot(envelope)
        elif envelope.kind is EnvelopeKind.CHAT:
            self._receive_chat(envelope)
        elif envelope.kind is EnvelopeKind.COMMAND:
            self._receive_command(envelope)

    def _foreign_session(self, envelope: Envelope) -> bool:
        current = self.session.session_id
        if envelope.session_id and current and envelope.session_id != current:
            logger.warning(
                "dropping %s %s for session %s (current %s)",
                envelope.kind.value, envelope.id, envelope.session_id, current,
            )
            return True
        return False

    def _admit_sender(self, envelope: Envelope) -> None:
        if self.engine is None or envelope.sender_identity in self.session.participants:
            return
        peer = Participant(
            identity=envelope.sender_identity,
            display_name=envelope.sender_name or envelope.sender_identity,
        )
        logger.info("admitting %s (%s)", peer.display_name, peer.identity)
        self.engine.enqueue_admit([peer])

    def _receive_chat(self, envelope: Envelope) -> None:
        if self.is_host:
            if self._foreign_session(envelope):
                return
            self._admit_sender(envelope)
        self.events.log(envelope.payload)

    def _receive_command(self, envelope: Envelope) -> None:
        if self.engine is None:
            logger.debug("command %s ignored, not the host", envelope.id)
            return
        if self._foreign_session(envelope):
            return
        self._admit_sender(envelope)
        name = envelope.sender_name or self.session.name_of(envelope.sender_identity)
        self.events.log(f"[ACTION] {name}: {envelope.payload}")
        self.engine.enqueue_command(envelope)

    def _apply_snapshot(self, envelope: Envelope) -> None:
        if self.is_host:
            logger.warning("host ignoring snapshot %s from %s", envelope.id, envelope.sender_identity)
            return
        host = self.session.host()
        if host is not None and host.identity != envelope.sender_identity:
            logger.warning(
                "dropping snapshot %s from %s, host is %s",
                envelope.id, envelope.sender_identity, host.identity,
            )
            return
        try:
            session = envelope.session()
        except ValidationError as e:
            logger.warning("dropping snapshot %s: %s", envelope.id, e)
            return
        self.store.replace(session)
        self.events.refresh()


def _rehome(session: Session, identity: str, display_name: str) -> None:
    """Make `identity` the host of a loaded session.

    Saves made by an earlier host process name that process as host; the
    peer loading the save takes the role over.
    """
    for p in session.participants.values():
        if p.identity != identity:
            p.is_host = False
    me = session.participants.get(identity)
    if me is None:
        session.participants[identity] = Participant(
            identity=identity, display_name=display_name, is_host=True,
            inventory=list(HOST_STARTING_ITEMS),
        )
    else:
        me.is_host = True
