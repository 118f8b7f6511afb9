"""Turn resolution engine — runs on the host only.

Turn flow for one command:
  1. CollectingAutomatedActions — the command becomes the first party action;
     each automated participant is asked, one after another, for a one-line
     action that can react to the actions already chosen this turn.
  2. ResolvingNarration — one game-master call resolves exactly those actions.
  3. ApplyingEffects — the narration is appended to the story and its
     [GAIN x] / [LOSE x] tags are applied to every inventory.
  4. Broadcasting — the full session goes out as a StateSync snapshot.
  5. Back to Idle.

Narration failures never abort a turn: a companion that fails is left out,
a failed game-master call becomes a placeholder narration.

Every host-side mutation (turns, the prologue, roster changes, loading a
game) is a job on one FIFO queue, so at most one runs at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from storysync import effects
from storysync.broadcaster import Broadcaster
from storysync.events import SessionEvents
from storysync.llm import LLM, ServiceError
from storysync.models import Envelope, Participant, Session
from storysync.prompts import companion_prompt, game_master_prompt, prologue_prompt
from storysync.state import SessionStore

logger = logging.getLogger(__name__)

COMPANION_LINE_LIMIT = 120
ELLIPSIS = "..."
ERROR_PREFIX = "[AI error]"


class TurnState(str, Enum):
    IDLE = "Idle"
    COLLECTING = "CollectingAutomatedActions"
    RESOLVING = "ResolvingNarration"
    APPLYING = "ApplyingEffects"
    BROADCASTING = "Broadcasting"


@dataclass
class TurnResult:
    command_id: str
    party_actions: list[str]
    narration: str
    effects: list[effects.Effect] = field(default_factory=list)
    narration_failed: bool = False


def compact_line(text: str, limit: int = COMPANION_LINE_LIMIT) -> str:
    """First line of `text`, cut to `limit` characters plus an ellipsis."""
    line = text.split("\n", 1)[0].strip()
    if len(line) > limit:
        line = line[:limit] + ELLIPSIS
    return line


def first_paragraph(text: str) -> str:
    return text.split("\n\n", 1)[0].strip()


Job = Callable[[], Awaitable[Any]]


class TurnEngine:
    def __init__(
        self,
        *,
        store: SessionStore,
        llm: LLM,
        broadcaster: Broadcaster,
        host_identity: str,
        events: SessionEvents | None = None,
        call_timeout: float = 60.0,
        line_limit: int = COMPANION_LINE_LIMIT,
    ) -> None:
        self._store = store
        self._llm = llm
        self._broadcaster = broadcaster
        self._host_identity = host_identity
        self._events = events or SessionEvents()
        self._call_timeout = call_timeout
        self._line_limit = line_limit
        self._pending: deque[tuple[Job, asyncio.Future]] = deque()
        self._drainer: asyncio.Task | None = None
        self.state = TurnState.IDLE

    @property
    def busy(self) -> bool:
        return self.state is not TurnState.IDLE or bool(self._pending)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _enqueue(self, job: Job) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._pending.append((job, future))
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while self._pending:
            job, future = self._pending.popleft()
            try:
                result = await job()
            except Exception as e:
                logger.exception("engine job failed")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self.state = TurnState.IDLE

    async def wait_idle(self) -> None:
        while self._drainer is not None and not self._drainer.done():
            await asyncio.shield(self._drainer)

    # ------------------------------------------------------------------
    # Public jobs
    # ------------------------------------------------------------------

    def enqueue_command(self, command: Envelope) -> asyncio.Future:
        """Queue a turn without waiting for it (used by the inbound pump)."""
        return self._enqueue(lambda: self._resolve(command))

    async def submit(self, command: Envelope) -> TurnResult:
        """Queue a turn and wait for its outcome."""
        return await self.enqueue_command(command)

    async def open_scene(self) -> str | None:
        return await self._enqueue(self._prologue)

    async def admit(self, participants: list[Participant]) -> None:
        await self._enqueue(lambda: self._admit(participants))

    def enqueue_admit(self, participants: list[Participant]) -> asyncio.Future:
        return self._enqueue(lambda: self._admit(participants))

    async def reset(self, session: Session) -> None:
        """Replace the whole session (new game, loaded save) and publish it."""
        await self._enqueue(lambda: self._reset(session))

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _call(self, stage: str, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self._llm(stage, prompt), timeout=self._call_timeout)
        except asyncio.TimeoutError as e:
            raise ServiceError(f"no response within {self._call_timeout}s") from e

    async def _resolve(self, command: Envelope) -> TurnResult:
        session = self._store.current()
        issuer = session.participants.get(command.sender_identity)
        issuer_name = issuer.display_name if issuer else (command.sender_name or command.sender_identity)
        logger.info("turn %s: %s -> %s", command.id, issuer_name, command.payload)

        # 1. Companions, in roster order, each seeing the actions so far
        self.state = TurnState.COLLECTING
        party_actions = [f"{issuer_name} -> {command.payload}"]
        for companion in session.automated():
            prompt = companion_prompt(self._store.current().narrative, party_actions)
            try:
                reply = await self._call("companion", prompt)
            except ServiceError as e:
                logger.warning("companion %s skipped: %s", companion.display_name, e)
                self._events.log(f"[INFO] {companion.display_name} sits this turn out: {e}")
                continue
            line = compact_line(reply, self._line_limit)
            if not line:
                logger.warning("companion %s returned nothing", companion.display_name)
                self._events.log(f"[INFO] {companion.display_name} sits this turn out: no reply")
                continue
            party_actions.append(f"{companion.display_name} -> {line}")

        # 2. Game master
        self.state = TurnState.RESOLVING
        failed = False
        prompt = game_master_prompt(self._store.current().narrative, party_actions)
        try:
            narration = (await self._call("game_master", prompt)).strip()
        except ServiceError as e:
            logger.warning("game master call failed: %s", e)
            narration = f"{ERROR_PREFIX} {e}"
            failed = True

        # 3. Story and inventory
        self.state = TurnState.APPLYING
        self._store.append_narrative(narration)
        found = effects.extract(narration)
        effects.apply(found, self._store)

        # 4. Snapshot
        self.state = TurnState.BROADCASTING
        await self._broadcaster.sync(self._store.current(), self._host_identity)
        self._events.log(f"[GM] {first_paragraph(narration)}")
        self._events.refresh()

        return TurnResult(
            command_id=command.id,
            party_actions=party_actions,
            narration=narration,
            effects=found,
            narration_failed=failed,
        )

    # ------------------------------------------------------------------
    # Other host jobs
    # ------------------------------------------------------------------

    async def _prologue(self) -> str | None:
        self.state = TurnState.RESOLVING
        try:
            intro = (await self._call("prologue", prologue_prompt(self._store.current()))).strip()
        except ServiceError as e:
            self._events.log(f"[INFO] Prologue error: {e}")
            return None
        if not intro:
            return None

        self.state = TurnState.APPLYING
        self._store.set_opening(intro)
        self.state = TurnState.BROADCASTING
        await self._broadcaster.sync(self._store.current(), self._host_identity)
        self._events.log(f"[GM] {first_paragraph(intro)}")
        self._events.refresh()
        return intro

    async def _admit(self, participants: list[Participant]) -> None:
        self.state = TurnState.APPLYING
        for p in participants:
            if p.identity in self._store.current().participants:
                logger.debug("%s already seated, not re-admitted", p.identity)
                continue
            self._store.upsert_participant(p)
        self.state = TurnState.BROADCASTING
        await self._broadcaster.sync(self._store.current(), self._host_identity)
        self._events.refresh()

    async def _reset(self, session: Session) -> None:
        self.state = TurnState.APPLYING
        self._store.replace(session)
        self.state = TurnState.BROADCASTING
        await self._broadcaster.sync(self._store.current(), self._host_identity)
        self._events.refresh()


def _consume_exception(future: asyncio.Future) -> None:
    # Exceptions are already logged by the drainer.
    if not future.cancelled():
        future.exception()
