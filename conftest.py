import asyncio

import pytest

from storysync.broadcaster import Broadcaster
from storysync.config import Settings
from storysync.events import SessionEvents
from storysync.models import Participant, Session
from storysync.protocol import IdempotencyTracker
from storysync.saves import SaveSlots
from storysync.transport import LocalHub


class StubLLM:
    """Deterministic narration stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(f"StubLLM: unexpected call for stage {stage!r}")
        response = queue.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]


class GatedLLM:
    """Blocks every call until `release()`; records the order calls start in."""

    def __init__(self, response: str = "Nothing happens.\nNEXT: wait") -> None:
        self.response = response
        self.started: list[str] = []
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def __call__(self, stage: str, prompt: str) -> str:
        self.started.append(stage)
        await self._gate.wait()
        return self.response


@pytest.fixture
def stub_llm():
    return StubLLM


@pytest.fixture
def gated_llm() -> GatedLLM:
    return GatedLLM()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path, call_timeout=5.0)


@pytest.fixture
def saves(tmp_path) -> SaveSlots:
    return SaveSlots(tmp_path)


@pytest.fixture
def hub() -> LocalHub:
    return LocalHub()


@pytest.fixture
def events_log() -> tuple[SessionEvents, list[str]]:
    events = SessionEvents()
    lines: list[str] = []
    events.on_log(lines.append)
    return events, lines


@pytest.fixture
def altar_session() -> Session:
    """Two participants: host P1 and companion AI-1."""
    return Session(
        session_id="SlotA",
        world_seed="seed",
        narrative="You stand before a cracked altar.",
        participants={
            "p1": Participant(identity="p1", display_name="P1", is_host=True, inventory=["Rope"]),
            "ai1": Participant(identity="ai1", display_name="AI-1", is_automated=True),
        },
    )


@pytest.fixture
def broadcaster(hub) -> Broadcaster:
    return Broadcaster(hub.join("p1"), IdempotencyTracker())
