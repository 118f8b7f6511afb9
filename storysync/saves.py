"""JSON save slots.

One document per slot under a configurable base directory. There is no
database — a save is the Session model dumped as indented JSON.

Directory layout:

    {base}/
      saves/
        SlotA.json
        SlotB.json
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from storysync.config import SAVE_SLOTS
from storysync.models import Session

logger = logging.getLogger(__name__)


class SaveSlots:
    def __init__(self, base_path: Path, slots: Sequence[str] = SAVE_SLOTS) -> None:
        self._root = base_path / "saves"
        self._root.mkdir(parents=True, exist_ok=True)
        self.slots = tuple(slots)

    def slot_path(self, slot: str) -> Path:
        if slot not in self.slots:
            raise ValueError(f"unknown save slot {slot!r}")
        return self._root / f"{slot}.json"

    def save(self, session: Session) -> Path:
        """Write a stamped copy of `session` to the slot named by its session id."""
        path = self.slot_path(session.session_id)
        stamped = session.model_copy(update={"last_saved_at": datetime.now(timezone.utc)})
        path.write_text(stamped.model_dump_json(indent=2))
        logger.info("saved %s to %s", session.session_id, path)
        return path

    def load(self, slot: str) -> Session | None:
        """Return the saved session, or None when the slot is empty."""
        path = self.slot_path(slot)
        if not path.exists():
            return None
        return Session.model_validate_json(path.read_text())

    def occupied(self) -> list[str]:
        return [s for s in self.slots if (self._root / f"{s}.json").exists()]
