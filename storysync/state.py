"""In-memory session state.

The store holds the one Session a process knows about. On the host only the
turn engine mutates it; non-host peers only ever replace it wholesale with a
received snapshot.
"""

from __future__ import annotations

from storysync.models import Participant, Session


class SessionStore:
    def __init__(self, session: Session | None = None) -> None:
        self._session = session.model_copy(deep=True) if session else Session()

    def current(self) -> Session:
        return self._session

    def replace(self, session: Session) -> None:
        self._session = session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Mutations (turn engine only)
    # ------------------------------------------------------------------

    def append_narrative(self, text: str, separator: str = "\n\n") -> None:
        self._session.narrative += separator + text

    def set_opening(self, text: str) -> None:
        self._session.narrative = text

    def grant_item(self, name: str) -> None:
        """Give `name` to every participant who does not already hold it."""
        name = name.strip()
        if not name:
            return
        for p in self._session.participants.values():
            if not p.has_item(name):
                p.inventory.append(name)

    def remove_item(self, name: str) -> None:
        """Take every case-insensitive match of `name` from every participant."""
        key = name.strip().casefold()
        if not key:
            return
        for p in self._session.participants.values():
            p.inventory = [i for i in p.inventory if i.casefold() != key]

    def upsert_participant(self, participant: Participant) -> None:
        host = self._session.host()
        if participant.is_host and host is not None and host.identity != participant.identity:
            raise ValueError(f"session already hosted by {host.identity}")
        self._session.participants[participant.identity] = participant.model_copy(deep=True)
