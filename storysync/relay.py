"""Relay service — a minimal group chat channel over HTTP.

Endpoints (all under /api):

    POST   /groups/{group_id}/members/{identity}           join (409 when full)
    DELETE /groups/{group_id}/members/{identity}           leave
    GET    /groups/{group_id}/members                      member list
    POST   /groups/{group_id}/messages                     broadcast {"sender", "data"}
    GET    /groups/{group_id}/members/{identity}/messages  drain mailbox

`data` is base64. A broadcast lands in every member's mailbox, the
sender's included. Nothing is persisted.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections import deque

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel

from storysync.config import load_settings

logger = logging.getLogger(__name__)


class SendBody(BaseModel):
    sender: str
    data: str


class Groups:
    def __init__(self, max_party: int = 4, max_payload_bytes: int = 4096) -> None:
        self.max_party = max_party
        self.max_payload_bytes = max_payload_bytes
        self._mailboxes: dict[str, dict[str, deque[dict[str, str]]]] = {}

    def join(self, group_id: str, identity: str) -> list[str]:
        members = self._mailboxes.setdefault(group_id, {})
        if identity not in members:
            if len(members) >= self.max_party:
                raise HTTPException(409, "Group is full")
            members[identity] = deque()
            logger.info("%s joined %s (%d members)", identity, group_id, len(members))
        return list(members)

    def leave(self, group_id: str, identity: str) -> bool:
        members = self._mailboxes.get(group_id, {})
        if members.pop(identity, None) is None:
            return False
        if not members:
            self._mailboxes.pop(group_id, None)
        return True

    def members(self, group_id: str) -> dict[str, deque[dict[str, str]]]:
        members = self._mailboxes.get(group_id)
        if members is None:
            raise HTTPException(404, "Group not found")
        return members


router = APIRouter()


def _groups(request: Request) -> Groups:
    return request.app.state.groups


@router.post("/groups/{group_id}/members/{identity}")
async def join_group(group_id: str, identity: str, request: Request):
    """Join a group, creating it on first join."""
    return {"members": _groups(request).join(group_id, identity)}


@router.delete("/groups/{group_id}/members/{identity}")
async def leave_group(group_id: str, identity: str, request: Request):
    if not _groups(request).leave(group_id, identity):
        raise HTTPException(404, "Not a member")
    return {"ok": True}


@router.get("/groups/{group_id}/members")
async def list_members(group_id: str, request: Request):
    return {"members": list(_groups(request).members(group_id))}


@router.post("/groups/{group_id}/messages")
async def send_message(group_id: str, body: SendBody, request: Request):
    """Broadcast a payload to every member of the group."""
    groups = _groups(request)
    members = groups.members(group_id)
    if body.sender not in members:
        raise HTTPException(403, "Sender is not a member of this group")
    try:
        raw = base64.b64decode(body.data, validate=True)
    except binascii.Error:
        raise HTTPException(400, "Payload is not valid base64")
    if len(raw) > groups.max_payload_bytes:
        raise HTTPException(413, f"Payload exceeds {groups.max_payload_bytes} bytes")

    for mailbox in members.values():
        mailbox.append({"sender": body.sender, "data": body.data})
    return {"delivered": len(members)}


@router.get("/groups/{group_id}/members/{identity}/messages")
async def receive_messages(group_id: str, identity: str, request: Request):
    """Return and clear everything waiting in this member's mailbox."""
    members = _groups(request).members(group_id)
    mailbox = members.get(identity)
    if mailbox is None:
        raise HTTPException(403, "Not a member of this group")
    messages = list(mailbox)
    mailbox.clear()
    return {"messages": messages}


def create_app(max_party: int | None = None, max_payload_bytes: int | None = None) -> FastAPI:
    settings = load_settings()
    app = FastAPI(title="StorySync Relay")
    app.state.groups = Groups(
        max_party=max_party or settings.max_party,
        max_payload_bytes=max_payload_bytes or settings.max_payload_bytes,
    )
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn
app = create_app()
