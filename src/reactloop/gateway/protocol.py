"""
reactloop/gateway/protocol.py — Stream Event Protocol

Typed envelope for everything a PushChannel delivers to its consumer.
Every event is JSON with a `type` field, a short unique `id`, the session id
and a `data` payload that always carries a human-readable `text`.

    start   agent 'name' started
    step    one iteration's description (data.step, data.kind)
    delta   a chunk of streamed narration (chat only)
    done    final marker, data.state holds the terminal state
    error   the run failed, data.message
    close   the session was closed by the caller
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    START = "start"
    STEP  = "step"
    DELTA = "delta"
    DONE  = "done"
    ERROR = "error"
    CLOSE = "close"


@dataclass
class StreamEvent:
    """
    Universal event envelope. Extra payload goes in `data`.
    """
    type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    session_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.data.get("text", ""))

    def to_json(self) -> str:
        """Serialize to JSON string, dropping None fields."""
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, ensure_ascii=False)

    def to_sse(self) -> str:
        """Render as one Server-Sent Events frame."""
        return f"id: {self.id}\nevent: {self.type}\ndata: {self.to_json()}\n\n"

    @classmethod
    def from_json(cls, raw: str) -> "StreamEvent":
        d = json.loads(raw)
        return cls(
            type=d.get("type", EventType.ERROR.value),
            id=d.get("id", str(uuid.uuid4())[:8]),
            session_id=d.get("session_id"),
            data=d.get("data", {}),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_start(session_id: str, agent_name: str) -> StreamEvent:
    return StreamEvent(
        type=EventType.START.value,
        session_id=session_id,
        data={"text": f"agent '{agent_name}' started", "agent": agent_name},
    )


def make_step(session_id: str, step: int, kind: str, text: str) -> StreamEvent:
    return StreamEvent(
        type=EventType.STEP.value,
        session_id=session_id,
        data={"text": text, "step": step, "kind": kind},
    )


def make_delta(session_id: str, text: str) -> StreamEvent:
    return StreamEvent(type=EventType.DELTA.value, session_id=session_id, data={"text": text})


def make_done(session_id: str, agent_name: str, state: str) -> StreamEvent:
    return StreamEvent(
        type=EventType.DONE.value,
        session_id=session_id,
        data={
            "text": f"agent '{agent_name}' execution complete",
            "agent": agent_name,
            "state": state,
        },
    )


def make_error(session_id: Optional[str], message: str) -> StreamEvent:
    return StreamEvent(
        type=EventType.ERROR.value,
        session_id=session_id,
        data={"text": message, "message": message},
    )


def make_close(session_id: str, reason: str = "closed by caller") -> StreamEvent:
    return StreamEvent(
        type=EventType.CLOSE.value,
        session_id=session_id,
        data={"text": f"stream closed: {reason}", "reason": reason},
    )
