"""
Queue job record and the in-process effect registry.

A job's payload is one of:
  - a literal message: ``text`` + ``options``             (kind = message)
  - an effect token:   ``effect_ref`` into EffectRegistry (kind = action | edit)

Effects are callables living in this process only. They are never written
to the store, so after a restart an action/edit job can no longer run and
fails permanently; anything that must survive a crash has to be a message job.

Hash schema (all values strings):
  {
      "job_id":       store-assigned, monotonically increasing,
      "kind":         message|action|edit,
      "target":       chat id,
      "text":         message body (message jobs),
      "options":      JSON MessageOptions,
      "effect_ref":   registry token (action/edit jobs),
      "description":  human label for logs,
      "priority":     signed int, higher first,
      "ready_at":     epoch ms when claimable,
      "attempt":      executions so far,
      "max_attempts": retry ceiling,
      "channel":      JSON {domain, context, replaceable} or "",
      "state":        waiting|delayed|active|completed|failed|removed,
      "seq":          enqueue order (FIFO within a priority),
      "created_at":   epoch ms,
      "last_error":   last failure message,
      "result":       JSON outcome,
      "finished_at":  epoch ms of terminal transition,
      "lease":        token of the current claim; reports must present it,
  }
"""
from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional

from models.channel import ActionChannel
from models.schemas import JobKind, JobState, MessageOptions

MAX_PRIORITY = 1000

Effect = Callable[[], Awaitable[Any]]


@dataclass
class QueueJob:
    """A unit of outbound work."""
    kind: str
    target: str
    text: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    effect_ref: str = ""
    description: str = ""
    priority: int = 0
    ready_at: float = 0
    attempt: int = 0
    max_attempts: int = 3
    channel: Optional[dict[str, Any]] = None
    state: str = JobState.WAITING.value
    seq: int = 0
    created_at: float = 0
    last_error: str = ""
    result: dict[str, Any] = field(default_factory=dict)
    finished_at: float = 0
    job_id: str = ""
    lease: str = ""

    def __post_init__(self):
        if isinstance(self.kind, JobKind):
            self.kind = self.kind.value
        if isinstance(self.state, JobState):
            self.state = self.state.value
        self.priority = int(self.priority)
        if not -MAX_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be within ±{MAX_PRIORITY}, got {self.priority}")

    # ── Payload helpers ───────────────────────────────────

    @property
    def action_channel(self) -> Optional[ActionChannel]:
        return ActionChannel.from_dict(self.channel) if self.channel else None

    @property
    def has_replaceable_channel(self) -> bool:
        return bool(self.channel and self.channel.get("replaceable"))

    @property
    def tracking_key(self) -> Optional[str]:
        channel = self.action_channel
        return channel.tracking_key(self.target) if channel else None

    @property
    def message_options(self) -> Optional[MessageOptions]:
        return MessageOptions(**self.options) if self.options else None

    # ── Serialisation ─────────────────────────────────────

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["options"] = json.dumps(d["options"])
        d["channel"] = json.dumps(d["channel"]) if d["channel"] else ""
        d["result"] = json.dumps(d["result"])
        return {k: str(v) for k, v in d.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        for key in ("options", "result"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key]) if data[key] else {}
        if isinstance(data.get("channel"), str):
            data["channel"] = json.loads(data["channel"]) if data["channel"] else None
        for key in ("priority", "attempt", "max_attempts", "seq"):
            if key in data:
                data[key] = int(float(data[key]))
        for key in ("ready_at", "created_at", "finished_at"):
            if key in data:
                data[key] = float(data[key])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class EffectRegistry:
    """In-process table of pending action/edit effects, keyed by token."""

    def __init__(self):
        self._effects: dict[str, Effect] = {}

    def register(self, effect: Effect) -> str:
        token = f"fx_{uuid.uuid4().hex[:16]}"
        self._effects[token] = effect
        return token

    def get(self, token: str) -> Optional[Effect]:
        return self._effects.get(token)

    def discard(self, token: str) -> None:
        if token:
            self._effects.pop(token, None)

    def clear(self) -> int:
        n = len(self._effects)
        self._effects.clear()
        return n

    def __len__(self) -> int:
        return len(self._effects)

    def __contains__(self, token: str) -> bool:
        return token in self._effects
