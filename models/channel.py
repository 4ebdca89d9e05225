"""
ActionChannel — names a logical slot of outbound intent.

A channel such as ``UserInterface.navigation`` says "the current navigation
screen for a chat". When the channel is replaceable, a newer job for the same
(channel, chat) makes every older queued job for that pair stale.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

_DOMAIN_RE = re.compile(r"^[A-Z][a-zA-Z]*$")
_CONTEXT_RE = re.compile(r"^[a-z][a-zA-Z]*$")


@dataclass(frozen=True)
class ActionChannel:
    domain: str
    context: str
    replaceable: bool = field(default=False, compare=False)

    @classmethod
    def create_replaceable(cls, domain: str, context: str) -> ActionChannel:
        cls.validate(domain, context)
        return cls(domain, context, True)

    @classmethod
    def create_non_replaceable(cls, domain: str, context: str) -> ActionChannel:
        cls.validate(domain, context)
        return cls(domain, context, False)

    @staticmethod
    def validate(domain: str, context: str) -> None:
        if not domain or not domain.strip():
            raise ValueError("Channel domain cannot be empty")
        if not context or not context.strip():
            raise ValueError("Channel context cannot be empty")
        if not _DOMAIN_RE.match(domain):
            raise ValueError(f"Channel domain must be PascalCase: {domain!r}")
        if not _CONTEXT_RE.match(context):
            raise ValueError(f"Channel context must be camelCase: {context!r}")

    @property
    def full_name(self) -> str:
        return f"{self.domain}.{self.context}"

    def tracking_key(self, target: str) -> str:
        return f"channel:{self.domain}:{self.context}:user:{target}"

    def to_dict(self) -> dict[str, Any]:
        return {"domain": self.domain, "context": self.context, "replaceable": self.replaceable}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionChannel:
        # Stored channels were validated when first built.
        return cls(data["domain"], data["context"], bool(data.get("replaceable", False)))


class ActionChannels:
    """Well-known channels used by the bot's handlers."""

    class UserInterface:
        navigation = ActionChannel.create_replaceable("UserInterface", "navigation")
        modal = ActionChannel.create_replaceable("UserInterface", "modal")
        form = ActionChannel.create_replaceable("UserInterface", "form")

    class Game:
        action = ActionChannel.create_non_replaceable("Game", "action")
        session = ActionChannel.create_replaceable("Game", "session")
        results = ActionChannel.create_replaceable("Game", "results")

    class Social:
        leaderboard = ActionChannel.create_replaceable("Social", "leaderboard")
        profile = ActionChannel.create_replaceable("Social", "profile")
        stats = ActionChannel.create_replaceable("Social", "stats")

    class System:
        notification = ActionChannel.create_non_replaceable("System", "notification")
        error = ActionChannel.create_non_replaceable("System", "error")
        status = ActionChannel.create_replaceable("System", "status")
