"""Injected collaborators: the acting user and the user-facing notice channel.

Services never read ambient request state. Routes build a
``StaticUserProvider`` from the authenticated user and pass a
``NotificationSink`` appropriate to the transport (log, WebSocket, test).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Identity trusted for role checks."""

    id: str
    email: str
    role: str = "customer"


class CurrentUserProvider(Protocol):
    def current_user(self) -> Optional[Actor]: ...


class StaticUserProvider:
    """Returns a fixed actor (or None for an anonymous caller)."""

    def __init__(self, actor: Optional[Actor] = None):
        self._actor = actor

    def current_user(self) -> Optional[Actor]:
        return self._actor

    @classmethod
    def from_user(cls, user) -> "StaticUserProvider":
        """Build from a ``User`` ORM row."""
        return cls(Actor(id=user.id, email=user.email, role=user.role))


@dataclass(frozen=True)
class Notice:
    """A toast-style message for the person operating the device."""

    title: str
    description: str = ""
    variant: str = "default"  # default | destructive

    def to_dict(self) -> dict:
        return {"title": self.title, "description": self.description, "variant": self.variant}


class NotificationSink(Protocol):
    async def notify(self, notice: Notice) -> None: ...


class LoggingNotificationSink:
    """Writes notices to the application log."""

    async def notify(self, notice: Notice) -> None:
        if notice.variant == "destructive":
            logger.warning("Notice: %s - %s", notice.title, notice.description)
        else:
            logger.info("Notice: %s - %s", notice.title, notice.description)


@dataclass
class CollectingNotificationSink:
    """Keeps every notice in memory."""

    notices: list[Notice] = field(default_factory=list)

    async def notify(self, notice: Notice) -> None:
        self.notices.append(notice)

    @property
    def titles(self) -> list[str]:
        return [n.title for n in self.notices]
