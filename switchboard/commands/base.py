"""Base types for the command framework.

Defines the unit the registry indexes (CommandDefinition), what a
handler receives (Invocation), what it may send back (plain text or a
RichMessage), and the dependency container shared by builtin handler
groups.

Key classes:
    CommandKind: Tag separating builtin from dynamic commands.
    CommandDefinition: Immutable description of one invocable command.
    Invocation: A parsed command message handed to a handler.
    RichMessage: Structured reply (title, fields, footer, image).
    BotContext: Dependency container shared by all builtin handlers.
    BaseCommandHandler: ABC that builtin handler groups implement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

if TYPE_CHECKING:
    from ..config import Config
    from ..permissions import PermissionManager
    from ..store import CommandStore
    from .registry import CommandRegistry

BUILTIN_CATEGORY = "builtin"

# A reply is either plain text or a structured message
Reply = Union[str, "RichMessage"]

# async (invocation) -> reply to send, or None when nothing should be sent
CommandHandler = Callable[["Invocation"], Awaitable[Optional[Reply]]]


class CommandKind(str, Enum):
    BUILTIN = "builtin"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class Payload:
    """Reply content of a dynamic command."""
    title: Optional[str] = None
    body: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.body or self.image_url)


@dataclass(frozen=True)
class CommandDefinition:
    """One invocable command.

    Builtins carry a handler and never a payload; dynamic commands carry
    a payload and are rendered by the dispatcher. Instances are frozen so
    a registry snapshot can be shared between tasks without copying; use
    dataclasses.replace() to derive a modified definition.

    Attributes:
        name: Lower-case command name, unique across the registry.
        kind: BUILTIN or DYNAMIC.
        requires_admin: Only admins may run the command.
        help_text: One-line description shown by ``help``.
        category: Grouping label for dynamic commands.
        payload: Reply content for dynamic commands.
        handler: Coroutine function for builtins.
        switch_aliases: Short switch name -> long switch name.
    """

    name: str
    kind: CommandKind
    requires_admin: bool = False
    help_text: str = ""
    category: Optional[str] = None
    payload: Payload = field(default_factory=Payload)
    handler: Optional[CommandHandler] = field(default=None, compare=False, repr=False)
    switch_aliases: Dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def builtin(
        cls,
        name: str,
        handler: CommandHandler,
        help_text: str = "",
        requires_admin: bool = False,
        switch_aliases: Optional[Dict[str, str]] = None,
    ) -> "CommandDefinition":
        return cls(
            name=name.lower(),
            kind=CommandKind.BUILTIN,
            requires_admin=requires_admin,
            help_text=help_text,
            category=BUILTIN_CATEGORY,
            handler=handler,
            switch_aliases=dict(switch_aliases or {}),
        )

    @classmethod
    def dynamic(cls, name: str) -> "CommandDefinition":
        """Blank dynamic command: not admin-gated, no help, no category, no payload."""
        return cls(name=name.lower(), kind=CommandKind.DYNAMIC)

    @property
    def is_builtin(self) -> bool:
        return self.kind is CommandKind.BUILTIN

    @property
    def is_dynamic(self) -> bool:
        return self.kind is CommandKind.DYNAMIC


@dataclass
class Invocation:
    """A command message, parsed and ready for its handler.

    Attributes:
        channel: Channel the reply goes to.
        sender: Identity of the sender, or None if the transport has none.
        command: Normalized command name (no prefix, lower-case).
        args: Positional tokens after the command name.
        switches: Parsed ``-x``/``--xxx`` switches, aliases resolved.
            A switch with no value maps to True.
        raw: The original message text.
    """

    channel: str
    sender: Optional[str]
    command: str
    args: List[str] = field(default_factory=list)
    switches: Dict[str, Union[str, bool]] = field(default_factory=dict)
    raw: str = ""


@dataclass
class RichMessage:
    """Structured reply for transports that can render embeds.

    Transports without rich rendering call render() to get plain text.
    """

    title: Optional[str] = None
    description: Optional[str] = None
    color: Optional[int] = None
    fields: List[Tuple[str, str]] = field(default_factory=list)
    footer: Optional[str] = None
    image_url: Optional[str] = None

    def add_field(self, label: str, value: str) -> "RichMessage":
        self.fields.append((label, value))
        return self

    def render(self) -> str:
        lines: List[str] = []
        if self.title:
            lines.append(self.title)
        if self.description:
            lines.append(self.description)
        for label, value in self.fields:
            lines.append(f"{label}:\n{value}")
        if self.image_url:
            lines.append(self.image_url)
        if self.footer:
            lines.append(f"-- {self.footer}")
        return "\n\n".join(lines)


def render_reply(reply: Reply) -> str:
    """Flatten a reply to plain text."""
    if isinstance(reply, RichMessage):
        return reply.render()
    return str(reply)


@dataclass
class BotContext:
    """Dependency container for builtin command handlers.

    Handlers reach the registry, the store and the permission manager
    through this object only; nothing is looked up globally.
    """

    config: "Config"
    store: "CommandStore"
    registry: "CommandRegistry"
    permissions: "PermissionManager"
    send_message: Callable[[str, Reply], Awaitable[None]]


class BaseCommandHandler(ABC):
    """Abstract base class for builtin command groups.

    Args:
        ctx: Shared BotContext dependency container.
    """

    def __init__(self, ctx: BotContext):
        self.ctx = ctx

    @abstractmethod
    def get_commands(self) -> List[CommandDefinition]:
        """Return the builtin definitions this group provides."""
        ...
